"""
Shared fixtures.

Every test gets its own SQLite file database so tests that race real
threads against each other use separate connections, as production does.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./attribution_engine_test.db")

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from app.database import Base, build_engine
from app.models import db_models  # noqa: F401  registers tables on Base
from app.models.db_models import (
    ActorDB,
    ActorTier,
    AttributionDB,
    AttributionMethod,
    SubscriptionTier,
)
from app.services.integrations import AmlRiskLevel, SettlementResult


NOW = datetime(2024, 6, 15, 12, 0, 0)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'attribution.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_actor(db):
    """Create and commit an actor with CPI 10 tokens by default."""
    def _make(actor_id=None, **overrides):
        values = {
            "id": actor_id or f"actor-{uuid4().hex[:8]}",
            "tier": ActorTier.BRONZE,
            "country": "US",
            "cpi_rate": Decimal("10"),
            "cpa_rate": Decimal("25"),
            "cps_rate": Decimal("50"),
            "rev_share_percentage": Decimal("0.15"),
        }
        values.update(overrides)
        actor = ActorDB(**values)
        db.add(actor)
        db.commit()
        return actor
    return _make


@pytest.fixture
def make_attribution(db):
    """Insert an attribution row directly, bypassing the ledger."""
    def _make(actor_id, user_id=None, **overrides):
        values = {
            "id": str(uuid4()),
            "user_id": user_id or f"user-{uuid4().hex[:8]}",
            "actor_id": actor_id,
            "method": AttributionMethod.CODE,
            "first_touch_at": NOW - timedelta(days=2),
            "lifetime_revenue": Decimal("0"),
            "subscription_tier": SubscriptionTier.NONE,
            "verified": False,
            "fraud_score": 0.0,
            "locked": True,
            "frozen": False,
            "fraudulent": False,
        }
        values.update(overrides)
        record = AttributionDB(**values)
        db.add(record)
        db.commit()
        return record
    return _make


@pytest.fixture
def verified_referrals(make_attribution):
    """n verified, registered referrals for an actor."""
    def _make(actor_id, n, **overrides):
        values = {"verified": True, "registered_at": NOW - timedelta(days=2)}
        values.update(overrides)
        return [make_attribution(actor_id, **values) for _ in range(n)]
    return _make


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def aml_client():
    client = MagicMock()
    client.has_open_dispute.return_value = False
    client.aml_risk_level.return_value = AmlRiskLevel.LOW
    return client


@pytest.fixture
def wallet_client():
    client = MagicMock()
    client.settle.return_value = SettlementResult(success=True, transaction_id="tx-1")
    return client


@pytest.fixture
def kyc_client():
    client = MagicMock()
    client.is_verified.return_value = True
    return client


@pytest.fixture
def ip_intel():
    client = MagicMock()
    client.is_vpn.return_value = False
    client.locate.return_value = None
    return client


@pytest.fixture
def no_backoff(monkeypatch):
    """Retry collaborator calls immediately."""
    from tenacity import wait_none
    from app.services.integrations import AmlDisputeClient, KycClient, WalletLedgerClient

    for retried in (KycClient._fetch, AmlDisputeClient._get, WalletLedgerClient._post_settlement):
        monkeypatch.setattr(retried.retry, "wait", wait_none())


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def client(session_factory, aml_client, wallet_client, kyc_client, ip_intel):
    from fastapi.testclient import TestClient

    from app.database import get_db
    from app.dependencies import get_aml_client, get_ip_intel, get_kyc_client, get_wallet_client
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_aml_client] = lambda: aml_client
    app.dependency_overrides[get_wallet_client] = lambda: wallet_client
    app.dependency_overrides[get_kyc_client] = lambda: kyc_client
    app.dependency_overrides[get_ip_intel] = lambda: ip_intel
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    from app.auth import create_access_token
    return {"Authorization": f"Bearer {create_access_token('admin-1', role='admin')}"}


@pytest.fixture
def actor_headers():
    from app.auth import create_access_token

    def _headers(actor_id):
        return {"Authorization": f"Bearer {create_access_token(actor_id)}"}
    return _headers


@pytest.fixture
def internal_headers():
    from app.config import INTERNAL_API_KEY
    return {"X-Internal-Key": INTERNAL_API_KEY}
