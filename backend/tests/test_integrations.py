"""
Tests for the external collaborator clients.

HTTP is never reached: the retrying request helpers are patched so the
tests exercise how each client maps responses and failures. The retry
tests drive the real helpers through an in-memory transport.
"""
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from app.services.errors import TransientError
from app.services.integrations import AmlDisputeClient, AmlRiskLevel, IpIntelligence, KycClient, WalletLedgerClient
from app.services.integrations.retrying import is_retryable


def scripted(*statuses, **body):
    """Transport answering each request with the next status in turn."""
    calls = []

    def handler(request):
        calls.append(request)
        status = statuses[min(len(calls), len(statuses)) - 1]
        return httpx.Response(status, json=body if status < 400 else {}, request=request)

    return httpx.MockTransport(handler), calls


# =============================================================================
# TEST: WALLET LEDGER
# =============================================================================

class TestWalletLedgerClient:

    def test_successful_settlement(self):
        client = WalletLedgerClient(base_url="http://wallet.test")
        response = httpx.Response(200, json={"success": True, "transactionId": "tx-7"})

        with patch.object(client, "_post_settlement", return_value=response) as post:
            result = client.settle("req-1", Decimal("1500.00"), "TOKEN")

        assert result.success is True
        assert result.transaction_id == "tx-7"
        post.assert_called_once_with("req-1", Decimal("1500.00"), "TOKEN")

    def test_rejected_settlement_is_a_failure(self):
        client = WalletLedgerClient(base_url="http://wallet.test")
        response = httpx.Response(422, json={"success": False, "error": "account closed"})

        with patch.object(client, "_post_settlement", return_value=response):
            result = client.settle("req-1", Decimal("10"), "TOKEN")

        assert result.success is False
        assert result.error == "account closed"

    def test_timeout_is_an_unknown_outcome(self):
        client = WalletLedgerClient(base_url="http://wallet.test")

        with patch.object(client, "_post_settlement", side_effect=httpx.ReadTimeout("slow")):
            with pytest.raises(TransientError):
                client.settle("req-1", Decimal("10"), "TOKEN")

    def test_server_error_is_transient(self):
        client = WalletLedgerClient(base_url="http://wallet.test")

        with patch.object(client, "_post_settlement", return_value=httpx.Response(503)):
            with pytest.raises(TransientError):
                client.settle("req-1", Decimal("10"), "TOKEN")


# =============================================================================
# TEST: AML AND KYC
# =============================================================================

class TestAmlDisputeClient:

    def test_risk_level_parsing(self):
        client = AmlDisputeClient(base_url="http://aml.test")

        with patch.object(client, "_get", return_value={"riskLevel": "Medium"}):
            assert client.aml_risk_level("actor-a") == AmlRiskLevel.MEDIUM

    def test_unknown_level_treated_as_high(self):
        client = AmlDisputeClient(base_url="http://aml.test")

        with patch.object(client, "_get", return_value={"riskLevel": "severe"}):
            assert client.aml_risk_level("actor-a") == AmlRiskLevel.HIGH

    def test_transport_error_is_transient(self):
        client = AmlDisputeClient(base_url="http://aml.test")

        with patch.object(client, "_get", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(TransientError):
                client.has_open_dispute("actor-a")


class TestKycClient:

    def test_verified_flag(self):
        client = KycClient(base_url="http://kyc.test")

        with patch.object(client, "_fetch", return_value={"verified": True}):
            assert client.is_verified("user-1") is True

    def test_timeout_is_transient(self):
        client = KycClient(base_url="http://kyc.test")

        with patch.object(client, "_fetch", side_effect=httpx.ConnectTimeout("slow")):
            with pytest.raises(TransientError):
                client.is_verified("user-1")


# =============================================================================
# TEST: IP INTELLIGENCE
# =============================================================================

class TestIpIntelligence:

    def test_vpn_ranges(self):
        intel = IpIntelligence(vpn_cidrs=["10.8.0.0/16", "not-a-cidr"])

        assert intel.is_vpn("10.8.3.4") is True
        assert intel.is_vpn("203.0.113.1") is False
        assert intel.is_vpn("garbage") is False

    def test_private_addresses_are_not_located(self):
        intel = IpIntelligence(vpn_cidrs=[])

        with patch.object(intel, "_lookup") as lookup:
            assert intel.locate("192.168.1.10") is None
        lookup.assert_not_called()

    def test_lookups_are_cached(self):
        intel = IpIntelligence(vpn_cidrs=[])

        with patch.object(intel, "_lookup", return_value=(40.71, -74.0)) as lookup:
            assert intel.locate("8.8.8.8") == (40.71, -74.0)
            assert intel.locate("8.8.8.8") == (40.71, -74.0)
        lookup.assert_called_once_with("8.8.8.8")

    def test_lookup_cache_is_bounded(self):
        intel = IpIntelligence(vpn_cidrs=[], max_entries=2)

        with patch.object(intel, "_lookup", return_value=(1.0, 2.0)) as lookup:
            intel.locate("8.8.8.8")
            intel.locate("8.8.4.4")
            intel.locate("1.1.1.1")
            assert len(intel._cache) == 2
            assert "8.8.8.8" not in intel._cache

            intel.locate("8.8.4.4")
        assert lookup.call_count == 3

    def test_expired_entries_are_pruned_first(self):
        intel = IpIntelligence(vpn_cidrs=[], cache_ttl=60, max_entries=2)
        intel._cache["8.8.8.8"] = ((0.0, 0.0), 0.0)

        with patch.object(intel, "_lookup", return_value=(1.0, 2.0)):
            intel.locate("8.8.4.4")
            intel.locate("1.1.1.1")

        assert set(intel._cache) == {"8.8.4.4", "1.1.1.1"}


# =============================================================================
# TEST: RETRY ON UPSTREAM FAILURE
# =============================================================================

class TestUpstreamRetries:

    def test_retryable_failures(self):
        request = httpx.Request("GET", "http://kyc.test")

        assert is_retryable(httpx.ConnectTimeout("slow")) is True
        assert is_retryable(httpx.HTTPStatusError("down", request=request, response=httpx.Response(503))) is True
        assert is_retryable(httpx.HTTPStatusError("gone", request=request, response=httpx.Response(404))) is False
        assert is_retryable(ValueError("bad json")) is False

    def test_kyc_recovers_after_server_errors(self, no_backoff):
        transport, calls = scripted(503, 502, 200, verified=True)
        client = KycClient(base_url="http://kyc.test", transport=transport)

        assert client.is_verified("user-1") is True
        assert len(calls) == 3

    def test_kyc_persistent_server_error_is_transient(self, no_backoff):
        transport, calls = scripted(503)
        client = KycClient(base_url="http://kyc.test", transport=transport)

        with pytest.raises(TransientError):
            client.is_verified("user-1")
        assert len(calls) == 3

    def test_kyc_unknown_user_is_not_verified(self, no_backoff):
        transport, calls = scripted(404)
        client = KycClient(base_url="http://kyc.test", transport=transport)

        assert client.is_verified("user-1") is False
        assert len(calls) == 1

    def test_aml_persistent_server_error_is_transient(self, no_backoff):
        transport, calls = scripted(500)
        client = AmlDisputeClient(base_url="http://aml.test", transport=transport)

        with pytest.raises(TransientError):
            client.aml_risk_level("actor-a")
        assert len(calls) == 3

    def test_wallet_retries_server_errors_under_one_key(self, no_backoff):
        transport, calls = scripted(503, 200, success=True, transactionId="tx-9")
        client = WalletLedgerClient(base_url="http://wallet.test", transport=transport)

        result = client.settle("req-1", Decimal("10"), "TOKEN")

        assert result.transaction_id == "tx-9"
        assert [c.headers["Idempotency-Key"] for c in calls] == ["req-1", "req-1"]

    def test_wallet_persistent_server_error_is_transient(self, no_backoff):
        transport, calls = scripted(503)
        client = WalletLedgerClient(base_url="http://wallet.test", transport=transport)

        with pytest.raises(TransientError):
            client.settle("req-1", Decimal("10"), "TOKEN")
        assert len(calls) == 3
