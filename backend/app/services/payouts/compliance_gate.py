"""
Compliance Gate

Owns PayoutRequest from creation to settlement.

Core Principles:
1. One non-terminal request per actor. Enforced under a per-actor lock and
   by the unique active_actor_id column.
2. Nothing is approved automatically unless the fraud check passes and the
   AML/dispute service raises no flag.
3. Every blocked outcome carries a reason.
. Each request claims the earnings it pays for; a rejected request
   releases them.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...config import AML_HOLD_LEVEL
from ...models.db_models import (
    CompensationModel,
    FraudCheckResult,
    PayoutClaimDB,
    PayoutRequestDB,
    PayoutStatus,
    TERMINAL_PAYOUT_STATUSES,
    TransitionActor,
)
from ..errors import ComplianceBlock, ConflictError, TransientError, ValidationError
from ..fraud.risk_engine import STATUS_FRAUD_CHECK, RiskScoringEngine
from ..integrations.aml import AmlDisputeClient, AmlRiskLevel
from ..integrations.wallet import WalletLedgerClient
from ..locks import PAYOUT_LOCKS
from .calculator import BLOCKED_STATUSES, REASON_BLOCKED, PayoutCalculator
from .state_machine import PayoutStateMachine

logger = logging.getLogger(__name__)

FRAUD_CHECK_ORDER = [FraudCheckResult.PASS, FraudCheckResult.REVIEW, FraudCheckResult.FAIL]

# Requests a status-worsening recompute pulls back into review
REVIEWABLE_STATUSES = {PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.HELD_FOR_REVIEW}


def worse_fraud_check(a: Optional[FraudCheckResult], b: Optional[FraudCheckResult]) -> FraudCheckResult:
    ranked = [r for r in (a, b) if r is not None]
    if not ranked:
        return FraudCheckResult.PASS
    return max(ranked, key=FRAUD_CHECK_ORDER.index)


class ComplianceGate:
    """
    Payout request lifecycle.

    Usage:
        gate = ComplianceGate(db, aml_client=AmlDisputeClient(), wallet_client=WalletLedgerClient())
        request = gate.create_request(actor_id, "CPI")
    """

    def __init__(
        self,
        db: Session,
        aml_client: Optional[AmlDisputeClient] = None,
        wallet_client: Optional[WalletLedgerClient] = None,
        aml_hold_level: str = AML_HOLD_LEVEL,
    ):
        self.db = db
        self.aml_client = aml_client or AmlDisputeClient()
        self.wallet_client = wallet_client or WalletLedgerClient()
        self.aml_hold_level = AmlRiskLevel(aml_hold_level.lower())
        self.state_machine = PayoutStateMachine(db)
        self.risk_engine = RiskScoringEngine(db)
        self.calculator = PayoutCalculator(db)

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, request_id: str) -> Optional[PayoutRequestDB]:
        return self.db.query(PayoutRequestDB).filter(PayoutRequestDB.id == request_id).first()

    def active_request(self, actor_id: str) -> Optional[PayoutRequestDB]:
        return self.db.query(PayoutRequestDB).filter(
            PayoutRequestDB.actor_id == actor_id,
            PayoutRequestDB.status.notin_(list(TERMINAL_PAYOUT_STATUSES)),
        ).first()

    def _require(self, request_id: str) -> PayoutRequestDB:
        request = self.get(request_id)
        if request is None:
            raise ValidationError(f"Payout request {request_id} not found", field="id")
        return request

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_request(
        self,
        actor_id: str,
        compensation_model: Union[str, CompensationModel],
    ) -> PayoutRequestDB:
        """
        Create a payout request and evaluate it.

        Raises:
            ConflictError: a non-terminal request already exists (existing attached)
            ComplianceBlock: the calculation is not eligible
        """
        with PAYOUT_LOCKS.hold(actor_id):
            existing = self.active_request(actor_id)
            if existing is not None:
                raise ConflictError(
                    f"Actor {actor_id} already has an active payout request",
                    existing=existing,
                )

            breakdown = self.calculator.calculate(actor_id, compensation_model)
            if not breakdown.eligible:
                logger.warning(f"Payout request for {actor_id} blocked: {breakdown.reason}")
                raise ComplianceBlock(breakdown.reason, details=breakdown.to_dict())

            risk = self.risk_engine.ensure_state(actor_id)
            request = PayoutRequestDB(
                id=str(uuid4()),
                actor_id=actor_id,
                active_actor_id=actor_id,
                compensation_model=breakdown.compensation_model,
                breakdown=breakdown.to_dict(),
                total_tokens=breakdown.total_tokens,
                currency=breakdown.currency,
                status=PayoutStatus.PENDING,
                fraud_checked=True,
                fraud_check_result=STATUS_FRAUD_CHECK[risk.account_status],
                hold_reasons=[],
                settlement_attempts=0,
            )
            self.db.add(request)
            for component, user_id, revenue in breakdown.claims:
                self.db.add(PayoutClaimDB(
                    id=str(uuid4()),
                    payout_request_id=request.id,
                    actor_id=actor_id,
                    user_id=user_id,
                    component=component,
                    revenue=revenue,
                ))
            self.state_machine.record_creation(request)
            try:
                self.db.commit()
            except IntegrityError:
                # Another process created one first
                self.db.rollback()
                raise ConflictError(
                    f"Actor {actor_id} already has an active payout request",
                    existing=self.active_request(actor_id),
                )

        logger.info(
            f"Payout request {request.id} created for {actor_id}: "
            f"{request.total_tokens} {request.currency} ({request.compensation_model.value})"
        )
        return self.evaluate(request)

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def evaluate(self, request: PayoutRequestDB) -> PayoutRequestDB:
        """
        Move a pending request to approved or held_for_review.

        If the AML/dispute service is unavailable the request stays pending
        and the evaluation sweep picks it up again.
        """
        if request.status != PayoutStatus.PENDING:
            return request

        current = STATUS_FRAUD_CHECK[self.risk_engine.current_status(request.actor_id)]
        fraud_check = worse_fraud_check(request.fraud_check_result, current)

        try:
            open_dispute = self.aml_client.has_open_dispute(request.actor_id)
            aml_level = self.aml_client.aml_risk_level(request.actor_id)
        except TransientError as e:
            logger.warning(f"Payout request {request.id} left pending: {e}")
            return request

        reasons: List[str] = []
        if fraud_check != FraudCheckResult.PASS:
            reasons.append(f"fraud check {fraud_check.value}")
        if open_dispute:
            reasons.append("open dispute")
        if aml_level.rank >= self.aml_hold_level.rank:
            reasons.append(f"AML risk level {aml_level.value}")

        request.fraud_checked = True
        request.fraud_check_result = fraud_check
        metadata = {"fraud_check": fraud_check.value, "aml_level": aml_level.value, "open_dispute": open_dispute}
        if reasons:
            request.hold_reasons = reasons
            self._transition(request, PayoutStatus.HELD_FOR_REVIEW, "compliance_hold", metadata=metadata)
            logger.warning(f"Payout request {request.id} held for review: {', '.join(reasons)}")
        else:
            self._transition(request, PayoutStatus.APPROVED, "auto_approved", metadata=metadata)

        try:
            self.db.commit()
        except StaleDataError:
            # A risk recompute moved the request first; its state wins
            self.db.rollback()
            self.db.refresh(request)
            logger.warning(f"Payout request {request.id} changed during evaluation, now {request.status.value}")
            return request
        if not reasons:
            logger.info(f"Payout request {request.id} auto-approved")
        return request

    def force_fraud_review(
        self,
        actor_id: str,
        fraud_check: FraudCheckResult,
        reason: str,
    ) -> List[PayoutRequestDB]:
        """
        Pull an actor's open request back into review after a risk worsening.

        Called inside the risk engine's transaction: flushes, never commits.
        """
        affected = []
        requests = self.db.query(PayoutRequestDB).filter(
            PayoutRequestDB.actor_id == actor_id,
            PayoutRequestDB.status.in_(list(REVIEWABLE_STATUSES)),
        ).all()
        for request in requests:
            request.fraud_checked = True
            request.fraud_check_result = worse_fraud_check(request.fraud_check_result, fraud_check)
            request.hold_reasons = list(request.hold_reasons or []) + [reason]
            if request.status != PayoutStatus.HELD_FOR_REVIEW:
                self._transition(
                    request,
                    PayoutStatus.HELD_FOR_REVIEW,
                    "risk_worsened",
                    metadata={"fraud_check": request.fraud_check_result.value, "reason": reason},
                )
            affected.append(request)
            logger.warning(f"Payout request {request.id} forced to review ({request.fraud_check_result.value})")
        self.db.flush()
        return affected

    # =========================================================================
    # ADMIN DECISION
    # =========================================================================

    def admin_decide(
        self,
        request_id: str,
        approve: bool,
        reviewer_id: str,
        reason: Optional[str] = None,
    ) -> PayoutRequestDB:
        request = self._require(request_id)
        with PAYOUT_LOCKS.hold(request.actor_id):
            self.db.refresh(request)
            if request.status != PayoutStatus.HELD_FOR_REVIEW:
                raise ConflictError(
                    f"Payout request {request_id} is {request.status.value}, not held_for_review",
                    existing=request,
                )

            if approve and self.risk_engine.current_status(request.actor_id) in BLOCKED_STATUSES:
                raise ComplianceBlock(REASON_BLOCKED, details={"payoutRequestId": request_id})

            request.reviewer_id = reviewer_id
            request.decision_reason = reason
            target = PayoutStatus.APPROVED if approve else PayoutStatus.REJECTED
            self._transition(
                request,
                target,
                "admin_approved" if approve else "admin_rejected",
                actor=TransitionActor.ADMIN,
                metadata={"reviewer_id": reviewer_id, "reason": reason},
            )
            self._commit(request)

        logger.info(f"Payout request {request_id} {target.value} by {reviewer_id}")
        return request

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    def settle(self, request_id: str) -> PayoutRequestDB:
        """
        One settlement attempt with the wallet ledger.

        Success moves the request to settled. A failure or unknown outcome
        keeps it approved and records the error for the settlement sweep.
        """
        request = self._require(request_id)
        with PAYOUT_LOCKS.hold(request.actor_id):
            self.db.refresh(request)
            if request.status != PayoutStatus.APPROVED:
                raise ConflictError(
                    f"Payout request {request_id} is {request.status.value}, not approved",
                    existing=request,
                )

            request.settlement_attempts = (request.settlement_attempts or 0) + 1
            try:
                result = self.wallet_client.settle(request.id, request.total_tokens, request.currency)
            except TransientError as e:
                request.last_settlement_error = str(e)
                self._commit(request)
                logger.warning(f"Settlement of {request_id} unknown (attempt {request.settlement_attempts}): {e}")
                return request

            if not result.success:
                request.last_settlement_error = result.error or "settlement failed"
                self._commit(request)
                logger.error(f"Settlement of {request_id} failed (attempt {request.settlement_attempts}): {result.error}")
                return request

            request.transaction_id = result.transaction_id
            request.last_settlement_error = None
            self._transition(
                request,
                PayoutStatus.SETTLED,
                "wallet_settled",
                metadata={"transaction_id": result.transaction_id},
            )
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                return self._record_orphan_settlement(request, result.transaction_id)

        logger.info(f"Payout request {request_id} settled: transaction {result.transaction_id}")
        return request

    # =========================================================================
    # SWEEPS
    # =========================================================================

    def run_evaluation_sweep(self, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Re-evaluate requests left pending by an unavailable collaborator."""
        started_at = datetime.now(timezone.utc)
        pending = self.db.query(PayoutRequestDB).filter(
            PayoutRequestDB.status == PayoutStatus.PENDING
        ).order_by(PayoutRequestDB.created_at).all()

        results = {
            "sweep": "payout-evaluation",
            "started_at": started_at.isoformat(),
            "candidates": len(pending),
            "approved": 0,
            "held": 0,
            "still_pending": 0,
            "failures": 0,
            "interrupted": False,
        }
        for request in pending:
            if cancel is not None and cancel.is_set():
                results["interrupted"] = True
                break
            try:
                self.evaluate(request)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Evaluation of payout request {request.id} failed: {e}")
                results["failures"] += 1
                continue
            if request.status == PayoutStatus.APPROVED:
                results["approved"] += 1
            elif request.status == PayoutStatus.HELD_FOR_REVIEW:
                results["held"] += 1
            else:
                results["still_pending"] += 1

        return self._finish(results, started_at)

    def run_settlement_sweep(self, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Retry settlement for every approved request."""
        started_at = datetime.now(timezone.utc)
        approved_ids = [
            request_id for (request_id,) in self.db.query(PayoutRequestDB.id).filter(
                PayoutRequestDB.status == PayoutStatus.APPROVED
            ).order_by(PayoutRequestDB.approved_at).all()
        ]

        results = {
            "sweep": "settlement",
            "started_at": started_at.isoformat(),
            "candidates": len(approved_ids),
            "settled": 0,
            "retry_later": 0,
            "failures": 0,
            "interrupted": False,
        }
        for request_id in approved_ids:
            if cancel is not None and cancel.is_set():
                results["interrupted"] = True
                break
            try:
                request = self.settle(request_id)
            except ConflictError:
                # Moved out of approved since the sweep started
                continue
            except Exception as e:
                self.db.rollback()
                logger.error(f"Settlement sweep failed on {request_id}: {e}")
                results["failures"] += 1
                continue
            if request.status == PayoutStatus.SETTLED:
                results["settled"] += 1
            else:
                results["retry_later"] += 1

        return self._finish(results, started_at)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _transition(
        self,
        request: PayoutRequestDB,
        to_status: PayoutStatus,
        trigger: str,
        actor: TransitionActor = TransitionActor.SYSTEM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ok, message = self.state_machine.transition(request, to_status, trigger, actor=actor, metadata=metadata)
        if not ok:
            raise ConflictError(message, existing=request)

    def _commit(self, request: PayoutRequestDB) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            logger.warning(f"Payout request {request.id} changed concurrently: {e}")
            raise TransientError(f"Payout request {request.id} changed concurrently, retry") from e

    def _record_orphan_settlement(self, request: PayoutRequestDB, transaction_id: Optional[str]) -> PayoutRequestDB:
        """
        The wallet moved the funds but the request changed underneath us.

        Keep the concurrent writer's status and attach the transaction so a
        reviewer sees it; re-settling reuses the idempotency key.
        """
        self.db.refresh(request)
        request.transaction_id = transaction_id
        request.last_settlement_error = (
            f"settled by wallet as {transaction_id} while request moved to {request.status.value}"
        )
        self.db.commit()
        logger.error(
            f"Payout request {request.id} settled by wallet ({transaction_id}) "
            f"but is now {request.status.value}; needs review"
        )
        return request

    @staticmethod
    def _finish(results: Dict[str, Any], started_at: datetime) -> Dict[str, Any]:
        completed_at = datetime.now(timezone.utc)
        results["completed_at"] = completed_at.isoformat()
        results["duration_seconds"] = (completed_at - started_at).total_seconds()
        logger.info(f"Payout {results['sweep']} sweep complete: {results}")
        return results
