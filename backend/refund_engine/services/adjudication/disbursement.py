"""
Disbursement Scheduler

AUTHORITY: SYSTEM
Computes the final payable amount and tracks the payout SLA.

Key behaviors:
- payable = claimed - deductions + contractual interest + delay interest - re-processing charges, floored at zero
- Due date is value-band business days after approval (Art. 11.1(d))
- A missed due date escalates the delay-interest bucket (Schedule III), never silently
- Payout only to the verified source account unless a Compliance override is approved
- Stakeholder-caused failures incur re-processing charges (Schedule I(E))
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    DecisionRecordDB, DisbursementDB, DisbursementStatus, FailureCause, RefundRequestDB, RefundState,
    ReviewerDB, ReviewerRole, ActorType,
)
from ...models.domain import EligibilityVerdict, DeductionLine, money
from .audit_trail import AuditTrail
from .deadlines import add_business_days, utcnow, value_band
from .decision_records import DecisionLedger
from .errors import AuthorizationError, DisbursementBlocked, SLABreach, ValidationError
from .locking import RequestLockRegistry, request_transaction, DEFAULT_LOCKS
from .operator_queue import OperatorQueue
from .state_machine import RefundStateMachine

logger = logging.getLogger(__name__)


# =============================================================================
# INTEREST (Schedule III)
# =============================================================================

DELAY_INTEREST_BUCKETS = (
    (30, 12),   # Up to 30 days beyond due date: 12% p.a.
    (60, 15),   # 31-60 days: 15% p.a.
    (None, 18),  # Beyond 60 days: 18% p.a.
)

# Schedule I(E): charge for the nth stakeholder-caused re-attempt
REPROCESSING_CHARGES = (Decimal("0"), Decimal("500"), Decimal("1000"))

REPEATED_FAILURE_ALERT_AT = 2


def delay_interest_rate(days_late: int) -> int:
    if days_late <= 0:
        return 0
    for ceiling, rate in DELAY_INTEREST_BUCKETS:
        if ceiling is None or days_late <= ceiling:
            return rate
    return DELAY_INTEREST_BUCKETS[-1][1]


def simple_interest(principal: Decimal, rate: Decimal, days: int) -> Decimal:
    """P x R x D / (365 x 100)."""
    if days <= 0 or rate <= 0 or principal <= 0:
        return Decimal("0.00")
    return money(Decimal(principal) * Decimal(rate) * Decimal(days) / Decimal(36500))


def delay_interest(principal: Decimal, due: date, paid: date) -> Decimal:
    """Days run from the day after the due date to the payment date, inclusive."""
    days_late = (paid - due).days
    return simple_interest(principal, Decimal(delay_interest_rate(days_late)), days_late)


def reprocessing_charge(stakeholder_failures: int) -> Decimal:
    if stakeholder_failures <= 0:
        return Decimal("0")
    index = min(stakeholder_failures, len(REPROCESSING_CHARGES)) - 1
    return REPROCESSING_CHARGES[index]


# =============================================================================
# SCHEDULER
# =============================================================================

class DisbursementScheduler:
    def __init__(self, db: Session, config: EngineConfig, locks: Optional[RequestLockRegistry] = None):
        self.db = db
        self.config = config
        self.locks = locks or DEFAULT_LOCKS
        self.state_machine = RefundStateMachine(db)
        self.audit = AuditTrail(db)
        self.decisions = DecisionLedger(db)
        self.operators = OperatorQueue(db)

    # -------------------------------------------------------------------------
    # Amounts
    # -------------------------------------------------------------------------

    @staticmethod
    def principal_for(request: RefundRequestDB) -> Decimal:
        return max(money(request.amount_claimed) - money(request.total_deductions), Decimal("0.00"))

    @staticmethod
    def contractual_interest(request: RefundRequestDB, principal: Decimal, until: date) -> Decimal:
        if not request.eligibility:
            return Decimal("0.00")
        verdict = EligibilityVerdict.from_dict(request.eligibility)
        if verdict.interest_rate <= 0 or verdict.interest_from is None:
            return Decimal("0.00")
        return simple_interest(principal, verdict.interest_rate, (until - verdict.interest_from).days)

    @staticmethod
    def payable(disbursement: DisbursementDB) -> Decimal:
        total = (
            money(disbursement.principal)
            + money(disbursement.contractual_interest)
            + money(disbursement.delay_interest)
            - money(disbursement.reprocessing_charges)
        )
        return max(money(total), Decimal("0.00"))

    def _payout_permitted(self, request: RefundRequestDB, disbursement: DisbursementDB) -> bool:
        if request.source_account and disbursement.account == request.source_account:
            return True
        return bool(
            disbursement.override_approved_by
            and disbursement.override_account
            and disbursement.account == disbursement.override_account
        )

    # -------------------------------------------------------------------------
    # Scheduling (called by the pipeline on entering DISBURSING)
    # -------------------------------------------------------------------------

    def schedule(self, request: RefundRequestDB, now: Optional[datetime] = None) -> DisbursementDB:
        if request.state != RefundState.DISBURSING:
            raise ValidationError(f"{request.reference_id} is not in DISBURSING")
        if request.disbursement is not None:
            return request.disbursement

        now = now or utcnow()
        principal = self.principal_for(request)
        band = value_band(principal)
        disbursement = DisbursementDB(
            id=str(uuid4()),
            request_id=request.id,
            principal=principal,
            contractual_interest=self.contractual_interest(request, principal, now.date()),
            delay_interest=Decimal("0.00"),
            reprocessing_charges=Decimal("0.00"),
            account=request.payout_account,
            status=DisbursementStatus.SCHEDULED,
            approved_at=now,
            due_date=add_business_days(now.date(), band.disbursement_days, self.config.holidays),
            interest_rate=0,
            failure_count=0,
            stakeholder_failure_count=0,
            created_at=now,
        )
        request.disbursement = disbursement
        self.db.add(disbursement)

        if not self._payout_permitted(request, disbursement):
            disbursement.status = DisbursementStatus.BLOCKED
            self.operators.raise_item(
                request, "ACCOUNT_OVERRIDE_REQUIRED",
                f"{request.reference_id}: payout account differs from verified source account",
                now=now,
            )

        request.payable_amount = self.payable(disbursement)
        self.audit.append(
            request,
            action="disbursement_scheduled",
            rationale=f"Payout of {request.payable_amount} due {disbursement.due_date.isoformat()} ({band.name})",
            inputs={
                "principal": str(principal),
                "contractual_interest": str(disbursement.contractual_interest),
                "status": disbursement.status.value,
            },
            at=now,
        )
        logger.info(f"Scheduled disbursement for {request.reference_id}: {request.payable_amount} due {disbursement.due_date}")
        return disbursement

    # -------------------------------------------------------------------------
    # Account override (Art. 8.5(g))
    # -------------------------------------------------------------------------

    def request_account_override(
        self,
        reference_id: str,
        reviewer: ReviewerDB,
        account: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> DisbursementDB:
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            disbursement = self._require_disbursement(request)
            if not reason or not reason.strip():
                raise ValidationError("Account override requires supporting reason and documentation")
            disbursement.override_account = account
            disbursement.override_reason = reason
            disbursement.override_requested_by = reviewer.id
            disbursement.override_approved_by = None
            self.audit.append(
                request,
                action="account_override_requested",
                rationale=reason,
                actor=reviewer.id,
                actor_type=ActorType.REVIEWER,
                actor_role=reviewer.role.value,
                inputs={"account": account},
                confidential=True,
                at=now,
            )
            return disbursement

    def approve_account_override(
        self,
        reference_id: str,
        reviewer: ReviewerDB,
        now: Optional[datetime] = None,
    ) -> DisbursementDB:
        """Second approval by Compliance, who must not be the requester."""
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            disbursement = self._require_disbursement(request)
            if reviewer.role != ReviewerRole.COMPLIANCE:
                raise AuthorizationError("Only Compliance may approve a payout account override")
            if not disbursement.override_account:
                raise ValidationError("No account override has been requested")
            if disbursement.override_requested_by == reviewer.id:
                raise AuthorizationError("Override approval must come from a second reviewer")

            disbursement.override_approved_by = reviewer.id
            disbursement.account = disbursement.override_account
            if disbursement.status == DisbursementStatus.BLOCKED:
                disbursement.status = DisbursementStatus.SCHEDULED
            self.operators.resolve_for(request, "ACCOUNT_OVERRIDE_REQUIRED", now=now)
            self.audit.append(
                request,
                action="account_override_approved",
                rationale=f"Payout account override approved by {reviewer.full_name}",
                actor=reviewer.id,
                actor_type=ActorType.REVIEWER,
                actor_role=reviewer.role.value,
                confidential=True,
                at=now,
            )
            return disbursement

    # -------------------------------------------------------------------------
    # SLA check (Schedule III escalation)
    # -------------------------------------------------------------------------

    def check_sla(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Escalate the delay-interest bucket of every overdue payout.

        AUTHORITY: SYSTEM - Called by the scheduler.
        """
        today = today or utcnow().date()
        now = datetime.combine(today, datetime.min.time())
        overdue = self.db.query(DisbursementDB).filter(
            DisbursementDB.status.in_([DisbursementStatus.SCHEDULED, DisbursementStatus.FAILED]),
            DisbursementDB.due_date < today,
        ).all()

        results = {"run_date": today.isoformat(), "checked": len(overdue), "escalated": 0, "errors": 0, "details": []}
        targets = [(d.id, d.request.reference_id) for d in overdue]

        for disbursement_id, reference_id in targets:
            try:
                with request_transaction(self.db, reference_id, self.locks, blocking=False) as request:
                    disbursement = request.disbursement
                    days_late = (today - disbursement.due_date).days
                    rate = delay_interest_rate(days_late)
                    disbursement.delay_interest = delay_interest(disbursement.principal, disbursement.due_date, today)
                    request.payable_amount = self.payable(disbursement)

                    if rate > (disbursement.interest_rate or 0):
                        breach = SLABreach(reference_id, "disbursement", disbursement.due_date, today)
                        previous = disbursement.interest_rate or 0
                        disbursement.interest_rate = rate
                        self.audit.append(
                            request,
                            action="disbursement_sla_breach",
                            rationale=f"{breach}; delay interest escalated from {previous}% to {rate}% p.a.",
                            inputs={"days_late": days_late, "rate": rate},
                            at=now,
                        )
                        logger.warning(f"Disbursement SLA breach for {reference_id}: {days_late} days late, rate {rate}%")
                        results["escalated"] += 1
                        results["details"].append({"reference_id": reference_id, "days_late": days_late, "rate": rate})
            except Exception as e:
                logger.error(f"Disbursement SLA check failed for {reference_id}: {e}")
                results["errors"] += 1

        return results

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def confirm(self, reference_id: str, paid_at: Optional[datetime] = None) -> DecisionRecordDB:
        """Record a completed payout and close the request as APPROVED."""
        paid_at = paid_at or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            disbursement = self._require_disbursement(request)
            if request.state != RefundState.DISBURSING:
                raise ValidationError(f"{reference_id} is not awaiting disbursement")
            if disbursement.status == DisbursementStatus.BLOCKED or not self._payout_permitted(request, disbursement):
                raise DisbursementBlocked(
                    f"{reference_id}: payout account is not the verified source account and no override is approved"
                )

            paid = paid_at.date()
            disbursement.contractual_interest = self.contractual_interest(request, disbursement.principal, paid)
            disbursement.delay_interest = delay_interest(disbursement.principal, disbursement.due_date, paid)
            disbursement.status = DisbursementStatus.COMPLETED
            disbursement.completed_at = paid_at
            request.payable_amount = self.payable(disbursement)

            deductions = list(request.deductions or [])
            if disbursement.reprocessing_charges and disbursement.reprocessing_charges > 0:
                deductions.append(DeductionLine("Re-processing charges", money(disbursement.reprocessing_charges)).to_dict())

            interest = money(disbursement.contractual_interest) + money(disbursement.delay_interest)
            record = self.decisions.record(
                request,
                outcome="APPROVED",
                tier="DISBURSEMENT",
                decided_by="system",
                reason="Refund disbursed",
                clause=request.decision_clause,
                deductions=deductions,
                total_deductions=money(request.total_deductions) + money(disbursement.reprocessing_charges),
                interest_amount=interest,
                payable_amount=request.payable_amount,
                amends=self.decisions.latest(request),
                now=paid_at,
            )
            self.state_machine.advance(request, RefundState.APPROVED, "disbursement_confirmed", now=paid_at)
            logger.info(f"Disbursed {request.payable_amount} for {reference_id}")
            return record

    def record_failure(
        self,
        reference_id: str,
        cause: FailureCause,
        reason: str,
        now: Optional[datetime] = None,
    ) -> DisbursementDB:
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            disbursement = self._require_disbursement(request)
            if disbursement.status == DisbursementStatus.COMPLETED:
                raise ValidationError(f"{reference_id} has already been disbursed")

            disbursement.failure_count = (disbursement.failure_count or 0) + 1
            disbursement.last_failure_reason = reason
            if disbursement.status != DisbursementStatus.BLOCKED:
                disbursement.status = DisbursementStatus.FAILED

            charge = Decimal("0")
            if cause == FailureCause.STAKEHOLDER:
                disbursement.stakeholder_failure_count = (disbursement.stakeholder_failure_count or 0) + 1
                charge = reprocessing_charge(disbursement.stakeholder_failure_count)
                disbursement.reprocessing_charges = money(disbursement.reprocessing_charges) + charge
                # Stakeholder-caused delay restarts the payout timeline
                band = value_band(money(disbursement.principal))
                disbursement.due_date = add_business_days(now.date(), band.disbursement_days, self.config.holidays)

            request.payable_amount = self.payable(disbursement)
            self.audit.append(
                request,
                action="disbursement_failed",
                rationale=reason,
                inputs={"cause": cause.value, "failure_count": disbursement.failure_count, "charge": str(charge)},
                at=now,
            )
            if disbursement.failure_count >= REPEATED_FAILURE_ALERT_AT:
                self.operators.raise_item(
                    request, "DISBURSEMENT_REPEATED_FAILURE",
                    f"{reference_id}: {disbursement.failure_count} failed payout attempts (last: {reason})",
                    now=now,
                )
            logger.warning(f"Disbursement failed for {reference_id} ({cause.value}): {reason}")
            return disbursement

    def _require_disbursement(self, request: RefundRequestDB) -> DisbursementDB:
        if request.disbursement is None:
            raise ValidationError(f"{request.reference_id} has no scheduled disbursement")
        return request.disbursement
