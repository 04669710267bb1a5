"""
Verification Pipeline

Main orchestration service for refund adjudication.
Coordinates the state machine, eligibility rules, AML screening, reviewer
assignment, committee voting and the disbursement scheduler.

AUTHORITY MODEL:
- STAKEHOLDER: submit, attach_evidence, withdraw
- SYSTEM: acknowledge, L1 screening, retries, freezes on suspicious screening
- REVIEWER: L2 decision, committee votes, final-authority sign-off, compliance clearance

Every public operation runs under request_transaction(): one writer per
request, committed while the per-request lock is held.
"""
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ...config import EngineConfig, FreezeResumePolicy, load_config
from ...models.db_models import (
    ActorType, ComplianceReportDB, DocumentType, EvidenceDB, EvidenceStatus,
    LifecycleStage, RefundGround, RefundRequestDB, RefundState, ReviewerDB,
    ReviewerRole, RiskLevel, RiskScreeningDB, TransactionCategory, Vote, FRAUD_GROUNDS,
)
from ...models.domain import EligibilityFacts, EligibilityVerdict, RiskVerdict, money
from . import eligibility
from .aml_screener import AmlScreener, has_red_flag
from .audit_trail import AuditTrail
from .collaborators import Collaborators
from .committee import CommitteeService, FINAL_AUTHORITY_ROLES, tally
from .deadlines import limitation_deadline, retention_until, utcnow
from .decision_records import DecisionLedger
from .disbursement import DisbursementScheduler
from .errors import (
    AuthorizationError, ComplianceHold, IneligibleError, InfrastructureError, NotFoundError,
    TransitionError, ValidationError,
)
from .locking import DEFAULT_LOCKS, RequestLockRegistry, request_transaction
from .operator_queue import OperatorQueue
from .policy_documents import PolicyDocumentStore
from .retry import RetryPolicy, call_with_backoff
from .reviewer_assignment import ReviewerAssigner
from .state_machine import (
    RefundStateMachine, STAKEHOLDER_CANCELLABLE, STAKEHOLDER_WITHDRAWABLE, TERMINAL_STATES,
)
from .status_feed import StatusFeed

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("refund_engine.compliance")

_SCREENING_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="l1-screening")


MANDATORY_EVIDENCE = frozenset({
    DocumentType.IDENTITY,
    DocumentType.TRANSACTION_PROOF,
    DocumentType.BANK_PROOF,
})

MISSING_EVIDENCE_CLAUSE = "Art. 7.2(a)"
DUPLICATE_CLAUSE = "Art. 7.3(b)"
FORGED_DOCUMENT_CLAUSE = "Art. 7.5(b)"
COMMITTEE_CLAUSE = "Art. 8.4"
FINAL_AUTHORITY_CLAUSE = "Art. 11.2"

# States a compliance clearance may send back through L1 under restart_l1
RESTARTABLE_STATES = frozenset({
    RefundState.L1_SCREENING,
    RefundState.PENDING_RETRY,
    RefundState.L2_REVIEW,
    RefundState.L3_REVIEW,
})


class Recommendation:
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"

    ALL = (APPROVE, REJECT, ESCALATE)


@dataclass
class L1Findings:
    """
    Everything the L1 decision needs, gathered before any transition.

    The limitation, duplicate and missing-evidence findings come from the
    request itself; the rest need collaborators and stay None until those
    calls land.
    """
    deadline: date
    limitation_clause: str
    duplicate_of: Optional[str] = None
    missing_evidence: List[str] = field(default_factory=list)
    forged_evidence: List[str] = field(default_factory=list)
    verdict: Optional[EligibilityVerdict] = None
    risk: Optional[RiskVerdict] = None
    source_account: Optional[str] = None


def new_reference_id(now: datetime) -> str:
    return f"RRN-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


# =============================================================================
# VERIFICATION PIPELINE
# =============================================================================

class VerificationPipeline:
    def __init__(
        self,
        db_session: Session,
        collaborators: Collaborators,
        config: Optional[EngineConfig] = None,
        locks: Optional[RequestLockRegistry] = None,
    ):
        self.db = db_session
        self.collaborators = collaborators
        self.config = config or load_config()
        self.locks = locks or DEFAULT_LOCKS
        self.retry_policy = RetryPolicy.from_config(self.config)

        self.state_machine = RefundStateMachine(db_session)
        self.audit = AuditTrail(db_session)
        self.feed = StatusFeed(db_session)
        self.assigner = ReviewerAssigner(db_session)
        self.committee = CommitteeService(db_session)
        self.decisions = DecisionLedger(db_session)
        self.operators = OperatorQueue(db_session)
        self.policies = PolicyDocumentStore(db_session)
        self.scheduler = DisbursementScheduler(db_session, self.config, self.locks)
        self.screener = AmlScreener(
            collaborators.registry, collaborators.sanctions, self.config, self.retry_policy,
        )

    # =========================================================================
    # SUBMISSION (STAKEHOLDER)
    # =========================================================================

    def submit(
        self,
        stakeholder_id: str,
        transaction_id: str,
        category: TransactionCategory,
        lifecycle_stage: LifecycleStage,
        grounds: Iterable[RefundGround],
        amount_claimed: Decimal,
        payout_account: str,
        event_date: date,
        billing_cycle_end: Optional[date] = None,
        description: Optional[str] = None,
        facts: Optional[EligibilityFacts] = None,
        now: Optional[datetime] = None,
    ) -> RefundRequestDB:
        """
        Create a refund request in RECEIVED.

        Only structural validation happens here. Eligibility, limitation and
        duplicates are judged at L1 so every rejection gets a decision record.
        """
        now = now or utcnow()
        grounds = [RefundGround(g) for g in grounds]
        amount = money(amount_claimed)

        if not stakeholder_id or not transaction_id:
            raise ValidationError("Stakeholder and transaction identifiers are required")
        if amount <= 0:
            raise ValidationError("Amount claimed must be positive")
        if not payout_account:
            raise ValidationError("A payout account is required")
        if event_date > now.date():
            raise ValidationError("Event date cannot be in the future")

        governing = self.policies.governing_version(now)
        request = RefundRequestDB(
            id=str(uuid4()),
            reference_id=new_reference_id(now),
            stakeholder_id=stakeholder_id,
            transaction_id=transaction_id,
            category=TransactionCategory(category),
            lifecycle_stage=LifecycleStage(lifecycle_stage),
            grounds=[g.value for g in grounds],
            description=description,
            amount_claimed=amount,
            payout_account=payout_account,
            event_date=event_date,
            billing_cycle_end=billing_cycle_end,
            facts=(facts or EligibilityFacts()).to_dict(),
            policy_version=governing.version_id if governing else self.config.policy_version,
            state=RefundState.RECEIVED,
            state_entered_at=now,
            last_activity_at=now,
            submitted_at=now,
            review_flags=[],
            escalation_reasons=[],
            deductions=[],
        )
        try:
            self.db.add(request)
            self.db.flush()
            self.audit.append(
                request,
                action="submitted",
                rationale="Refund request submitted",
                actor=stakeholder_id,
                actor_type=ActorType.STAKEHOLDER,
                to_state=RefundState.RECEIVED.value,
                inputs={
                    "category": request.category.value,
                    "grounds": request.grounds,
                    "amount_claimed": str(amount),
                    "policy_version": request.policy_version,
                },
                at=now,
            )
            self.feed.publish_if_changed(request, None, RefundState.RECEIVED, at=now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Received refund request {request.reference_id} for {request.category.value}: {amount}")
        return request

    def attach_evidence(
        self,
        reference_id: str,
        stakeholder_id: str,
        document_type: DocumentType,
        content: bytes,
        filename: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EvidenceDB:
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            self._require_owner(request, stakeholder_id)
            if request.state in TERMINAL_STATES:
                raise ValidationError(f"{reference_id} is closed")
            if not content:
                raise ValidationError("Evidence content is empty")

            document_type = DocumentType(document_type)
            document_id = call_with_backoff(
                self.collaborators.documents.put, content,
                {"reference_id": reference_id, "document_type": document_type.value, "filename": filename or ""},
                operation="document_store.put", policy=self.retry_policy,
            )
            evidence = EvidenceDB(
                id=str(uuid4()),
                request_id=request.id,
                document_id=document_id,
                document_type=document_type,
                sha256=hashlib.sha256(content).hexdigest(),
                verification_status=EvidenceStatus.UNVERIFIED,
                retain_until=retention_until(request.submitted_at.date(), money(request.amount_claimed)),
                uploaded_at=now,
            )
            self.db.add(evidence)
            request.last_activity_at = now
            self.audit.append(
                request,
                action="evidence_attached",
                rationale=f"{document_type.value} document attached",
                actor=stakeholder_id,
                actor_type=ActorType.STAKEHOLDER,
                inputs={"evidence_id": evidence.id, "sha256": evidence.sha256},
                at=now,
            )
            return evidence

    # =========================================================================
    # ACKNOWLEDGMENT AND L1 SCREENING (SYSTEM)
    # =========================================================================

    def acknowledge(self, reference_id: str, now: Optional[datetime] = None) -> RefundRequestDB:
        """Timestamp-only transition. Idempotent once past RECEIVED."""
        with request_transaction(self.db, reference_id, self.locks) as request:
            if request.state == RefundState.RECEIVED:
                self.state_machine.advance(request, RefundState.ACKNOWLEDGED, "acknowledged", now=now)
            return request

    def run_l1_screening(self, reference_id: str, now: Optional[datetime] = None) -> RefundRequestDB:
        """
        Run the automated L1 checks and route the request.

        RECEIVED requests are acknowledged first. Outcomes: L1_AUTO_REJECTED,
        L2_REVIEW (possibly enhanced), PENDING_RETRY, or FROZEN.
        """
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            if request.state == RefundState.RECEIVED:
                self.state_machine.advance(request, RefundState.ACKNOWLEDGED, "acknowledged", now=now)
            self._screen_l1(request, now)
            return request

    def retry_pending(self, reference_id: str, now: Optional[datetime] = None) -> RefundRequestDB:
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            if request.state != RefundState.PENDING_RETRY:
                raise ValidationError(f"{reference_id} is not awaiting retry")
            self._screen_l1(request, now)
            if request.state != RefundState.PENDING_RETRY:
                self.operators.resolve_for(request, "PENDING_RETRY", now=now)
            return request

    def _screen_l1(self, request: RefundRequestDB, now: datetime) -> None:
        if request.state in (RefundState.ACKNOWLEDGED, RefundState.PENDING_RETRY):
            self.state_machine.advance(request, RefundState.L1_SCREENING, "l1_screening_started", now=now)
        elif request.state != RefundState.L1_SCREENING:
            raise ValidationError(f"{request.reference_id} cannot be screened from {request.state.value}")

        local = self._local_findings(request)
        try:
            findings = self._gather_l1(request, local, now)
        except InfrastructureError as e:
            self._park_for_retry(request, e, now)
            return
        except Exception as e:
            logger.exception(f"L1 checks failed unexpectedly for {request.reference_id}")
            rejection = self._l1_rejection(request, local)
            if rejection:
                reason, clause = rejection
                self._reject(request, RefundState.L1_AUTO_REJECTED, "L1", "system", reason, clause, now)
                return
            # Never advance on a failed automated check: a human looks at it
            self._route_to_l2(request, [f"L1_CHECK_FAILED: {type(e).__name__}: {e}"], now)
            return

        request.source_account = findings.source_account
        self._store_eligibility(request, findings.verdict)
        if self._apply_risk_verdict(request, findings.risk, now):
            return

        rejection = self._l1_rejection(request, findings)
        if rejection:
            reason, clause = rejection
            self._reject(request, RefundState.L1_AUTO_REJECTED, "L1", "system", reason, clause, now)
            return

        flags = []
        if request.risk_level and request.risk_level != RiskLevel.CLEAR:
            flags.append(f"AML_{request.risk_level.value}")
        if has_red_flag(findings.risk.indicators):
            flags.append("AML_RED_FLAG")
        if findings.verdict.requires_l3:
            flags.append("FRAUD_GROUND_ASSERTED")
        self._route_to_l2(request, flags, now)

    def _local_findings(self, request: RefundRequestDB) -> L1Findings:
        """Limitation, duplicate and missing-evidence checks; no collaborator involved."""
        grounds = [RefundGround(g) for g in request.grounds or []]
        deadline, clause = limitation_deadline(
            request.category, grounds, request.event_date, request.billing_cycle_end, self.config.holidays,
        )
        present = {e.document_type for e in request.evidence}
        return L1Findings(
            deadline=deadline,
            limitation_clause=clause,
            duplicate_of=self._find_duplicate(request),
            missing_evidence=sorted(t.value for t in MANDATORY_EVIDENCE - present),
        )

    def _gather_l1(self, request: RefundRequestDB, local: L1Findings, now: datetime) -> L1Findings:
        grounds = [RefundGround(g) for g in request.grounds or []]
        facts = self._eligibility_facts(request)
        amount = money(request.amount_claimed)

        # Eligibility and AML are independent reads; both must land before routing
        eligibility_future = _SCREENING_EXECUTOR.submit(
            eligibility.evaluate, request.category, request.lifecycle_stage, grounds, amount, facts,
        )
        risk_future = _SCREENING_EXECUTOR.submit(
            self.screener.screen, request.stakeholder_id, amount, request.payout_account,
            request.transaction_id, now,
        )
        profile_future = _SCREENING_EXECUTOR.submit(
            call_with_backoff, self.collaborators.registry.lookup, request.stakeholder_id,
            operation="stakeholder_registry.lookup", policy=self.retry_policy,
        )

        forged = []
        for evidence in request.evidence:
            intact = call_with_backoff(
                self.collaborators.documents.verify_integrity, evidence.document_id,
                operation="document_store.verify_integrity", policy=self.retry_policy,
            )
            if not intact:
                evidence.verification_status = EvidenceStatus.REJECTED_FORGED
                evidence.verified_by = "system"
                evidence.verified_at = now
                forged.append(evidence.id)

        verdict = eligibility_future.result()
        risk = risk_future.result()
        profile = profile_future.result()

        return replace(
            local,
            forged_evidence=forged,
            verdict=verdict,
            risk=risk,
            source_account=profile.source_account_for(request.transaction_id),
        )

    def _find_duplicate(self, request: RefundRequestDB) -> Optional[str]:
        """Earlier open request for the same transaction, if any."""
        earlier = self.db.query(RefundRequestDB).filter(
            RefundRequestDB.transaction_id == request.transaction_id,
            RefundRequestDB.id != request.id,
            or_(
                RefundRequestDB.submitted_at < request.submitted_at,
                and_(
                    RefundRequestDB.submitted_at == request.submitted_at,
                    RefundRequestDB.reference_id < request.reference_id,
                ),
            ),
            RefundRequestDB.state.notin_(list(TERMINAL_STATES)),
        ).order_by(RefundRequestDB.submitted_at).first()
        return earlier.reference_id if earlier else None

    @staticmethod
    def _l1_rejection(request: RefundRequestDB, findings: L1Findings):
        """(reason, clause) for the first auto-reject condition met, else None."""
        if request.submitted_at.date() > findings.deadline:
            return (
                f"Request submitted after the limitation period ended on {findings.deadline.isoformat()}",
                findings.limitation_clause,
            )
        if findings.duplicate_of:
            return "Duplicate of an open refund request for the same transaction", DUPLICATE_CLAUSE
        if findings.missing_evidence:
            return f"Mandatory documents missing: {', '.join(findings.missing_evidence)}", MISSING_EVIDENCE_CLAUSE
        if findings.forged_evidence:
            return "Submitted document failed authenticity verification", FORGED_DOCUMENT_CLAUSE
        if findings.verdict is not None and not findings.verdict.is_eligible:
            return findings.verdict.reason, findings.verdict.clause
        return None

    def _park_for_retry(self, request: RefundRequestDB, error: InfrastructureError, now: datetime) -> None:
        request.retry_count = (request.retry_count or 0) + 1
        self.state_machine.advance(
            request, RefundState.PENDING_RETRY, "collaborator_unavailable",
            inputs={"operation": error.operation, "retry_count": request.retry_count}, now=now,
        )
        self.operators.raise_item(
            request, "PENDING_RETRY",
            f"{request.reference_id}: {error.operation or 'collaborator'} unavailable after retries",
            now=now,
        )
        logger.warning(f"{request.reference_id} parked for retry: {error}")

    def _route_to_l2(self, request: RefundRequestDB, flags: List[str], now: datetime) -> None:
        if flags:
            request.enhanced_review = True
            request.review_flags = sorted(set(request.review_flags or []) | set(flags))
        self.state_machine.advance(
            request, RefundState.L2_REVIEW,
            "l1_flagged" if request.enhanced_review else "l1_passed",
            inputs={"flags": flags}, now=now,
        )
        self.assigner.assign(request, tier="L2", now=now)

    @staticmethod
    def _eligibility_facts(request: RefundRequestDB, corrections: Optional[Dict[str, Any]] = None) -> EligibilityFacts:
        """Stored facts with the claim date pinned to the submission date."""
        data = {**(request.facts or {}), **(corrections or {})}
        data["claim_date"] = request.submitted_at.date().isoformat()
        if not data.get("subscription_date"):
            data["subscription_date"] = request.event_date.isoformat()
        return EligibilityFacts.from_dict(data)

    def _store_eligibility(self, request: RefundRequestDB, verdict: EligibilityVerdict) -> None:
        request.eligibility = verdict.to_dict()
        request.deductions = [d.to_dict() for d in verdict.deductions]
        request.total_deductions = verdict.total_deductions

    # =========================================================================
    # AML VERDICTS AND COMPLIANCE HOLDS
    # =========================================================================

    def rescreen(self, reference_id: str, now: Optional[datetime] = None) -> RiskVerdict:
        """Re-run AML screening at the request's current stage."""
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            if request.state in TERMINAL_STATES or request.state == RefundState.FROZEN:
                raise ValidationError(f"{reference_id} cannot be re-screened in its current state")
            verdict = self.screener.screen(
                request.stakeholder_id, money(request.amount_claimed), request.payout_account,
                request.transaction_id, now,
            )
            self._apply_risk_verdict(request, verdict, now)
            return verdict

    def _apply_risk_verdict(self, request: RefundRequestDB, verdict: RiskVerdict, now: datetime) -> bool:
        """Persist the screening; freeze on a suspicious verdict. Returns True if frozen."""
        self.db.add(RiskScreeningDB(
            id=str(uuid4()),
            request_id=request.id,
            level=verdict.level,
            indicators=list(verdict.indicators),
            list_version=verdict.list_version,
            stage=request.state.value,
            screened_at=now,
        ))
        request.risk_level = verdict.level

        if verdict.is_suspicious and request.compliance_cleared:
            # Already cleared once: the hit is a known false positive, review it with EDD
            request.risk_level = RiskLevel.EDD_REQUIRED
            request.enhanced_review = True
            return False
        if verdict.requires_edd or has_red_flag(verdict.indicators):
            request.enhanced_review = True
        if not verdict.is_suspicious:
            return False

        self.db.add(ComplianceReportDB(
            id=str(uuid4()),
            request_id=request.id,
            report_type="STR",
            indicators=list(verdict.indicators),
            status="PENDING_FILING",
            created_at=now,
        ))
        success, message = self.state_machine.freeze(
            request, "aml_suspicious",
            inputs={"indicators": list(verdict.indicators), "list_version": verdict.list_version},
            now=now,
        )
        if not success:
            raise TransitionError(f"{request.reference_id}: {message}")
        compliance_logger.warning(
            f"{request.reference_id} frozen on suspicious screening; STR pending ({verdict.indicators})"
        )
        return True

    def clear_compliance_hold(
        self,
        reference_id: str,
        reviewer: ReviewerDB,
        clearance_reference: str,
        rationale: str,
        now: Optional[datetime] = None,
    ) -> RefundRequestDB:
        """
        External clearance of a frozen request.

        Where the request goes next follows config.freeze_resume_policy:
        resume_prior returns it to the state it was frozen in; restart_l1
        re-runs L1 for requests frozen before a decision was taken.
        """
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            if reviewer.role != ReviewerRole.COMPLIANCE:
                raise AuthorizationError("Only Compliance may clear a compliance hold")
            if request.state != RefundState.FROZEN:
                raise ValidationError(f"{reference_id} is not frozen")
            if not clearance_reference or not rationale:
                raise ValidationError("Clearance requires a reference and a rationale")

            prior = request.frozen_from_state
            target = prior
            if self.config.freeze_resume_policy == FreezeResumePolicy.RESTART_L1 and prior in RESTARTABLE_STATES:
                target = RefundState.L1_SCREENING
                self.assigner.complete(request, "L2", now=now)

            request.compliance_cleared = True
            for report in self.db.query(ComplianceReportDB).filter(
                ComplianceReportDB.request_id == request.id,
                ComplianceReportDB.status == "PENDING_FILING",
            ).all():
                report.status = "CLEARED"
                report.cleared_at = now
                report.cleared_by = reviewer.id
                report.clearance_reference = clearance_reference

            success, message = self.state_machine.release(
                request, target, actor=reviewer.id, actor_role=reviewer.role.value,
                rationale=rationale, now=now,
            )
            if not success:
                raise TransitionError(f"{reference_id}: {message}")
            self.operators.resolve_for(request, "FROZEN_TOO_LONG", now=now)
            compliance_logger.info(f"{reference_id} cleared by {reviewer.email} ({clearance_reference}), resuming at {target.value}")

            if target == RefundState.L1_SCREENING:
                self._screen_l1(request, now)
            return request

    # =========================================================================
    # L2 REVIEW (REVIEWER)
    # =========================================================================

    def mandatory_escalation_reasons(self, request: RefundRequestDB, verdict: EligibilityVerdict) -> List[str]:
        reasons = []
        principal = max(money(request.amount_claimed) - verdict.total_deductions, Decimal("0.00"))
        if principal > self.config.high_value_threshold:
            reasons.append("HIGH_VALUE")
        if verdict.requires_l3 or FRAUD_GROUNDS.intersection(RefundGround(g) for g in request.grounds or []):
            reasons.append("FRAUD_GROUND")
        if request.risk_level == RiskLevel.EDD_REQUIRED:
            reasons.append("EDD_REQUIRED")
        return reasons

    def record_l2_decision(
        self,
        reference_id: str,
        reviewer: ReviewerDB,
        recommendation: str,
        rationale: str,
        clause: Optional[str] = None,
        verified_evidence: Iterable[str] = (),
        forged_evidence: Iterable[str] = (),
        fact_corrections: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RefundRequestDB:
        """
        Apply the L2 reviewer's findings and recommendation.

        Mandatory escalation (high value, fraud ground, EDD) overrides the
        recommendation. A forged document rejects summarily.
        """
        now = now or utcnow()
        if recommendation not in Recommendation.ALL:
            raise ValidationError(f"Unknown recommendation {recommendation}")
        if not rationale or not rationale.strip():
            raise ValidationError("An L2 decision must record its rationale")

        with request_transaction(self.db, reference_id, self.locks, expected_version) as request:
            if reviewer.role != ReviewerRole.RPO:
                raise AuthorizationError("L2 decisions are taken by a refund processing officer")
            if request.state == RefundState.FROZEN:
                raise ComplianceHold(reference_id)
            if request.state != RefundState.L2_REVIEW:
                raise ValidationError(f"{reference_id} is not in L2 review")

            forged = self._mark_evidence(request, reviewer, verified_evidence, forged_evidence, now)

            verdict = EligibilityVerdict.from_dict(request.eligibility) if request.eligibility else None
            if fact_corrections or verdict is None:
                facts = self._eligibility_facts(request, fact_corrections)
                request.facts = facts.to_dict()
                verdict = eligibility.evaluate(
                    request.category, request.lifecycle_stage, request.grounds,
                    money(request.amount_claimed), facts,
                )
                self._store_eligibility(request, verdict)

            self.audit.append(
                request,
                action="l2_decision",
                rationale=rationale,
                actor=reviewer.id,
                actor_type=ActorType.REVIEWER,
                actor_role=reviewer.role.value,
                inputs={
                    "recommendation": recommendation,
                    "eligibility": verdict.outcome.value,
                    "total_deductions": str(verdict.total_deductions),
                    "fact_corrections": fact_corrections or {},
                    "forged_evidence": forged,
                },
                at=now,
            )
            self.assigner.complete(request, "L2", now=now)

            if forged:
                self._reject(request, RefundState.REJECTED, "L2", reviewer.id,
                             "Submitted document failed authenticity verification", FORGED_DOCUMENT_CLAUSE, now)
                return request

            if recommendation == Recommendation.APPROVE and not verdict.is_eligible:
                raise IneligibleError(f"Cannot approve an ineligible request: {verdict.reason}", verdict.clause)

            reasons = self.mandatory_escalation_reasons(request, verdict)
            if recommendation == Recommendation.ESCALATE:
                reasons.append("REVIEWER_ESCALATION")
            if reasons:
                request.escalation_reasons = sorted(set(request.escalation_reasons or []) | set(reasons))
                self.state_machine.advance(
                    request, RefundState.L3_REVIEW, "l2_escalated",
                    actor=reviewer.id, actor_type=ActorType.REVIEWER, actor_role=reviewer.role.value,
                    inputs={"reasons": reasons, "recommendation": recommendation}, now=now,
                )
                return request

            if recommendation == Recommendation.REJECT:
                self._reject(request, RefundState.REJECTED, "L2", reviewer.id,
                             rationale, clause or verdict.clause, now)
                return request

            self._approve(request, "L2", reviewer, now)
            return request

    def _mark_evidence(self, request, reviewer, verified_ids, forged_ids, now) -> List[str]:
        by_id = {e.id: e for e in request.evidence}
        unknown = (set(verified_ids) | set(forged_ids)) - set(by_id)
        if unknown:
            raise ValidationError(f"Unknown evidence ids: {sorted(unknown)}")

        for evidence_id in verified_ids:
            if by_id[evidence_id].verification_status != EvidenceStatus.REJECTED_FORGED:
                by_id[evidence_id].verification_status = EvidenceStatus.VERIFIED
                by_id[evidence_id].verified_by = reviewer.id
                by_id[evidence_id].verified_at = now
        for evidence_id in forged_ids:
            by_id[evidence_id].verification_status = EvidenceStatus.REJECTED_FORGED
            by_id[evidence_id].verified_by = reviewer.id
            by_id[evidence_id].verified_at = now

        return sorted(e.id for e in request.evidence if e.verification_status == EvidenceStatus.REJECTED_FORGED)

    # =========================================================================
    # L3 COMMITTEE AND FINAL AUTHORITY (REVIEWER)
    # =========================================================================

    def record_committee_vote(
        self,
        reference_id: str,
        reviewer: ReviewerDB,
        vote: Vote,
        rationale: str,
        now: Optional[datetime] = None,
    ) -> RefundRequestDB:
        """Record one committee vote; finalize once Finance, Compliance and Legal have voted."""
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            if request.state == RefundState.FROZEN:
                raise ComplianceHold(reference_id)
            if request.state != RefundState.L3_REVIEW:
                raise ValidationError(f"{reference_id} is not in committee review")

            self.committee.record_vote(request, reviewer, Vote(vote), rationale, now=now)
            request.last_activity_at = now

            verdict = EligibilityVerdict.from_dict(request.eligibility) if request.eligibility else None
            fraud = bool(verdict and verdict.requires_l3) or bool(
                FRAUD_GROUNDS.intersection(RefundGround(g) for g in request.grounds or [])
            )
            outcome = tally(self.committee.votes_for(request), fraud_asserted=fraud)
            if not outcome.decided:
                return request

            if outcome.decision == Vote.REJECT:
                reason = "Rejected by the refund committee"
                self._reject(request, RefundState.REJECTED, "L3", "committee", reason,
                             COMMITTEE_CLAUSE if outcome.compliance_veto or verdict is None else verdict.clause,
                             now, dissent=outcome.dissent)
                return request

            if verdict is None or not verdict.is_eligible:
                raise ValidationError(f"Committee approval of {reference_id} has no eligible verdict")

            principal = DisbursementScheduler.principal_for(request)
            if principal > self.config.final_authority_threshold:
                self.state_machine.advance(
                    request, RefundState.AWAITING_FINAL_AUTHORITY, "committee_approved",
                    inputs={"approvals": outcome.approvals, "rejections": outcome.rejections}, now=now,
                )
                return request

            self._approve(request, "L3", None, now, dissent=outcome.dissent)
            return request

    def sign_off(
        self,
        reference_id: str,
        reviewer: ReviewerDB,
        approve: bool,
        rationale: str,
        now: Optional[datetime] = None,
    ) -> RefundRequestDB:
        """Named-approver sign-off for amounts above the final-authority threshold."""
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            if reviewer.role not in FINAL_AUTHORITY_ROLES:
                raise AuthorizationError("Sign-off requires MD/CEO or Board authority")
            if request.state == RefundState.FROZEN:
                raise ComplianceHold(reference_id)
            if request.state != RefundState.AWAITING_FINAL_AUTHORITY:
                raise ValidationError(f"{reference_id} is not awaiting sign-off")
            if not rationale or not rationale.strip():
                raise ValidationError("Sign-off must record its rationale")

            self.audit.append(
                request,
                action="final_authority_sign_off",
                rationale=rationale,
                actor=reviewer.id,
                actor_type=ActorType.REVIEWER,
                actor_role=reviewer.role.value,
                inputs={"approve": approve},
                at=now,
            )
            dissent = tally(self.committee.votes_for(request)).dissent
            if approve:
                self._approve(request, "FINAL_AUTHORITY", reviewer, now, dissent=dissent)
            else:
                self._reject(request, RefundState.REJECTED, "FINAL_AUTHORITY", reviewer.id,
                             "Not approved by the final approving authority", FINAL_AUTHORITY_CLAUSE, now,
                             dissent=dissent)
            return request

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    def _approve(self, request, tier, reviewer, now, dissent=None) -> None:
        verdict = EligibilityVerdict.from_dict(request.eligibility)
        request.decision = "APPROVED"
        request.decision_reason = verdict.reason
        request.decision_clause = verdict.clause
        actor = reviewer.id if reviewer else "committee"

        self.decisions.record(
            request,
            outcome="APPROVED",
            tier=tier,
            decided_by=actor,
            reason=verdict.reason,
            clause=verdict.clause,
            deductions=list(request.deductions or []),
            total_deductions=money(request.total_deductions),
            payable_amount=DisbursementScheduler.principal_for(request),
            dissent=dissent,
            now=now,
        )
        self.state_machine.advance(
            request, RefundState.DISBURSING, f"{tier.lower()}_approved",
            actor=actor,
            actor_type=ActorType.REVIEWER if reviewer else ActorType.SYSTEM,
            actor_role=reviewer.role.value if reviewer else None,
            now=now,
        )
        self.scheduler.schedule(request, now=now)

    def _reject(self, request, to_state, tier, decided_by, reason, clause, now, dissent=None) -> None:
        request.decision = "REJECTED"
        request.decision_reason = reason
        request.decision_clause = clause
        request.payable_amount = Decimal("0.00")

        self.decisions.record(
            request,
            outcome="REJECTED",
            tier=tier,
            decided_by=decided_by,
            reason=reason,
            clause=clause,
            deductions=list(request.deductions or []),
            total_deductions=money(request.total_deductions),
            payable_amount=Decimal("0"),
            dissent=dissent,
            now=now,
        )
        self.state_machine.advance(
            request, to_state, f"{tier.lower()}_rejected",
            actor=decided_by,
            actor_type=ActorType.SYSTEM if decided_by in ("system", "committee") else ActorType.REVIEWER,
            inputs={"clause": clause}, now=now,
        )
        logger.info(f"{request.reference_id} rejected at {tier}: {reason} ({clause})")

    # =========================================================================
    # WITHDRAWAL (STAKEHOLDER)
    # =========================================================================

    def withdraw(
        self,
        reference_id: str,
        stakeholder_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefundRequestDB:
        """
        Cancel before manual review, or record WITHDRAWN_BY_STAKEHOLDER during it.
        Nothing is deleted either way.
        """
        now = now or utcnow()
        with request_transaction(self.db, reference_id, self.locks) as request:
            self._require_owner(request, stakeholder_id)
            if request.state in STAKEHOLDER_CANCELLABLE:
                target = RefundState.CANCELLED
            elif request.state in STAKEHOLDER_WITHDRAWABLE:
                target = RefundState.WITHDRAWN_BY_STAKEHOLDER
            else:
                raise ValidationError(f"{reference_id} can no longer be withdrawn")

            self.state_machine.advance(
                request, target, reason or "withdrawn_by_stakeholder",
                actor=stakeholder_id, actor_type=ActorType.STAKEHOLDER, now=now,
            )
            self.assigner.complete(request, "L2", now=now)
            self.operators.resolve_for(request, "PENDING_RETRY", now=now)
            return request

    # =========================================================================
    # READS
    # =========================================================================

    def get_request(self, reference_id: str) -> RefundRequestDB:
        request = self.db.query(RefundRequestDB).filter(
            RefundRequestDB.reference_id == reference_id
        ).one_or_none()
        if request is None:
            raise NotFoundError(f"Refund request {reference_id} not found")
        return request

    def status(self, reference_id: str, stakeholder_id: Optional[str] = None) -> Dict[str, Any]:
        """Stakeholder-facing status. Never exposes screening outcomes."""
        request = self.get_request(reference_id)
        if stakeholder_id is not None:
            self._require_owner(request, stakeholder_id)
        return self.feed.public_view(request)

    def audit_trail(self, reference_id: str, include_confidential: bool = False):
        request = self.get_request(reference_id)
        return self.audit.records_for(request.id, include_confidential=include_confidential)

    @staticmethod
    def _require_owner(request: RefundRequestDB, stakeholder_id: str) -> None:
        if request.stakeholder_id != stakeholder_id:
            raise NotFoundError(f"Refund request {request.reference_id} not found")
