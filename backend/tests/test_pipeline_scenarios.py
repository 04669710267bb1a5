"""
End-to-end tests for the Verification Pipeline.

Scenarios:
1. Pre-allotment voluntary withdrawal of 50,000 -> approved at L2 and paid
2. Completed advisory service, dissatisfaction -> auto-rejected at L1
3. 30 lakh issuer cancellation -> L3 -> final authority -> disbursing
4. Exact sanctions match -> frozen, stakeholder sees "under review"

Also: L1 auto-reject conditions, collaborator outages, withdrawal,
mandatory escalation, committee outcomes, compliance clearance,
stale decisions and reviewer authority.
"""
import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from refund_engine.config import FreezeResumePolicy
from refund_engine.models.db_models import (
    ComplianceReportDB, DisbursementStatus, DocumentType, EvidenceDB, EvidenceStatus, LifecycleStage,
    OperatorItemStatus, OperatorQueueDB, RefundGround, RefundState, ReviewAssignmentDB, ReviewerRole,
    TransactionCategory, Vote,
)
from refund_engine.models.domain import EligibilityFacts
from refund_engine.services.adjudication import Recommendation, VerificationPipeline
from refund_engine.services.adjudication.collaborators import SanctionsEntry
from refund_engine.services.adjudication.errors import (
    AuthorizationError, ComplianceHold, ConcurrentTransitionError, IneligibleError, InfrastructureError,
    NotFoundError, ValidationError,
)

from conftest import NOW, SOURCE_ACCOUNT, STAKEHOLDER_ID

LATER = NOW + timedelta(hours=4)


def _state_path(pipeline, reference_id):
    return [r.to_state for r in pipeline.audit_trail(reference_id) if r.to_state]


def _sanction(collaborators):
    collaborators.sanctions.refresh(
        [SanctionsEntry("Asha Verma", "OFAC", date_of_birth=date(1985, 6, 14))], "ofac-2026-03",
    )


# =============================================================================
# SCENARIO 1: APPROVED AT L2
# =============================================================================

class TestVoluntaryWithdrawalApproved:
    """50,000 pre-allotment voluntary withdrawal, clean screening."""

    def test_l1_routes_to_l2(self, pipeline, make_request, reviewers):
        reference_id = make_request()

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L2_REVIEW
        assert request.enhanced_review is False
        assert request.total_deductions == Decimal("1000.00")
        assert request.source_account == SOURCE_ACCOUNT

    def test_l1_assigns_an_rpo(self, pipeline, make_request, reviewers, db_session):
        reference_id = make_request()
        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assignment = db_session.query(ReviewAssignmentDB).filter(
            ReviewAssignmentDB.request_id == request.id
        ).one()
        assert assignment.reviewer_id == reviewers[ReviewerRole.RPO].id
        assert assignment.tier == "L2"

    def test_approved_and_paid(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE,
            "Identity, payment and bank proof verified", now=LATER,
        )

        assert request.state == RefundState.DISBURSING
        assert request.payable_amount == Decimal("49000.00")
        assert request.disbursement.status == DisbursementStatus.SCHEDULED
        assert request.disbursement.due_date == date(2026, 3, 5)

        record = pipeline.scheduler.confirm(reference_id, paid_at=datetime(2026, 3, 4, 12, 0))

        assert record.payable_amount == Decimal("49000.00")
        assert record.interest_amount == Decimal("0.00")
        request = pipeline.get_request(reference_id)
        assert request.state == RefundState.APPROVED
        assert pipeline.status(reference_id)["status"] == "processed"
        assert _state_path(pipeline, reference_id) == [
            "RECEIVED", "ACKNOWLEDGED", "L1_SCREENING", "L2_REVIEW", "DISBURSING", "APPROVED",
        ]

    def test_decision_records_chain(self, pipeline, make_request, reviewers):
        """The payout amends the approval; nothing is overwritten."""
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)
        pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Verified", now=LATER)
        pipeline.scheduler.confirm(reference_id, paid_at=datetime(2026, 3, 4, 12, 0))

        history = pipeline.decisions.history(pipeline.get_request(reference_id))

        assert [r.tier for r in history] == ["L2", "DISBURSEMENT"]
        assert history[1].amends_decision_id == history[0].id
        assert history[0].clause == "Art. 5.1(a)(i)"
        assert history[0].checkpoints["l2_started_at"] == NOW.isoformat()

    def test_fact_corrections_recompute_deductions(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Gateway fee per statement",
            fact_corrections={"gateway_fee": "250"}, now=LATER,
        )

        assert request.total_deductions == Decimal("1250.00")
        assert request.payable_amount == Decimal("48750.00")

    def test_l2_reject_with_clause(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.REJECT,
            "Subscription was already accepted by the issuer", clause="Art. 5.1(a)", now=LATER,
        )

        assert request.state == RefundState.REJECTED
        assert request.decision_clause == "Art. 5.1(a)"
        assert request.payable_amount == Decimal("0.00")


# =============================================================================
# SCENARIO 2: AUTO-REJECTED AT L1
# =============================================================================

class TestCompletedDissatisfactionRejected:
    """Completed advisory engagement, dissatisfaction ground."""

    def test_auto_rejected_with_clause(self, pipeline, make_request):
        reference_id = make_request(
            category=TransactionCategory.ADVISORY_SERVICE,
            stage=LifecycleStage.COMPLETED,
            grounds=(RefundGround.DISSATISFACTION,),
        )

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 4.3(c)"
        assert _state_path(pipeline, reference_id) == [
            "RECEIVED", "ACKNOWLEDGED", "L1_SCREENING", "L1_AUTO_REJECTED",
        ]

    def test_stakeholder_sees_reason_and_clause(self, pipeline, make_request):
        reference_id = make_request(
            category=TransactionCategory.ADVISORY_SERVICE,
            stage=LifecycleStage.COMPLETED,
            grounds=(RefundGround.DISSATISFACTION,),
        )
        pipeline.run_l1_screening(reference_id, now=NOW)

        status = pipeline.status(reference_id, stakeholder_id=STAKEHOLDER_ID)

        assert status["status"] == "rejected"
        assert "Art. 4.3(c)" in status["summary"]

    def test_decision_record_written(self, pipeline, make_request):
        reference_id = make_request(
            category=TransactionCategory.ADVISORY_SERVICE,
            stage=LifecycleStage.COMPLETED,
            grounds=(RefundGround.DISSATISFACTION,),
        )
        pipeline.run_l1_screening(reference_id, now=NOW)

        record = pipeline.decisions.latest(pipeline.get_request(reference_id))
        assert record.outcome == "REJECTED"
        assert record.tier == "L1"
        assert record.decided_by == "system"


# =============================================================================
# SCENARIO 3: HIGH VALUE THROUGH L3 AND FINAL AUTHORITY
# =============================================================================

class TestHighValueIssuerCancellation:
    """30 lakh issuer cancellation needs the committee and a named approver."""

    def _at_l3(self, pipeline, make_request, reviewers):
        reference_id = make_request(amount="3000000", grounds=(RefundGround.ISSUER_CANCELLATION,))
        pipeline.run_l1_screening(reference_id, now=NOW)
        pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Issuer withdrew the offer", now=LATER,
        )
        return reference_id

    def _committee_approves(self, pipeline, reviewers, reference_id):
        for role in (ReviewerRole.FINANCE, ReviewerRole.COMPLIANCE, ReviewerRole.LEGAL):
            pipeline.record_committee_vote(reference_id, reviewers[role], Vote.APPROVE, f"{role.value} approves", now=LATER)

    def test_high_value_escalates_despite_approval(self, pipeline, make_request, reviewers):
        reference_id = self._at_l3(pipeline, make_request, reviewers)

        request = pipeline.get_request(reference_id)
        assert request.state == RefundState.L3_REVIEW
        assert request.escalation_reasons == ["HIGH_VALUE"]

    def test_committee_approval_awaits_final_authority(self, pipeline, make_request, reviewers):
        reference_id = self._at_l3(pipeline, make_request, reviewers)

        pipeline.record_committee_vote(reference_id, reviewers[ReviewerRole.FINANCE], Vote.APPROVE, "Funds held", now=LATER)
        assert pipeline.get_request(reference_id).state == RefundState.L3_REVIEW

        self._committee_approves_rest(pipeline, reviewers, reference_id)
        assert pipeline.get_request(reference_id).state == RefundState.AWAITING_FINAL_AUTHORITY

    def _committee_approves_rest(self, pipeline, reviewers, reference_id):
        for role in (ReviewerRole.COMPLIANCE, ReviewerRole.LEGAL):
            pipeline.record_committee_vote(reference_id, reviewers[role], Vote.APPROVE, f"{role.value} approves", now=LATER)

    def test_sign_off_moves_to_disbursing(self, pipeline, make_request, reviewers):
        reference_id = self._at_l3(pipeline, make_request, reviewers)
        self._committee_approves(pipeline, reviewers, reference_id)

        request = pipeline.sign_off(
            reference_id, reviewers[ReviewerRole.MD_CEO], True, "Approved under delegated authority", now=LATER,
        )

        assert request.state == RefundState.DISBURSING
        assert request.payable_amount == Decimal("3000000.00")
        assert pipeline.decisions.latest(request).tier == "FINAL_AUTHORITY"
        assert request.disbursement.due_date == date(2026, 3, 16)
        assert _state_path(pipeline, reference_id)[-4:] == [
            "L2_REVIEW", "L3_REVIEW", "AWAITING_FINAL_AUTHORITY", "DISBURSING",
        ]

    def test_sign_off_requires_named_authority(self, pipeline, make_request, reviewers):
        reference_id = self._at_l3(pipeline, make_request, reviewers)
        self._committee_approves(pipeline, reviewers, reference_id)

        with pytest.raises(AuthorizationError):
            pipeline.sign_off(reference_id, reviewers[ReviewerRole.FINANCE], True, "Looks right", now=LATER)

    def test_sign_off_refusal_rejects(self, pipeline, make_request, reviewers):
        reference_id = self._at_l3(pipeline, make_request, reviewers)
        self._committee_approves(pipeline, reviewers, reference_id)

        request = pipeline.sign_off(reference_id, reviewers[ReviewerRole.BOARD], False, "Issuer dispute pending", now=LATER)

        assert request.state == RefundState.REJECTED
        assert request.decision_clause == "Art. 11.2"

    def test_evidence_retained_eight_years(self, pipeline, make_request, reviewers, db_session):
        reference_id = self._at_l3(pipeline, make_request, reviewers)
        request = pipeline.get_request(reference_id)

        retain = {e.retain_until for e in db_session.query(EvidenceDB).filter(EvidenceDB.request_id == request.id)}
        assert retain == {date(2034, 3, 2)}


# =============================================================================
# SCENARIO 4: SANCTIONS MATCH FREEZES
# =============================================================================

class TestSanctionsFreeze:
    """Exact sanctions match at L1."""

    def test_frozen_but_public_status_under_review(self, pipeline, collaborators, make_request):
        reference_id = make_request()
        _sanction(collaborators)

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.FROZEN
        assert request.frozen_from_state == RefundState.L1_SCREENING
        status = pipeline.status(reference_id, stakeholder_id=STAKEHOLDER_ID)
        assert status["status"] == "under_review"
        assert [e["status"] for e in status["timeline"]] == ["received", "under_review"]
        assert "FROZEN" not in _state_path(pipeline, reference_id)

    def test_str_logged(self, pipeline, collaborators, make_request, db_session):
        reference_id = make_request()
        _sanction(collaborators)
        request = pipeline.run_l1_screening(reference_id, now=NOW)

        report = db_session.query(ComplianceReportDB).filter(ComplianceReportDB.request_id == request.id).one()
        assert report.status == "PENDING_FILING"
        assert "SANCTIONS_EXACT_MATCH:OFAC" in report.indicators

    def test_freeze_precedes_auto_reject(self, pipeline, collaborators, make_request):
        """A suspicious request is frozen even when it would also be rejected."""
        reference_id = make_request(documents=(DocumentType.IDENTITY,))
        _sanction(collaborators)

        assert pipeline.run_l1_screening(reference_id, now=NOW).state == RefundState.FROZEN

    def test_frozen_request_refuses_decisions(self, pipeline, collaborators, make_request, reviewers):
        reference_id = make_request()
        _sanction(collaborators)
        pipeline.run_l1_screening(reference_id, now=NOW)

        with pytest.raises(ComplianceHold):
            pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "ok", now=LATER)

    def test_withdrawal_refusal_does_not_reveal_hold(self, pipeline, collaborators, make_request):
        reference_id = make_request()
        _sanction(collaborators)
        pipeline.run_l1_screening(reference_id, now=NOW)

        with pytest.raises(ValidationError) as exc_info:
            pipeline.withdraw(reference_id, STAKEHOLDER_ID, now=LATER)
        assert "can no longer be withdrawn" in str(exc_info.value)
        assert "frozen" not in str(exc_info.value).lower()


# =============================================================================
# COMPLIANCE CLEARANCE
# =============================================================================

class TestComplianceClearance:
    """Only Compliance releases a frozen request."""

    def test_clearance_resumes_with_edd(self, pipeline, collaborators, make_request, reviewers, db_session):
        reference_id = make_request()
        _sanction(collaborators)
        pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.clear_compliance_hold(
            reference_id, reviewers[ReviewerRole.COMPLIANCE], "FIU-CLR-0042", "Different person, passport checked",
            now=LATER,
        )

        assert request.state == RefundState.L2_REVIEW
        assert request.enhanced_review is True
        assert "AML_EDD_REQUIRED" in request.review_flags
        report = db_session.query(ComplianceReportDB).filter(ComplianceReportDB.request_id == request.id).one()
        assert report.status == "CLEARED"
        assert report.clearance_reference == "FIU-CLR-0042"

    def test_cleared_request_must_go_to_committee(self, pipeline, collaborators, make_request, reviewers):
        reference_id = make_request()
        _sanction(collaborators)
        pipeline.run_l1_screening(reference_id, now=NOW)
        pipeline.clear_compliance_hold(reference_id, reviewers[ReviewerRole.COMPLIANCE], "FIU-CLR-0042", "Cleared", now=LATER)

        request = pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Verified", now=LATER,
        )

        assert request.state == RefundState.L3_REVIEW
        assert "EDD_REQUIRED" in request.escalation_reasons

    def test_only_compliance_clears(self, pipeline, collaborators, make_request, reviewers):
        reference_id = make_request()
        _sanction(collaborators)
        pipeline.run_l1_screening(reference_id, now=NOW)

        with pytest.raises(AuthorizationError):
            pipeline.clear_compliance_hold(reference_id, reviewers[ReviewerRole.RPO], "X-1", "Cleared", now=LATER)
        assert pipeline.get_request(reference_id).state == RefundState.FROZEN

    def test_rescreen_at_l2_resume_prior(self, pipeline, collaborators, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)
        _sanction(collaborators)

        verdict = pipeline.rescreen(reference_id, now=LATER)
        assert verdict.is_suspicious
        assert pipeline.get_request(reference_id).frozen_from_state == RefundState.L2_REVIEW

        request = pipeline.clear_compliance_hold(
            reference_id, reviewers[ReviewerRole.COMPLIANCE], "FIU-CLR-7", "False positive", now=LATER,
        )
        assert request.state == RefundState.L2_REVIEW

    def test_restart_l1_policy(self, db_session, collaborators, config, locks, make_request, reviewers):
        pipeline = VerificationPipeline(
            db_session, collaborators, config.with_overrides(freeze_resume_policy=FreezeResumePolicy.RESTART_L1), locks,
        )
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)
        _sanction(collaborators)
        pipeline.rescreen(reference_id, now=LATER)

        request = pipeline.clear_compliance_hold(
            reference_id, reviewers[ReviewerRole.COMPLIANCE], "FIU-CLR-8", "False positive", now=LATER,
        )

        assert request.state == RefundState.L2_REVIEW
        path = _state_path(pipeline, reference_id)
        assert path.count("L1_SCREENING") == 1
        internal = [r.to_state for r in pipeline.audit_trail(reference_id, include_confidential=True) if r.to_state]
        assert internal[-3:] == ["FROZEN", "L1_SCREENING", "L2_REVIEW"]


# =============================================================================
# L1 AUTO-REJECT CONDITIONS
# =============================================================================

class TestL1Rejections:
    """Time-bar, duplicates, missing and forged documents."""

    def test_time_barred(self, pipeline, make_request):
        reference_id = make_request(event_date=date(2025, 10, 1))

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 6.1(a)"

    def test_duplicate_of_open_request(self, pipeline, make_request):
        first = make_request(transaction_id="TXN-DUP-1")
        second = make_request(transaction_id="TXN-DUP-1", now=NOW + timedelta(minutes=5))

        request = pipeline.run_l1_screening(second, now=LATER)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 7.3(b)"
        assert pipeline.run_l1_screening(first, now=LATER).state == RefundState.L2_REVIEW

    def test_resubmission_after_terminal_is_not_duplicate(self, pipeline, make_request):
        first = make_request(transaction_id="TXN-DUP-2")
        pipeline.withdraw(first, STAKEHOLDER_ID, now=NOW)
        second = make_request(transaction_id="TXN-DUP-2", now=NOW + timedelta(minutes=5))

        assert pipeline.run_l1_screening(second, now=LATER).state == RefundState.L2_REVIEW

    def test_missing_mandatory_documents(self, pipeline, make_request):
        reference_id = make_request(documents=(DocumentType.IDENTITY,))

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 7.2(a)"
        assert "BANK_PROOF" in request.decision_reason
        assert "TRANSACTION_PROOF" in request.decision_reason

    def test_tampered_document_rejected(self, pipeline, collaborators, make_request, db_session):
        reference_id = make_request()
        request = pipeline.get_request(reference_id)
        evidence = db_session.query(EvidenceDB).filter(
            EvidenceDB.request_id == request.id, EvidenceDB.document_type == DocumentType.BANK_PROOF,
        ).one()
        collaborators.documents.tamper(evidence.document_id, b"edited statement")

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 7.5(b)"
        db_session.refresh(evidence)
        assert evidence.verification_status == EvidenceStatus.REJECTED_FORGED

    def test_cooling_off_window_counted_to_submission(self, pipeline, make_request):
        """No dates in the facts: subscription is the event date, the claim is the submission."""
        reference_id = make_request(
            amount="10000",
            category=TransactionCategory.PLATFORM_FEE,
            stage=LifecycleStage.COOLING_OFF,
            grounds=(RefundGround.COOLING_OFF,),
            event_date=NOW.date() - timedelta(days=12),
            facts=EligibilityFacts(accessed=False),
        )

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert "12 days since subscription" in request.decision_reason

    def test_stated_claim_date_ignored(self, pipeline, make_request):
        subscribed = NOW.date() - timedelta(days=12)
        reference_id = make_request(
            amount="10000",
            category=TransactionCategory.PLATFORM_FEE,
            stage=LifecycleStage.COOLING_OFF,
            grounds=(RefundGround.COOLING_OFF,),
            event_date=subscribed,
            facts=EligibilityFacts(accessed=False, subscription_date=subscribed, claim_date=subscribed),
        )

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED

    def test_cooling_off_inside_window(self, pipeline, make_request):
        reference_id = make_request(
            amount="10000",
            category=TransactionCategory.PLATFORM_FEE,
            stage=LifecycleStage.COOLING_OFF,
            grounds=(RefundGround.COOLING_OFF,),
            event_date=NOW.date() - timedelta(days=4),
        )

        request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L2_REVIEW
        assert request.total_deductions == Decimal("0.00")


# =============================================================================
# COLLABORATOR FAILURES
# =============================================================================

class TestCollaboratorFailures:
    """Outages park the request; they never reject it."""

    def test_registry_outage_parks_for_retry(self, pipeline, collaborators, make_request, db_session):
        reference_id = make_request()

        with patch.object(collaborators.registry, "lookup", side_effect=InfrastructureError("registry down")):
            request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.PENDING_RETRY
        assert request.retry_count == 1
        assert pipeline.status(reference_id)["status"] == "processing_delayed"
        item = db_session.query(OperatorQueueDB).filter(OperatorQueueDB.request_id == request.id).one()
        assert item.kind == "PENDING_RETRY"
        assert item.status == OperatorItemStatus.OPEN

    def test_retry_after_recovery(self, pipeline, collaborators, make_request, db_session):
        reference_id = make_request()
        with patch.object(collaborators.registry, "lookup", side_effect=InfrastructureError("registry down")):
            pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.retry_pending(reference_id, now=LATER)

        assert request.state == RefundState.L2_REVIEW
        item = db_session.query(OperatorQueueDB).filter(OperatorQueueDB.request_id == request.id).one()
        assert item.status == OperatorItemStatus.RESOLVED

    def test_retry_only_from_pending(self, pipeline, make_request):
        reference_id = make_request()
        with pytest.raises(ValidationError):
            pipeline.retry_pending(reference_id, now=NOW)

    def test_unexpected_check_failure_goes_to_human(self, pipeline, collaborators, make_request):
        """A broken check never advances automatically; it lands with a reviewer."""
        reference_id = make_request()

        with patch.object(collaborators.registry, "lookup", side_effect=ValueError("corrupt profile")):
            request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L2_REVIEW
        assert request.enhanced_review is True
        assert any(flag.startswith("L1_CHECK_FAILED") for flag in request.review_flags)

    def test_time_bar_still_rejects_when_checks_fail(self, pipeline, collaborators, make_request):
        reference_id = make_request(event_date=date(2025, 8, 1))

        with patch.object(collaborators.registry, "lookup", side_effect=NotFoundError("Unknown stakeholder STK-1001")):
            request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 6.1(a)"
        assert "L2_REVIEW" not in _state_path(pipeline, reference_id)

    def test_missing_documents_still_reject_when_checks_fail(self, pipeline, collaborators, make_request):
        reference_id = make_request(documents=(DocumentType.IDENTITY,))

        with patch.object(collaborators.registry, "lookup", side_effect=ValueError("corrupt profile")):
            request = pipeline.run_l1_screening(reference_id, now=NOW)

        assert request.state == RefundState.L1_AUTO_REJECTED
        assert request.decision_clause == "Art. 7.2(a)"

    def test_document_store_outage_on_upload(self, pipeline, collaborators, make_request):
        reference_id = make_request(documents=())

        with patch.object(collaborators.documents, "put", side_effect=OSError("connection refused")):
            with pytest.raises(InfrastructureError):
                pipeline.attach_evidence(reference_id, STAKEHOLDER_ID, DocumentType.IDENTITY, b"passport", now=NOW)


# =============================================================================
# WITHDRAWAL
# =============================================================================

class TestWithdrawal:
    """Cancel before manual review, withdraw during it; history kept."""

    def test_cancel_before_review(self, pipeline, make_request):
        reference_id = make_request()
        pipeline.acknowledge(reference_id, now=NOW)

        assert pipeline.withdraw(reference_id, STAKEHOLDER_ID, now=LATER).state == RefundState.CANCELLED
        assert pipeline.status(reference_id)["status"] == "withdrawn"

    def test_withdraw_during_review(self, pipeline, make_request, reviewers, db_session):
        reference_id = make_request()
        request = pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.withdraw(reference_id, STAKEHOLDER_ID, reason="Resolved with issuer", now=LATER)

        assert request.state == RefundState.WITHDRAWN_BY_STAKEHOLDER
        open_assignments = db_session.query(ReviewAssignmentDB).filter(
            ReviewAssignmentDB.request_id == request.id, ReviewAssignmentDB.completed_at.is_(None),
        ).count()
        assert open_assignments == 0

    def test_no_withdrawal_once_decided(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)
        pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Verified", now=LATER)

        with pytest.raises(ValidationError):
            pipeline.withdraw(reference_id, STAKEHOLDER_ID, now=LATER)

    def test_other_stakeholder_cannot_see_request(self, pipeline, make_request):
        reference_id = make_request()
        with pytest.raises(NotFoundError):
            pipeline.withdraw(reference_id, "STK-9999", now=NOW)
        with pytest.raises(NotFoundError):
            pipeline.status(reference_id, stakeholder_id="STK-9999")


# =============================================================================
# FRAUD GROUNDS AND COMMITTEE OUTCOMES
# =============================================================================

class TestFraudGround:
    """Fraud or misrepresentation always reaches the committee."""

    def _fraud_at_l2(self, pipeline, make_request):
        reference_id = make_request(
            category=TransactionCategory.SHARE_PURCHASE,
            stage=LifecycleStage.COMPLETED,
            grounds=(RefundGround.MISREPRESENTATION,),
        )
        pipeline.run_l1_screening(reference_id, now=NOW)
        return reference_id

    def test_flagged_at_l1(self, pipeline, make_request, reviewers):
        request = pipeline.get_request(self._fraud_at_l2(pipeline, make_request))

        assert request.state == RefundState.L2_REVIEW
        assert "FRAUD_GROUND_ASSERTED" in request.review_flags

    def test_l2_rejection_still_escalates(self, pipeline, make_request, reviewers):
        reference_id = self._fraud_at_l2(pipeline, make_request)

        request = pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.REJECT, "Claim not substantiated", now=LATER,
        )

        assert request.state == RefundState.L3_REVIEW
        assert "FRAUD_GROUND" in request.escalation_reasons

    def test_compliance_veto(self, pipeline, make_request, reviewers):
        reference_id = self._fraud_at_l2(pipeline, make_request)
        pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Supported", now=LATER)

        pipeline.record_committee_vote(reference_id, reviewers[ReviewerRole.FINANCE], Vote.APPROVE, "Funds traced", now=LATER)
        pipeline.record_committee_vote(reference_id, reviewers[ReviewerRole.LEGAL], Vote.APPROVE, "Misstatement proven", now=LATER)
        request = pipeline.record_committee_vote(
            reference_id, reviewers[ReviewerRole.COMPLIANCE], Vote.REJECT, "Counterparty under investigation", now=LATER,
        )

        assert request.state == RefundState.REJECTED
        assert request.decision_clause == "Art. 8.4"
        record = pipeline.decisions.latest(request)
        assert {d["role"] for d in record.dissent} == {"FINANCE", "LEGAL"}

    def test_committee_approval_below_threshold_disburses(self, pipeline, make_request, reviewers):
        reference_id = self._fraud_at_l2(pipeline, make_request)
        pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Supported", now=LATER)

        for role in (ReviewerRole.FINANCE, ReviewerRole.COMPLIANCE, ReviewerRole.LEGAL):
            request = pipeline.record_committee_vote(reference_id, reviewers[role], Vote.APPROVE, "Agreed", now=LATER)

        assert request.state == RefundState.DISBURSING
        record = pipeline.decisions.latest(request)
        assert record.tier == "L3"
        assert record.decided_by == "committee"


# =============================================================================
# REVIEWER AUTHORITY AND CONCURRENCY
# =============================================================================

class TestReviewerAuthority:
    """Role checks and single-writer discipline."""

    def test_l2_decision_requires_rpo(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)

        with pytest.raises(AuthorizationError):
            pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.FINANCE], Recommendation.APPROVE, "ok", now=LATER)

    def test_rationale_required(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        pipeline.run_l1_screening(reference_id, now=NOW)

        with pytest.raises(ValidationError):
            pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, " ", now=LATER)

    def test_stale_decision_refused(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        request = pipeline.run_l1_screening(reference_id, now=NOW)
        seen_version = request.version - 1

        with pytest.raises(ConcurrentTransitionError):
            pipeline.record_l2_decision(
                reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Verified",
                expected_version=seen_version, now=LATER,
            )
        assert pipeline.get_request(reference_id).state == RefundState.L2_REVIEW

    def test_current_version_accepted(self, pipeline, make_request, reviewers):
        reference_id = make_request()
        request = pipeline.run_l1_screening(reference_id, now=NOW)

        request = pipeline.record_l2_decision(
            reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "Verified",
            expected_version=request.version, now=LATER,
        )
        assert request.state == RefundState.DISBURSING

    def test_approving_ineligible_request_refused(self, pipeline, collaborators, make_request, reviewers):
        """Reaches L2 only because L1 could not run; approval is still refused."""
        reference_id = make_request(
            category=TransactionCategory.ADVISORY_SERVICE,
            stage=LifecycleStage.COMPLETED,
            grounds=(RefundGround.DISSATISFACTION,),
        )
        with patch.object(collaborators.registry, "lookup", side_effect=ValueError("corrupt profile")):
            pipeline.run_l1_screening(reference_id, now=NOW)

        with pytest.raises(IneligibleError) as exc_info:
            pipeline.record_l2_decision(reference_id, reviewers[ReviewerRole.RPO], Recommendation.APPROVE, "ok", now=LATER)
        assert exc_info.value.clause == "Art. 4.3(c)"


# =============================================================================
# SUBMISSION
# =============================================================================

class TestSubmission:
    """Structural validation and policy versioning at intake."""

    def test_future_event_date_refused(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.submit(
                STAKEHOLDER_ID, "TXN-1", TransactionCategory.PLATFORM_FEE, LifecycleStage.IN_TERM,
                [RefundGround.PLATFORM_TERMINATION], Decimal("1000"), SOURCE_ACCOUNT,
                event_date=date(2026, 3, 10), now=NOW,
            )

    def test_non_positive_amount_refused(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.submit(
                STAKEHOLDER_ID, "TXN-1", TransactionCategory.PLATFORM_FEE, LifecycleStage.IN_TERM,
                [RefundGround.PLATFORM_TERMINATION], Decimal("0"), SOURCE_ACCOUNT,
                event_date=date(2026, 2, 20), now=NOW,
            )

    def test_reference_id_format(self, pipeline, make_request):
        reference_id = make_request()
        assert reference_id.startswith("RRN-20260302-")

    def test_policy_version_recorded(self, pipeline, make_request, db_session):
        pipeline.policies.publish("RP-2026.1", "Refund policy text", effective_from=datetime(2026, 1, 1))
        db_session.commit()

        request = pipeline.get_request(make_request())

        assert request.policy_version == "RP-2026.1"

    def test_policy_version_defaults_to_config(self, pipeline, make_request, config):
        request = pipeline.get_request(make_request())
        assert request.policy_version == config.policy_version
