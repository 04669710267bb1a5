"""
Refund Adjudication Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Date, Text, JSON, Numeric, Boolean,
    ForeignKey, UniqueConstraint, Enum as SQLEnum, event,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR THE ADJUDICATION PIPELINE
# =============================================================================

class TransactionCategory(str, Enum):
    """Refundable transaction categories (Art. 4.2)."""
    SUBSCRIPTION_PRE_ALLOTMENT = "SUBSCRIPTION_PRE_ALLOTMENT"
    SUBSCRIPTION_POST_ALLOTMENT = "SUBSCRIPTION_POST_ALLOTMENT"
    SHARE_PURCHASE = "SHARE_PURCHASE"
    ADVISORY_SERVICE = "ADVISORY_SERVICE"
    PLATFORM_FEE = "PLATFORM_FEE"
    TECHNICAL_ERROR = "TECHNICAL_ERROR"


class LifecycleStage(str, Enum):
    """Stage the underlying transaction had reached when the claim arose."""
    PRE_ALLOTMENT = "PRE_ALLOTMENT"
    POST_ALLOTMENT = "POST_ALLOTMENT"
    EXPRESSION_OF_INTEREST = "EXPRESSION_OF_INTEREST"
    AGREEMENT_EXECUTED = "AGREEMENT_EXECUTED"
    COOLING_OFF = "COOLING_OFF"
    IN_TERM = "IN_TERM"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"


class RefundGround(str, Enum):
    """Grounds a stakeholder may assert."""
    VOLUNTARY_WITHDRAWAL = "VOLUNTARY_WITHDRAWAL"
    ISSUER_CANCELLATION = "ISSUER_CANCELLATION"
    REGULATORY_IMPEDIMENT = "REGULATORY_IMPEDIMENT"
    REGULATORY_NON_COMPLIANCE = "REGULATORY_NON_COMPLIANCE"
    TRANSFER_FAILURE = "TRANSFER_FAILURE"
    SELLER_DECLINED = "SELLER_DECLINED"
    NOT_TRANSFERRED = "NOT_TRANSFERRED"
    NON_CONFORMING_TRANSFER = "NON_CONFORMING_TRANSFER"
    COOLING_OFF = "COOLING_OFF"
    SERVICE_DISCONTINUED = "SERVICE_DISCONTINUED"
    SERVICE_DEFICIENCY = "SERVICE_DEFICIENCY"
    PLATFORM_TERMINATION = "PLATFORM_TERMINATION"
    DUPLICATE_DEBIT = "DUPLICATE_DEBIT"
    FRAUD = "FRAUD"
    MISREPRESENTATION = "MISREPRESENTATION"
    DISSATISFACTION = "DISSATISFACTION"


FRAUD_GROUNDS = frozenset({RefundGround.FRAUD, RefundGround.MISREPRESENTATION})


class RefundState(str, Enum):
    """States in the verification pipeline."""
    RECEIVED = "RECEIVED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    L1_SCREENING = "L1_SCREENING"
    PENDING_RETRY = "PENDING_RETRY"
    L1_AUTO_REJECTED = "L1_AUTO_REJECTED"
    L2_REVIEW = "L2_REVIEW"
    L3_REVIEW = "L3_REVIEW"
    AWAITING_FINAL_AUTHORITY = "AWAITING_FINAL_AUTHORITY"
    DISBURSING = "DISBURSING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    FROZEN = "FROZEN"
    CANCELLED = "CANCELLED"
    WITHDRAWN_BY_STAKEHOLDER = "WITHDRAWN_BY_STAKEHOLDER"


class DocumentType(str, Enum):
    """Evidence document types (Art. 7.4)."""
    IDENTITY = "IDENTITY"
    TRANSACTION_PROOF = "TRANSACTION_PROOF"
    BANK_PROOF = "BANK_PROOF"
    AUTHORIZATION = "AUTHORIZATION"
    GROUND_SPECIFIC = "GROUND_SPECIFIC"


class EvidenceStatus(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    VERIFIED = "VERIFIED"
    REJECTED_FORGED = "REJECTED_FORGED"


class RiskLevel(str, Enum):
    """AML screening outcomes."""
    CLEAR = "CLEAR"
    EDD_REQUIRED = "EDD_REQUIRED"
    SUSPICIOUS = "SUSPICIOUS"


class ReviewerRole(str, Enum):
    """Reviewer roles. Committee roles vote at L3."""
    RPO = "RPO"
    FINANCE = "FINANCE"
    COMPLIANCE = "COMPLIANCE"
    LEGAL = "LEGAL"
    OPERATIONS = "OPERATIONS"
    MD_CEO = "MD_CEO"
    BOARD = "BOARD"
    OPERATOR = "OPERATOR"


class Vote(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class ActorType(str, Enum):
    """Actor types for the audit trail."""
    STAKEHOLDER = "STAKEHOLDER"
    REVIEWER = "REVIEWER"
    SYSTEM = "SYSTEM"


class DisbursementStatus(str, Enum):
    BLOCKED = "BLOCKED"
    SCHEDULED = "SCHEDULED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class FailureCause(str, Enum):
    """Who caused a failed disbursement (Art. 13)."""
    STAKEHOLDER = "STAKEHOLDER"
    PLATFORM = "PLATFORM"
    BANK = "BANK"


class OperatorItemStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


# =============================================================================
# REFUND REQUEST
# =============================================================================

class RefundRequestDB(Base):
    """
    One refund claim. Owned by the verification pipeline for its whole
    lifecycle. State changes only through the state machine; history lives
    in audit_records and is never rewritten.
    """
    __tablename__ = "refund_requests"

    id = Column(String(36), primary_key=True)  # UUID
    reference_id = Column(String(40), unique=True, nullable=False, index=True)  # RRN

    # Claim
    stakeholder_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False, index=True)
    category = Column(SQLEnum(TransactionCategory), nullable=False)
    lifecycle_stage = Column(SQLEnum(LifecycleStage), nullable=False)
    grounds = Column(JSON, nullable=False, default=list)  # List of RefundGround values
    description = Column(Text, nullable=True)
    amount_claimed = Column(Numeric(18, 2), nullable=False)
    payout_account = Column(String(64), nullable=False)
    event_date = Column(Date, nullable=False)  # Date the refund-triggering event occurred
    billing_cycle_end = Column(Date, nullable=True)  # Subscription categories only
    facts = Column(JSON, nullable=True, default=dict)  # Inputs to the deduction formulas
    policy_version = Column(String(40), nullable=True)

    # Lifecycle
    state = Column(SQLEnum(RefundState), nullable=False, default=RefundState.RECEIVED, index=True)
    frozen_from_state = Column(SQLEnum(RefundState), nullable=True)
    state_entered_at = Column(DateTime, default=datetime.utcnow)
    last_activity_at = Column(DateTime, default=datetime.utcnow)

    # SLA checkpoints
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    acknowledged_at = Column(DateTime, nullable=True)
    l1_completed_at = Column(DateTime, nullable=True)
    l2_started_at = Column(DateTime, nullable=True)
    l3_started_at = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    frozen_at = Column(DateTime, nullable=True)

    # Screening results
    source_account = Column(String(64), nullable=True)  # Verified original payment account
    risk_level = Column(SQLEnum(RiskLevel), nullable=True)
    enhanced_review = Column(Boolean, default=False)
    review_flags = Column(JSON, nullable=True, default=list)  # Diagnostics for the L2 reviewer
    compliance_cleared = Column(Boolean, default=False)
    retry_count = Column(Integer, default=0)

    # Adjudication
    eligibility = Column(JSON, nullable=True)  # Snapshot of the latest EligibilityVerdict
    deductions = Column(JSON, nullable=True, default=list)
    total_deductions = Column(Numeric(18, 2), nullable=True)
    payable_amount = Column(Numeric(18, 2), nullable=True)
    escalation_reasons = Column(JSON, nullable=True, default=list)
    decision = Column(String(20), nullable=True)  # APPROVED, REJECTED
    decision_reason = Column(Text, nullable=True)
    decision_clause = Column(String(64), nullable=True)

    # Optimistic lock for single-writer transitions
    version = Column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    evidence = relationship("EvidenceDB", back_populates="request")
    audit_records = relationship("AuditRecordDB", back_populates="request", order_by="AuditRecordDB.sequence")
    decision_records = relationship("DecisionRecordDB", back_populates="request", order_by="DecisionRecordDB.created_at")
    assignments = relationship("ReviewAssignmentDB", back_populates="request")
    votes = relationship("CommitteeVoteDB", back_populates="request")
    disbursement = relationship("DisbursementDB", back_populates="request", uselist=False)


class EvidenceDB(Base):
    """
    One document attached to a refund request.
    Kept until retain_until regardless of what happens to the request.
    """
    __tablename__ = "evidence"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    document_id = Column(String(64), nullable=False)  # Document store key
    document_type = Column(SQLEnum(DocumentType), nullable=False)
    sha256 = Column(String(64), nullable=False)
    verification_status = Column(SQLEnum(EvidenceStatus), nullable=False, default=EvidenceStatus.UNVERIFIED)
    verified_by = Column(String(36), nullable=True)
    verified_at = Column(DateTime, nullable=True)
    retain_until = Column(Date, nullable=False)  # Art. 11.4(b)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    request = relationship("RefundRequestDB", back_populates="evidence")


# =============================================================================
# AUDIT TRAIL AND DECISIONS (APPEND-ONLY)
# =============================================================================

class AuditRecordDB(Base):
    """
    Immutable record of every transition and decision input.
    Rows are never updated or deleted.
    """
    __tablename__ = "audit_records"
    __table_args__ = (UniqueConstraint("request_id", "sequence", name="uq_audit_request_sequence"),)

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    actor = Column(String(64), nullable=False)  # reviewer id, "system" or stakeholder id
    actor_type = Column(SQLEnum(ActorType), nullable=False)
    actor_role = Column(String(20), nullable=True)
    action = Column(String(50), nullable=False)  # state_transition, l2_decision, committee_vote, ...
    from_state = Column(String(40), nullable=True)
    to_state = Column(String(40), nullable=True)
    inputs = Column(JSON, nullable=True)  # Facts considered
    rationale = Column(Text, nullable=False)
    confidential = Column(Boolean, default=False)  # Compliance-only entries

    created_at = Column(DateTime, default=datetime.utcnow)

    request = relationship("RefundRequestDB", back_populates="audit_records")


class DecisionRecordDB(Base):
    """
    Terminal adjudication artifact. Never mutated; corrections are new rows
    pointing at the record they amend.
    """
    __tablename__ = "decision_records"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    amends_decision_id = Column(String(36), ForeignKey("decision_records.id"), nullable=True)

    outcome = Column(String(20), nullable=False)  # APPROVED, REJECTED
    tier = Column(String(20), nullable=False)  # L1, L2, L3, FINAL_AUTHORITY, DISBURSEMENT
    decided_by = Column(String(64), nullable=False)
    reason = Column(Text, nullable=True)
    clause = Column(String(64), nullable=True)

    amount_claimed = Column(Numeric(18, 2), nullable=False)
    deductions = Column(JSON, nullable=True, default=list)
    total_deductions = Column(Numeric(18, 2), nullable=False, default=0)
    interest_amount = Column(Numeric(18, 2), nullable=False, default=0)
    payable_amount = Column(Numeric(18, 2), nullable=False, default=0)
    dissent = Column(JSON, nullable=True, default=list)
    checkpoints = Column(JSON, nullable=True, default=dict)  # SLA checkpoint timestamps

    created_at = Column(DateTime, default=datetime.utcnow)

    request = relationship("RefundRequestDB", back_populates="decision_records")


# =============================================================================
# REVIEWERS AND COMMITTEE
# =============================================================================

class ReviewerDB(Base):
    """Reviewer account (RPOs, committee members, approvers, operators)."""
    __tablename__ = "reviewers"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(200), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLEnum(ReviewerRole), nullable=False)
    is_active = Column(Boolean, default=True)
    last_assigned_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ReviewAssignmentDB(Base):
    __tablename__ = "review_assignments"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    reviewer_id = Column(String(36), ForeignKey("reviewers.id"), nullable=False, index=True)
    tier = Column(String(10), nullable=False)  # L2, L3
    assigned_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    request = relationship("RefundRequestDB", back_populates="assignments")
    reviewer = relationship("ReviewerDB")


class CommitteeVoteDB(Base):
    """One L3 committee member's recorded input."""
    __tablename__ = "committee_votes"
    __table_args__ = (UniqueConstraint("request_id", "role", name="uq_vote_request_role"),)

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    reviewer_id = Column(String(36), ForeignKey("reviewers.id"), nullable=False)
    role = Column(SQLEnum(ReviewerRole), nullable=False)
    vote = Column(SQLEnum(Vote), nullable=False)
    rationale = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    request = relationship("RefundRequestDB", back_populates="votes")


# =============================================================================
# COMPLIANCE (CONFIDENTIAL)
# =============================================================================

class RiskScreeningDB(Base):
    """
    Result of one AML screening run. Confidential.
    Records the sanctions list version used for the decision.
    """
    __tablename__ = "risk_screenings"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    level = Column(SQLEnum(RiskLevel), nullable=False)
    indicators = Column(JSON, nullable=False, default=list)
    list_version = Column(String(64), nullable=True)
    stage = Column(String(40), nullable=False)  # Pipeline state at screening time
    screened_at = Column(DateTime, default=datetime.utcnow)


class ComplianceReportDB(Base):
    """Suspicious transaction report log. Never exposed to stakeholders."""
    __tablename__ = "compliance_reports"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    report_type = Column(String(20), nullable=False, default="STR")
    indicators = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default="PENDING_FILING")  # PENDING_FILING, CLEARED
    created_at = Column(DateTime, default=datetime.utcnow)
    cleared_at = Column(DateTime, nullable=True)
    cleared_by = Column(String(36), nullable=True)
    clearance_reference = Column(String(100), nullable=True)


# =============================================================================
# OUTBOX AND OPERATIONS
# =============================================================================

class StatusEventDB(Base):
    """
    Public RequestStateChanged stream consumed by the notification surface.
    Carries only public-safe states and summaries.
    """
    __tablename__ = "status_events"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=False, index=True)
    reference_id = Column(String(40), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, default=1)
    public_status = Column(String(30), nullable=False)
    summary = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class OperatorQueueDB(Base):
    """Items needing human operator follow-up (exhausted retries, SLA alerts)."""
    __tablename__ = "operator_queue"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), nullable=True, index=True)
    kind = Column(String(40), nullable=False)  # PENDING_RETRY, L3_SLA_BREACH, FROZEN_TOO_LONG, ...
    message = Column(Text, nullable=False)
    status = Column(SQLEnum(OperatorItemStatus), nullable=False, default=OperatorItemStatus.OPEN)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)


class DisbursementDB(Base):
    """
    Payout tracking for an approved refund.
    Interest bucket escalates on SLA breach, never silently.
    """
    __tablename__ = "disbursements"

    id = Column(String(36), primary_key=True)  # UUID
    request_id = Column(String(36), ForeignKey("refund_requests.id"), unique=True, nullable=False)

    principal = Column(Numeric(18, 2), nullable=False)  # Claimed less deductions
    contractual_interest = Column(Numeric(18, 2), nullable=False, default=0)
    delay_interest = Column(Numeric(18, 2), nullable=False, default=0)
    reprocessing_charges = Column(Numeric(18, 2), nullable=False, default=0)
    account = Column(String(64), nullable=False)

    status = Column(SQLEnum(DisbursementStatus), nullable=False, default=DisbursementStatus.SCHEDULED)
    approved_at = Column(DateTime, nullable=False)
    due_date = Column(Date, nullable=False)
    interest_rate = Column(Integer, nullable=False, default=0)  # Current delay bucket, % p.a.
    failure_count = Column(Integer, default=0)
    stakeholder_failure_count = Column(Integer, default=0)  # Drives re-processing charges
    last_failure_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Payout to a non-source account needs a second, Compliance approval
    override_account = Column(String(64), nullable=True)
    override_reason = Column(Text, nullable=True)
    override_requested_by = Column(String(36), nullable=True)
    override_approved_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    request = relationship("RefundRequestDB", back_populates="disbursement")


class PolicyVersionDB(Base):
    """Immutable published policy text, keyed by version id."""
    __tablename__ = "policy_versions"

    version_id = Column(String(40), primary_key=True)
    content = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    effective_from = Column(DateTime, nullable=False)
    published_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# APPEND-ONLY GUARDS
# =============================================================================

def _reject_mutation(mapper, connection, target):
    from ..services.adjudication.errors import AuditTrailViolation
    raise AuditTrailViolation(
        f"{target.__tablename__} rows are append-only (id={getattr(target, 'id', None) or getattr(target, 'version_id', None)})"
    )


for _model in (AuditRecordDB, DecisionRecordDB, PolicyVersionDB):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


@event.listens_for(EvidenceDB, "before_delete")
def _guard_evidence_retention(mapper, connection, target):
    from ..services.adjudication.errors import AuditTrailViolation
    if target.retain_until and target.retain_until >= datetime.utcnow().date():
        raise AuditTrailViolation(f"Evidence {target.id} is under retention until {target.retain_until}")
