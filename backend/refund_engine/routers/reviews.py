"""
Reviewer API Routes

L2 decisions, committee votes, final-authority sign-off, compliance
clearance, payout account overrides and the internal audit trail.
All routes require a reviewer bearer token.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..auth import get_current_reviewer, require_roles
from ..models.db_models import RefundRequestDB, ReviewerDB, ReviewerRole, Vote
from ..services.adjudication import DisbursementScheduler, OperatorQueue, VerificationPipeline
from ..services.adjudication.committee import COMMITTEE_ROLES, FINAL_AUTHORITY_ROLES
from ..services.adjudication.errors import RefundEngineError
from .deps import get_pipeline, get_scheduler, http_error


router = APIRouter(prefix="/reviews", tags=["reviews"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class FactCorrections(BaseModel):
    """Reviewer corrections to the submitted transaction facts."""
    gateway_fee: Optional[Decimal] = Field(None, ge=0)
    third_party_costs: Optional[Decimal] = Field(None, ge=0)
    processing_fee_rate: Optional[Decimal] = Field(None, ge=0)
    dividends_received: Optional[Decimal] = Field(None, ge=0)
    accessed: Optional[bool] = None
    utilised_fraction: Optional[Decimal] = Field(None, ge=0, le=1)
    interest_from: Optional[date] = None


class L2DecisionRequest(BaseModel):
    recommendation: str = Field(..., pattern="^(APPROVE|REJECT|ESCALATE)$")
    rationale: str = Field(..., min_length=1)
    clause: Optional[str] = None
    verified_evidence: List[str] = Field(default_factory=list)
    forged_evidence: List[str] = Field(default_factory=list)
    fact_corrections: Optional[FactCorrections] = None
    expected_version: Optional[int] = Field(None, description="Version the reviewer saw; stale decisions are refused")


class CommitteeVoteRequest(BaseModel):
    vote: Vote
    rationale: str = Field(..., min_length=1)


class SignOffRequest(BaseModel):
    approve: bool
    rationale: str = Field(..., min_length=1)


class ClearanceRequest(BaseModel):
    clearance_reference: str = Field(..., min_length=1)
    rationale: str = Field(..., min_length=1)


class AccountOverrideRequest(BaseModel):
    account: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class RequestSummary(BaseModel):
    """Internal view for reviewers."""
    reference_id: str
    state: str
    version: int
    category: str
    amount_claimed: str
    total_deductions: Optional[str] = None
    payable_amount: Optional[str] = None
    enhanced_review: bool = False
    review_flags: List[str] = Field(default_factory=list)
    escalation_reasons: List[str] = Field(default_factory=list)
    decision: Optional[str] = None
    decision_reason: Optional[str] = None
    decision_clause: Optional[str] = None


def _summary(request: RefundRequestDB) -> RequestSummary:
    return RequestSummary(
        reference_id=request.reference_id,
        state=request.state.value,
        version=request.version,
        category=request.category.value,
        amount_claimed=str(request.amount_claimed),
        total_deductions=str(request.total_deductions) if request.total_deductions is not None else None,
        payable_amount=str(request.payable_amount) if request.payable_amount is not None else None,
        enhanced_review=bool(request.enhanced_review),
        review_flags=list(request.review_flags or []),
        escalation_reasons=list(request.escalation_reasons or []),
        decision=request.decision,
        decision_reason=request.decision_reason,
        decision_clause=request.decision_clause,
    )


# =============================================================================
# DECISIONS
# =============================================================================

@router.get("/{reference_id}", response_model=RequestSummary)
async def get_request(
    reference_id: str,
    reviewer: ReviewerDB = Depends(get_current_reviewer),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    try:
        return _summary(pipeline.get_request(reference_id))
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/{reference_id}/l2-decision", response_model=RequestSummary)
async def record_l2_decision(
    reference_id: str,
    request: L2DecisionRequest,
    reviewer: ReviewerDB = Depends(require_roles(ReviewerRole.RPO)),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    """
    Record the L2 reviewer's findings and recommendation.
    Mandatory escalation overrides the recommendation.
    """
    corrections = request.fact_corrections.model_dump(exclude_none=True, mode="json") if request.fact_corrections else None
    try:
        refund = pipeline.record_l2_decision(
            reference_id,
            reviewer,
            recommendation=request.recommendation,
            rationale=request.rationale,
            clause=request.clause,
            verified_evidence=request.verified_evidence,
            forged_evidence=request.forged_evidence,
            fact_corrections=corrections,
            expected_version=request.expected_version,
        )
        return _summary(refund)
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/{reference_id}/committee-votes", response_model=RequestSummary)
async def record_committee_vote(
    reference_id: str,
    request: CommitteeVoteRequest,
    reviewer: ReviewerDB = Depends(require_roles(*COMMITTEE_ROLES)),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    try:
        refund = pipeline.record_committee_vote(reference_id, reviewer, request.vote, request.rationale)
        return _summary(refund)
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/{reference_id}/sign-off", response_model=RequestSummary)
async def sign_off(
    reference_id: str,
    request: SignOffRequest,
    reviewer: ReviewerDB = Depends(require_roles(*FINAL_AUTHORITY_ROLES)),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    try:
        refund = pipeline.sign_off(reference_id, reviewer, request.approve, request.rationale)
        return _summary(refund)
    except RefundEngineError as e:
        raise http_error(e) from e


# =============================================================================
# COMPLIANCE
# =============================================================================

@router.post("/{reference_id}/clearance", response_model=RequestSummary)
async def clear_compliance_hold(
    reference_id: str,
    request: ClearanceRequest,
    reviewer: ReviewerDB = Depends(require_roles(ReviewerRole.COMPLIANCE)),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    """
    External clearance of a frozen request. Compliance only.
    """
    try:
        refund = pipeline.clear_compliance_hold(
            reference_id, reviewer, request.clearance_reference, request.rationale,
        )
        return _summary(refund)
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/{reference_id}/account-override", response_model=dict)
async def request_account_override(
    reference_id: str,
    request: AccountOverrideRequest,
    reviewer: ReviewerDB = Depends(require_roles(ReviewerRole.RPO, ReviewerRole.OPERATIONS, ReviewerRole.COMPLIANCE)),
    scheduler: DisbursementScheduler = Depends(get_scheduler),
):
    try:
        disbursement = scheduler.request_account_override(reference_id, reviewer, request.account, request.reason)
        return {"reference_id": reference_id, "status": disbursement.status.value, "override_pending": True}
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/{reference_id}/account-override/approve", response_model=dict)
async def approve_account_override(
    reference_id: str,
    reviewer: ReviewerDB = Depends(require_roles(ReviewerRole.COMPLIANCE)),
    scheduler: DisbursementScheduler = Depends(get_scheduler),
):
    try:
        disbursement = scheduler.approve_account_override(reference_id, reviewer)
        return {"reference_id": reference_id, "status": disbursement.status.value, "override_pending": False}
    except RefundEngineError as e:
        raise http_error(e) from e


# =============================================================================
# READ-ONLY
# =============================================================================

@router.get("/{reference_id}/audit", response_model=List[Dict[str, Any]])
async def get_audit_trail(
    reference_id: str,
    reviewer: ReviewerDB = Depends(get_current_reviewer),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    """
    Internal audit trail. Confidential entries are shown to Compliance only.
    """
    try:
        records = pipeline.audit_trail(
            reference_id, include_confidential=reviewer.role == ReviewerRole.COMPLIANCE,
        )
    except RefundEngineError as e:
        raise http_error(e) from e
    return [
        {
            "sequence": r.sequence,
            "actor": r.actor,
            "actor_type": r.actor_type.value,
            "actor_role": r.actor_role,
            "action": r.action,
            "from_state": r.from_state,
            "to_state": r.to_state,
            "inputs": r.inputs,
            "rationale": r.rationale,
            "created_at": r.created_at.isoformat(),
        }
        for r in records
    ]


@router.get("/queue/operator", response_model=List[Dict[str, Any]])
async def get_operator_queue(
    kind: Optional[str] = Query(None),
    reviewer: ReviewerDB = Depends(require_roles(ReviewerRole.OPERATOR, ReviewerRole.OPERATIONS, ReviewerRole.COMPLIANCE)),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    items = OperatorQueue(pipeline.db).open_items(kind)
    return [
        {
            "id": item.id,
            "request_id": item.request_id,
            "kind": item.kind,
            "message": item.message,
            "created_at": item.created_at.isoformat(),
        }
        for item in items
    ]
