"""
Refund Request API Routes (stakeholder-facing)

Submission, evidence upload, public status and withdrawal.
Responses carry only the public status feed: no screening outcome,
reviewer identity or internal state name ever leaves through here.
"""
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel, Field

from ..models.db_models import DocumentType, LifecycleStage, RefundGround, TransactionCategory
from ..models.domain import EligibilityFacts
from ..services.adjudication import VerificationPipeline
from ..services.adjudication.errors import RefundEngineError
from .deps import get_pipeline, get_stakeholder_id, http_error


router = APIRouter(prefix="/refunds", tags=["refunds"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class FactsPayload(BaseModel):
    """Transaction facts used by the deduction formulas."""
    gateway_fee: Decimal = Field(default=Decimal("0"), ge=0)
    third_party_costs: Decimal = Field(default=Decimal("0"), ge=0)
    dividends_received: Decimal = Field(default=Decimal("0"), ge=0)
    accessed: bool = False
    utilised_fraction: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    interest_from: Optional[date] = None
    subscription_date: Optional[date] = None


class SubmitRefundRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    category: TransactionCategory
    lifecycle_stage: LifecycleStage
    grounds: List[RefundGround] = Field(default_factory=list)
    amount_claimed: Decimal = Field(..., gt=0, decimal_places=2)
    payout_account: str = Field(..., min_length=1)
    event_date: date = Field(..., description="Date of the event giving rise to the claim")
    billing_cycle_end: Optional[date] = None
    description: Optional[str] = None
    facts: Optional[FactsPayload] = None


class WithdrawRequest(BaseModel):
    reason: Optional[str] = None


class TimelineEntry(BaseModel):
    status: str
    at: str


class PublicStatusResponse(BaseModel):
    reference_id: str
    status: str
    summary: str
    submitted_at: Optional[str] = None
    timeline: List[TimelineEntry] = Field(default_factory=list)
    payable_amount: Optional[str] = None


class EvidenceResponse(BaseModel):
    evidence_id: str
    document_type: str
    sha256: str


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("", response_model=PublicStatusResponse, status_code=status.HTTP_201_CREATED)
async def submit_refund(
    request: SubmitRefundRequest,
    stakeholder_id: str = Depends(get_stakeholder_id),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    """
    Submit a refund request. Returns the reference id and public status.
    """
    facts = EligibilityFacts(**request.facts.model_dump()) if request.facts else None
    try:
        refund = pipeline.submit(
            stakeholder_id=stakeholder_id,
            transaction_id=request.transaction_id,
            category=request.category,
            lifecycle_stage=request.lifecycle_stage,
            grounds=request.grounds,
            amount_claimed=request.amount_claimed,
            payout_account=request.payout_account,
            event_date=request.event_date,
            billing_cycle_end=request.billing_cycle_end,
            description=request.description,
            facts=facts,
        )
        return PublicStatusResponse(**pipeline.status(refund.reference_id))
    except RefundEngineError as e:
        raise http_error(e, stakeholder_facing=True) from e


@router.post("/{reference_id}/evidence", response_model=EvidenceResponse, status_code=status.HTTP_201_CREATED)
async def attach_evidence(
    reference_id: str,
    document_type: DocumentType = Form(...),
    file: UploadFile = File(...),
    stakeholder_id: str = Depends(get_stakeholder_id),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    """
    Upload one supporting document. Its SHA-256 is recorded for tamper detection.
    """
    content = await file.read()
    try:
        evidence = pipeline.attach_evidence(
            reference_id, stakeholder_id, document_type, content, filename=file.filename,
        )
        return EvidenceResponse(
            evidence_id=evidence.id,
            document_type=evidence.document_type.value,
            sha256=evidence.sha256,
        )
    except RefundEngineError as e:
        raise http_error(e, stakeholder_facing=True) from e


@router.get("/{reference_id}/status", response_model=PublicStatusResponse)
async def get_status(
    reference_id: str,
    stakeholder_id: str = Depends(get_stakeholder_id),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    try:
        return PublicStatusResponse(**pipeline.status(reference_id, stakeholder_id=stakeholder_id))
    except RefundEngineError as e:
        raise http_error(e, stakeholder_facing=True) from e


@router.post("/{reference_id}/withdraw", response_model=PublicStatusResponse)
async def withdraw_refund(
    reference_id: str,
    request: WithdrawRequest,
    stakeholder_id: str = Depends(get_stakeholder_id),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    """
    Withdraw a request. Before manual review it is cancelled; during review
    it is recorded as withdrawn. History is kept either way.
    """
    try:
        pipeline.withdraw(reference_id, stakeholder_id, reason=request.reason)
        return PublicStatusResponse(**pipeline.status(reference_id))
    except RefundEngineError as e:
        raise http_error(e, stakeholder_facing=True) from e
