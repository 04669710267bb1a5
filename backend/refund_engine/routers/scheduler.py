"""
Scheduler API Routes

Internal endpoints for system-automatic tasks: acknowledgment, L1
screening, retries, the SLA sweep and disbursement callbacks.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..models.db_models import FailureCause, RefundRequestDB, RefundState
from ..services.adjudication import DisbursementScheduler, SlaMonitor, VerificationPipeline
from ..services.adjudication.errors import RefundEngineError
from .deps import get_monitor, get_pipeline, get_scheduler, http_error, verify_internal_key


router = APIRouter(prefix="/internal", tags=["scheduler"])


class ConfirmDisbursementRequest(BaseModel):
    paid_at: Optional[datetime] = None


class DisbursementFailureRequest(BaseModel):
    cause: FailureCause
    reason: str = Field(..., min_length=1)


def _state(request: RefundRequestDB) -> dict:
    return {"reference_id": request.reference_id, "state": request.state.value, "version": request.version}


# =============================================================================
# PIPELINE ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/acknowledge", response_model=dict)
async def acknowledge_received(
    pipeline: VerificationPipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_key),
):
    """
    Acknowledge every request still in RECEIVED.
    """
    received = pipeline.db.query(RefundRequestDB.reference_id).filter(
        RefundRequestDB.state == RefundState.RECEIVED
    ).all()
    acknowledged = []
    for (reference_id,) in received:
        try:
            pipeline.acknowledge(reference_id)
            acknowledged.append(reference_id)
        except RefundEngineError as e:
            raise http_error(e) from e
    return {"task": "acknowledge", "acknowledged": acknowledged}


@router.post("/screen/{reference_id}", response_model=dict)
async def run_l1_screening(
    reference_id: str,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_key),
):
    try:
        return _state(pipeline.run_l1_screening(reference_id))
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/retry/{reference_id}", response_model=dict)
async def retry_pending(
    reference_id: str,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_key),
):
    try:
        return _state(pipeline.retry_pending(reference_id))
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/rescreen/{reference_id}", response_model=dict)
async def rescreen(
    reference_id: str,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    _: bool = Depends(verify_internal_key),
):
    """
    Re-run AML screening, e.g. after a sanctions list refresh.
    """
    try:
        pipeline.rescreen(reference_id)
        return _state(pipeline.get_request(reference_id))
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/sweep", response_model=dict)
async def run_sweep(
    monitor: SlaMonitor = Depends(get_monitor),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the timeout/escalation sweep.

    System-automatic - no reviewer confirmation required.
    """
    return monitor.run_sweep()


# =============================================================================
# DISBURSEMENT ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/disbursements/sla-check", response_model=dict)
async def run_disbursement_sla_check(
    scheduler: DisbursementScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_internal_key),
):
    return scheduler.check_sla()


@router.post("/disbursements/{reference_id}/confirm", response_model=dict)
async def confirm_disbursement(
    reference_id: str,
    request: ConfirmDisbursementRequest,
    scheduler: DisbursementScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_internal_key),
):
    try:
        record = scheduler.confirm(reference_id, paid_at=request.paid_at)
        return {
            "reference_id": reference_id,
            "decision_id": record.id,
            "payable_amount": str(record.payable_amount),
            "interest_amount": str(record.interest_amount),
        }
    except RefundEngineError as e:
        raise http_error(e) from e


@router.post("/disbursements/{reference_id}/failure", response_model=dict)
async def record_disbursement_failure(
    reference_id: str,
    request: DisbursementFailureRequest,
    scheduler: DisbursementScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_internal_key),
):
    try:
        disbursement = scheduler.record_failure(reference_id, request.cause, request.reason)
        return {
            "reference_id": reference_id,
            "status": disbursement.status.value,
            "failure_count": disbursement.failure_count,
            "reprocessing_charges": str(disbursement.reprocessing_charges),
            "due_date": disbursement.due_date.isoformat(),
        }
    except RefundEngineError as e:
        raise http_error(e) from e
