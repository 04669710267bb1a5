"""
Shared router dependencies: engine config, collaborators, services, and
translation of engine errors to HTTP responses.
"""
import os
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..config import EngineConfig, load_config
from ..database import get_db
from ..services.adjudication import Collaborators, DisbursementScheduler, SlaMonitor, VerificationPipeline
from ..services.adjudication.errors import (
    AuditTrailViolation, AuthorizationError, ComplianceHold, ConcurrentTransitionError,
    DisbursementBlocked, IneligibleError, InfrastructureError, NotFoundError,
    RefundEngineError, TransitionError, ValidationError,
)


@lru_cache
def get_engine_config() -> EngineConfig:
    return load_config()


_COLLABORATORS = Collaborators.in_memory()


def get_collaborators() -> Collaborators:
    """Process-wide collaborator adapters. Replaced wholesale in deployments and tests."""
    return _COLLABORATORS


def get_pipeline(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    collaborators: Collaborators = Depends(get_collaborators),
) -> VerificationPipeline:
    return VerificationPipeline(db, collaborators, config)


def get_scheduler(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> DisbursementScheduler:
    return DisbursementScheduler(db, config)


def get_monitor(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
) -> SlaMonitor:
    return SlaMonitor(db, config)


async def get_stakeholder_id(x_stakeholder_id: str = Header(...)) -> str:
    """Stakeholder identity as asserted by the authenticating portal in front of this service."""
    if not x_stakeholder_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Stakeholder identity required")
    return x_stakeholder_id


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "refund-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# ERROR TRANSLATION
# =============================================================================

def http_error(error: RefundEngineError, stakeholder_facing: bool = False) -> HTTPException:
    """
    Map an engine error to an HTTPException.

    Stakeholder-facing routes never see internal detail: infrastructure
    failures read as "processing delayed" and holds as a generic conflict.
    """
    if isinstance(error, InfrastructureError):
        return HTTPException(status_code=503, detail="Processing delayed. Please try again later.")
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, IneligibleError):
        return HTTPException(status_code=422, detail=f"{error} ({error.clause})")
    if isinstance(error, AuthorizationError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, (ComplianceHold, TransitionError)):
        detail = "Request cannot be changed right now" if stakeholder_facing else str(error)
        return HTTPException(status_code=409, detail=detail)
    if isinstance(error, (ConcurrentTransitionError, DisbursementBlocked, AuditTrailViolation)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=400, detail="Request could not be processed")
