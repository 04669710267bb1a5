"""
Adjudication error taxonomy.

Validation and eligibility errors are resolved inside the pipeline and
produce a decision record. Infrastructure errors are retried and then
parked for an operator. Compliance holds never reach the stakeholder.
"""
from typing import List, Optional


class RefundEngineError(Exception):
    """Base class for all adjudication errors."""
    pass


class ValidationError(RefundEngineError):
    """Malformed or incomplete request, or an operation not valid in the current state."""
    pass


class NotFoundError(RefundEngineError):
    """Unknown refund reference or reviewer."""
    pass


class IneligibleError(RefundEngineError):
    """No eligible refund path. Terminal, surfaced with the clause invoked."""

    def __init__(self, message: str, clause: str):
        super().__init__(message)
        self.clause = clause


class InfrastructureError(RefundEngineError):
    """A collaborator (registry, document store, sanctions list) is unavailable."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ComplianceHold(RefundEngineError):
    """
    Raised internally when a suspicious verdict freezes a request.
    Never surfaced to stakeholders.
    """

    def __init__(self, reference_id: str, indicators: Optional[List[str]] = None):
        super().__init__(f"Request {reference_id} is under compliance hold")
        self.reference_id = reference_id
        self.indicators = indicators or []


class SLABreach(RefundEngineError):
    """A pipeline stage missed its decision deadline. Triggers forced escalation."""

    def __init__(self, reference_id: str, checkpoint: str, due, observed):
        super().__init__(f"{reference_id}: {checkpoint} due {due}, observed {observed}")
        self.reference_id = reference_id
        self.checkpoint = checkpoint
        self.due = due
        self.observed = observed


class TransitionError(RefundEngineError):
    """Transition not permitted by the state table."""
    pass


class ConcurrentTransitionError(RefundEngineError):
    """Another writer advanced the request first."""
    pass


class AuditTrailViolation(RefundEngineError):
    """Attempt to mutate or delete an append-only record."""
    pass


class DisbursementBlocked(RefundEngineError):
    """Payout account differs from the verified source account without an approved override."""
    pass


class AuthorizationError(RefundEngineError):
    """Reviewer role may not perform the requested action."""
    pass
