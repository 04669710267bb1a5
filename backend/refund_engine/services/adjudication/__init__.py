"""
Refund Adjudication Services

Verification pipeline for refund requests: eligibility rules, AML
screening, tiered review and disbursement, driven by a deterministic
state machine with an append-only audit trail.
"""

from .state_machine import RefundStateMachine, AutomaticTransitionTriggers
from .eligibility import evaluate
from .aml_screener import AmlScreener
from .pipeline import VerificationPipeline, Recommendation
from .disbursement import DisbursementScheduler
from .sla_monitor import SlaMonitor
from .collaborators import Collaborators
from .committee import CommitteeService, tally
from .policy_documents import PolicyDocumentStore
from .operator_queue import OperatorQueue
from .locking import RequestLockRegistry, DEFAULT_LOCKS

__all__ = [
    'RefundStateMachine',
    'AutomaticTransitionTriggers',
    'evaluate',
    'AmlScreener',
    'VerificationPipeline',
    'Recommendation',
    'DisbursementScheduler',
    'SlaMonitor',
    'Collaborators',
    'CommitteeService',
    'tally',
    'PolicyDocumentStore',
    'OperatorQueue',
    'RequestLockRegistry',
    'DEFAULT_LOCKS',
]
