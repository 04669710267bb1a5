"""
Refund State Machine

Deterministic state machine for the verification pipeline.
Terminal states never advance. Every transition appends an audit record
and, when the public milestone changes, a status event.

FROZEN is orthogonal: any non-terminal state can freeze on a suspicious
screening, and only a compliance clearance releases it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...models.db_models import RefundState, ActorType, RefundRequestDB
from .audit_trail import AuditTrail, SYSTEM_ACTOR
from .deadlines import utcnow
from .errors import TransitionError
from .status_feed import StatusFeed

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# entry_authority names who may move a request INTO the state:
# - STAKEHOLDER: submission and withdrawal
# - SYSTEM: automated screening, sweeps, disbursement confirmation
# - REVIEWER: L2 decisions, committee votes, sign-off, compliance clearance
#
# =============================================================================

STATE_CONFIG = {
    RefundState.RECEIVED: {
        "description": "Request submitted, awaiting acknowledgment",
        "allowed_transitions": [
            RefundState.ACKNOWLEDGED,
            RefundState.CANCELLED,
            RefundState.EXPIRED,
            RefundState.FROZEN,
        ],
        "entry_authority": "STAKEHOLDER",
        "tier": None,
    },
    RefundState.ACKNOWLEDGED: {
        "description": "Receipt acknowledged, awaiting automated screening",
        "allowed_transitions": [
            RefundState.L1_SCREENING,
            RefundState.CANCELLED,
            RefundState.EXPIRED,
            RefundState.FROZEN,
        ],
        "entry_authority": "SYSTEM",
        "tier": None,
    },
    RefundState.L1_SCREENING: {
        "description": "Eligibility and AML checks running",
        "allowed_transitions": [
            RefundState.L2_REVIEW,
            RefundState.L1_AUTO_REJECTED,
            RefundState.PENDING_RETRY,
            RefundState.CANCELLED,
            RefundState.EXPIRED,
            RefundState.FROZEN,
        ],
        "entry_authority": "SYSTEM",
        "tier": "L1",
    },
    RefundState.PENDING_RETRY: {
        "description": "Collaborator unavailable after retries; parked for an operator",
        "allowed_transitions": [
            RefundState.L1_SCREENING,
            RefundState.CANCELLED,
            RefundState.FROZEN,
        ],
        "entry_authority": "SYSTEM",
        "tier": "L1",
    },
    RefundState.L1_AUTO_REJECTED: {
        "description": "Rejected by automated screening",
        "allowed_transitions": [],
        "entry_authority": "SYSTEM",
        "tier": "L1",
    },
    RefundState.L2_REVIEW: {
        "description": "Manual review by a refund processing officer",
        "allowed_transitions": [
            RefundState.DISBURSING,
            RefundState.REJECTED,
            RefundState.L3_REVIEW,
            RefundState.WITHDRAWN_BY_STAKEHOLDER,
            RefundState.EXPIRED,
            RefundState.FROZEN,
        ],
        "entry_authority": "SYSTEM",
        "tier": "L2",
    },
    RefundState.L3_REVIEW: {
        "description": "Committee review (Finance, Compliance, Legal)",
        "allowed_transitions": [
            RefundState.DISBURSING,
            RefundState.REJECTED,
            RefundState.AWAITING_FINAL_AUTHORITY,
            RefundState.WITHDRAWN_BY_STAKEHOLDER,
            RefundState.EXPIRED,
            RefundState.FROZEN,
        ],
        "entry_authority": "REVIEWER",
        "tier": "L3",
    },
    RefundState.AWAITING_FINAL_AUTHORITY: {
        "description": "Committee approved; named-approver sign-off required",
        "allowed_transitions": [
            RefundState.DISBURSING,
            RefundState.REJECTED,
            RefundState.EXPIRED,
            RefundState.FROZEN,
        ],
        "entry_authority": "REVIEWER",
        "tier": "FINAL_AUTHORITY",
    },
    RefundState.DISBURSING: {
        "description": "Approved; payout scheduled",
        "allowed_transitions": [
            RefundState.APPROVED,
            RefundState.FROZEN,
        ],
        "entry_authority": "REVIEWER",
        "tier": "DISBURSEMENT",
    },
    RefundState.APPROVED: {
        "description": "Refund paid",
        "allowed_transitions": [],
        "entry_authority": "SYSTEM",
        "tier": "DISBURSEMENT",
    },
    RefundState.REJECTED: {
        "description": "Rejected after review",
        "allowed_transitions": [],
        "entry_authority": "REVIEWER",
        "tier": None,
    },
    RefundState.EXPIRED: {
        "description": "No activity within the outer limitation period",
        "allowed_transitions": [],
        "entry_authority": "SYSTEM",
        "tier": None,
    },
    RefundState.CANCELLED: {
        "description": "Withdrawn by the stakeholder before manual review",
        "allowed_transitions": [],
        "entry_authority": "STAKEHOLDER",
        "tier": None,
    },
    RefundState.WITHDRAWN_BY_STAKEHOLDER: {
        "description": "Withdrawn by the stakeholder during manual review",
        "allowed_transitions": [],
        "entry_authority": "STAKEHOLDER",
        "tier": None,
    },
    RefundState.FROZEN: {
        "description": "Compliance hold on a suspicious screening",
        "allowed_transitions": [
            RefundState.RECEIVED,
            RefundState.ACKNOWLEDGED,
            RefundState.L1_SCREENING,
            RefundState.PENDING_RETRY,
            RefundState.L2_REVIEW,
            RefundState.L3_REVIEW,
            RefundState.AWAITING_FINAL_AUTHORITY,
            RefundState.DISBURSING,
        ],
        "entry_authority": "SYSTEM",
        "tier": None,
    },
}

TERMINAL_STATES = frozenset(s for s, c in STATE_CONFIG.items() if not c["allowed_transitions"])

# States whose SLA clock the monitor watches
REVIEW_STATES = frozenset({
    RefundState.L2_REVIEW,
    RefundState.L3_REVIEW,
    RefundState.AWAITING_FINAL_AUTHORITY,
})

STAKEHOLDER_CANCELLABLE = frozenset({
    RefundState.RECEIVED,
    RefundState.ACKNOWLEDGED,
    RefundState.L1_SCREENING,
    RefundState.PENDING_RETRY,
})

STAKEHOLDER_WITHDRAWABLE = frozenset({
    RefundState.L2_REVIEW,
    RefundState.L3_REVIEW,
})


# =============================================================================
# STATE MACHINE
# =============================================================================

class RefundStateMachine:
    """
    Core Principles:
    - Only STATE_CONFIG transitions are legal
    - Terminal states have no exits
    - FROZEN exits only through release(), driven by compliance clearance
    - Every transition is audited
    """

    def __init__(self, db_session: Session):
        self.db = db_session
        self.audit = AuditTrail(db_session)
        self.feed = StatusFeed(db_session)

    def get_state_config(self, state: RefundState) -> Dict[str, Any]:
        return STATE_CONFIG.get(state, {})

    def can_transition(self, from_state: RefundState, to_state: RefundState) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        if from_state == RefundState.FROZEN:
            return False, "Frozen requests are released only by compliance clearance"

        allowed = self.get_state_config(from_state).get("allowed_transitions", [])
        if to_state in allowed:
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def transition(
        self,
        request: RefundRequestDB,
        to_state: RefundState,
        trigger: str,
        actor: str = SYSTEM_ACTOR,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_role: Optional[str] = None,
        inputs: Optional[Dict[str, Any]] = None,
        confidential: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """
        Execute a state transition.

        Returns (success, message)
        """
        from_state = request.state
        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            return False, reason

        self._apply(request, from_state, to_state, trigger, actor, actor_type, actor_role, inputs, confidential, now)
        return True, f"Transitioned to {to_state.value}"

    def advance(self, request: RefundRequestDB, to_state: RefundState, trigger: str, **kwargs) -> None:
        """transition() for callers that have already checked the state; raises TransitionError if refused."""
        success, message = self.transition(request, to_state, trigger, **kwargs)
        if not success:
            raise TransitionError(f"{request.reference_id}: {message}")

    def freeze(
        self,
        request: RefundRequestDB,
        trigger: str,
        inputs: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """Enter FROZEN from any non-terminal state. Audited as confidential."""
        from_state = request.state
        if from_state == RefundState.FROZEN:
            return False, "Already frozen"
        if from_state in TERMINAL_STATES:
            return False, f"Cannot freeze terminal state {from_state.value}"

        now = now or utcnow()
        request.frozen_from_state = from_state
        request.frozen_at = now
        self._apply(request, from_state, RefundState.FROZEN, trigger, SYSTEM_ACTOR, ActorType.SYSTEM,
                    None, inputs, True, now)
        return True, "Request frozen"

    def release(
        self,
        request: RefundRequestDB,
        to_state: RefundState,
        actor: str,
        actor_role: str,
        rationale: str,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """Leave FROZEN after clearance, to the prior state or back to L1."""
        if request.state != RefundState.FROZEN:
            return False, "Request is not frozen"
        if to_state not in STATE_CONFIG[RefundState.FROZEN]["allowed_transitions"]:
            return False, f"Cannot release to {to_state.value}"

        now = now or utcnow()
        if request.frozen_at is not None:
            # Time on hold does not count against the review clocks
            held = now - request.frozen_at
            if request.l2_started_at is not None:
                request.l2_started_at = request.l2_started_at + held
            if request.l3_started_at is not None:
                request.l3_started_at = request.l3_started_at + held

        self._apply(request, RefundState.FROZEN, to_state, rationale, actor, ActorType.REVIEWER,
                    actor_role, {"frozen_from_state": request.frozen_from_state.value if request.frozen_from_state else None},
                    True, now)
        request.frozen_from_state = None
        request.frozen_at = None
        return True, f"Released to {to_state.value}"

    def _apply(self, request, from_state, to_state, trigger, actor, actor_type, actor_role, inputs, confidential, now):
        now = now or utcnow()

        self.audit.append(
            request,
            action="state_transition",
            rationale=trigger,
            actor=actor,
            actor_type=actor_type,
            actor_role=actor_role,
            from_state=from_state.value,
            to_state=to_state.value,
            inputs=inputs,
            confidential=confidential,
            at=now,
        )

        request.state = to_state
        request.state_entered_at = now
        request.last_activity_at = now
        self._stamp_checkpoint(request, from_state, to_state, now)

        self.feed.publish_if_changed(request, from_state, to_state, at=now)
        logger.info(f"{request.reference_id}: {from_state.value} -> {to_state.value} ({trigger})")

    @staticmethod
    def _stamp_checkpoint(request, from_state, to_state, now):
        if to_state == RefundState.ACKNOWLEDGED and request.acknowledged_at is None:
            request.acknowledged_at = now
        if from_state == RefundState.L1_SCREENING and to_state != RefundState.FROZEN:
            request.l1_completed_at = now
        if to_state == RefundState.L2_REVIEW and request.l2_started_at is None:
            request.l2_started_at = now
        if to_state == RefundState.L3_REVIEW and request.l3_started_at is None:
            request.l3_started_at = now
        if to_state in (RefundState.DISBURSING, RefundState.REJECTED, RefundState.L1_AUTO_REJECTED):
            request.decided_at = now

    def is_terminal_state(self, state: RefundState) -> bool:
        return state in TERMINAL_STATES

    def get_next_states(self, state: RefundState) -> List[RefundState]:
        return self.get_state_config(state).get("allowed_transitions", [])


# =============================================================================
# AUTOMATIC TRANSITION TRIGGERS (SYSTEM-AUTHORITATIVE)
# =============================================================================
#
# Executed by the SLA monitor without reviewer confirmation.
# Reviewers observe the results through the audit trail and operator queue.
#
# =============================================================================

class AutomaticTransitionTriggers:
    """
    System-authoritative transitions forced by SLA breaches.

    AUTHORITY: SYSTEM
    """

    @staticmethod
    def acknowledgment_due(
        state_machine: RefundStateMachine,
        request: RefundRequestDB,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        if request.state != RefundState.RECEIVED:
            return False, "Request not in RECEIVED state"
        return state_machine.transition(request, RefundState.ACKNOWLEDGED, "acknowledgment_sla", now=now)

    @staticmethod
    def l2_sla_breach(
        state_machine: RefundStateMachine,
        request: RefundRequestDB,
        due_date,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """L2 reviewer could not decide within the value-band SLA; escalation is mandatory."""
        if request.state != RefundState.L2_REVIEW:
            return False, "Request not in L2_REVIEW state"
        reasons = list(request.escalation_reasons or [])
        reasons.append("L2_SLA_BREACH")
        request.escalation_reasons = reasons
        return state_machine.transition(
            request, RefundState.L3_REVIEW, "l2_sla_breach",
            inputs={"l2_due": due_date.isoformat()}, now=now,
        )

    @staticmethod
    def inactivity_expiry(
        state_machine: RefundStateMachine,
        request: RefundRequestDB,
        inactive_days: int,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        return state_machine.transition(
            request, RefundState.EXPIRED, "inactivity_expiry",
            inputs={"inactive_days": inactive_days}, now=now,
        )
