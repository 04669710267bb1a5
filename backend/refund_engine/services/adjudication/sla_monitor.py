"""
Timeout/Escalation Monitor

Recurring sweep over every open refund request.

AUTHORITY: SYSTEM - Runs on a schedule, never triggered by a request.
Forced transitions go through the same per-request lock as human
decisions. A request someone is working on right now is skipped and
picked up by the next sweep.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import RefundRequestDB, RefundState
from ...models.domain import money
from .deadlines import add_business_days, utcnow, value_band
from .disbursement import DisbursementScheduler
from .errors import ConcurrentTransitionError, SLABreach
from .locking import DEFAULT_LOCKS, RequestLockRegistry, request_transaction
from .operator_queue import OperatorQueue
from .state_machine import AutomaticTransitionTriggers, RefundStateMachine, TERMINAL_STATES

logger = logging.getLogger(__name__)


# Holds outside the stakeholder's control never count as inactivity
NON_EXPIRING_STATES = frozenset({
    RefundState.FROZEN,
    RefundState.PENDING_RETRY,
    RefundState.DISBURSING,
})


class SlaMonitor:
    def __init__(
        self,
        db_session: Session,
        config: EngineConfig,
        locks: Optional[RequestLockRegistry] = None,
    ):
        self.db = db_session
        self.config = config
        self.locks = locks or DEFAULT_LOCKS
        self.state_machine = RefundStateMachine(db_session)
        self.operators = OperatorQueue(db_session)
        self.scheduler = DisbursementScheduler(db_session, config, self.locks)

    def open_reference_ids(self) -> List[str]:
        rows = self.db.query(RefundRequestDB.reference_id).filter(
            RefundRequestDB.state.notin_(list(TERMINAL_STATES))
        ).order_by(RefundRequestDB.submitted_at).all()
        return [row[0] for row in rows]

    def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One pass of the monitor.

        Actions:
        - Acknowledges RECEIVED requests
        - Expires requests idle past the outer limitation period
        - Escalates L2 reviews past their value-band decision SLA to L3
        - Alerts operators on L3 and sign-off SLA breaches
        - Alerts operators on requests frozen longer than the configured maximum
        - Escalates delay interest on overdue disbursements
        """
        now = now or utcnow()
        details = {"acknowledged": [], "escalated": [], "expired": [], "alerts": [], "skipped": [], "errors": []}

        reference_ids = self.open_reference_ids()
        for reference_id in reference_ids:
            try:
                with request_transaction(self.db, reference_id, self.locks, blocking=False) as request:
                    self._check_request(request, now, details)
            except ConcurrentTransitionError:
                details["skipped"].append(reference_id)
            except Exception as e:
                logger.error(f"SLA sweep failed for {reference_id}: {e}")
                details["errors"].append({"reference_id": reference_id, "error": str(e)})

        disbursements = self.scheduler.check_sla(now.date())

        processed = sum(len(details[k]) for k in ("acknowledged", "escalated", "expired", "alerts"))
        logger.info(
            f"SLA sweep at {now.isoformat()}: {len(reference_ids)} open, {processed} actions, "
            f"{len(details['skipped'])} skipped, {len(details['errors'])} errors"
        )
        return {
            "run_date": now.isoformat(),
            "found": len(reference_ids),
            "processed": processed,
            "errors": len(details["errors"]),
            "details": details,
            "disbursements": disbursements,
        }

    def _check_request(self, request: RefundRequestDB, now: datetime, details: Dict[str, list]) -> None:
        state = request.state
        if state in TERMINAL_STATES:
            return

        inactive_days = (now - (request.last_activity_at or request.submitted_at)).days
        if state not in NON_EXPIRING_STATES and inactive_days >= self.config.inactivity_expiry_days:
            success, message = AutomaticTransitionTriggers.inactivity_expiry(
                self.state_machine, request, inactive_days, now=now,
            )
            if success:
                details["expired"].append({"reference_id": request.reference_id, "inactive_days": inactive_days})
            return

        band = value_band(money(request.amount_claimed))
        today = now.date()

        if state == RefundState.RECEIVED:
            ack_days = min(self.config.acknowledgment_sla_business_days, band.acknowledgment_days)
            due = add_business_days(request.submitted_at.date(), ack_days, self.config.holidays)
            if today > due:
                logger.warning(str(SLABreach(request.reference_id, "acknowledgment", due, today)))
            success, _ = AutomaticTransitionTriggers.acknowledgment_due(self.state_machine, request, now=now)
            if success:
                details["acknowledged"].append(request.reference_id)

        elif state == RefundState.L2_REVIEW:
            due = add_business_days(request.l2_started_at.date(), band.decision_days, self.config.holidays)
            if today > due:
                success, message = AutomaticTransitionTriggers.l2_sla_breach(self.state_machine, request, due, now=now)
                if success:
                    logger.warning(str(SLABreach(request.reference_id, "l2_decision", due, today)))
                    details["escalated"].append({"reference_id": request.reference_id, "due": due.isoformat()})

        elif state == RefundState.L3_REVIEW:
            due = add_business_days(request.l3_started_at.date(), self.config.l3_sla_business_days, self.config.holidays)
            self._alert_if_breached(request, "L3_SLA_BREACH", "committee decision", due, today, now, details)

        elif state == RefundState.AWAITING_FINAL_AUTHORITY:
            due = add_business_days(request.state_entered_at.date(), self.config.l3_sla_business_days, self.config.holidays)
            self._alert_if_breached(request, "FINAL_AUTHORITY_SLA_BREACH", "final-authority sign-off", due, today, now, details)

        elif state == RefundState.FROZEN:
            since = request.frozen_at or request.state_entered_at
            if now > since + timedelta(days=self.config.frozen_alert_after_days):
                item = self.operators.raise_item(
                    request, "FROZEN_TOO_LONG",
                    f"{request.reference_id} has been on compliance hold since {since.date().isoformat()}",
                    now=now,
                )
                if item is not None:
                    details["alerts"].append({"reference_id": request.reference_id, "kind": "FROZEN_TOO_LONG"})

    def _alert_if_breached(self, request, kind, checkpoint, due: date, today: date, now, details) -> None:
        if today <= due:
            return
        breach = SLABreach(request.reference_id, checkpoint, due, today)
        item = self.operators.raise_item(request, kind, str(breach), now=now)
        if item is not None:
            details["alerts"].append({"reference_id": request.reference_id, "kind": kind})
