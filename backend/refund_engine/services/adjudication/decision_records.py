"""
Decision records.

Created once per decision and never mutated. A later correction (final
interest on payout, for example) is a new record that points at the one
it amends.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import DecisionRecordDB, RefundRequestDB
from ...models.domain import money
from .deadlines import utcnow


def checkpoints(request: RefundRequestDB) -> Dict[str, Optional[str]]:
    """SLA checkpoint timestamps as recorded on the request."""
    fields = ("submitted_at", "acknowledged_at", "l1_completed_at", "l2_started_at", "l3_started_at", "decided_at")
    return {
        name: getattr(request, name).isoformat() if getattr(request, name) else None
        for name in fields
    }


class DecisionLedger:
    def __init__(self, db: Session):
        self.db = db

    def latest(self, request: RefundRequestDB) -> Optional[DecisionRecordDB]:
        return self.db.query(DecisionRecordDB).filter(
            DecisionRecordDB.request_id == request.id
        ).order_by(DecisionRecordDB.created_at.desc()).first()

    def history(self, request: RefundRequestDB) -> List[DecisionRecordDB]:
        return self.db.query(DecisionRecordDB).filter(
            DecisionRecordDB.request_id == request.id
        ).order_by(DecisionRecordDB.created_at).all()

    def record(
        self,
        request: RefundRequestDB,
        outcome: str,
        tier: str,
        decided_by: str,
        reason: Optional[str] = None,
        clause: Optional[str] = None,
        deductions: Optional[List[Dict[str, Any]]] = None,
        total_deductions: Decimal = Decimal("0"),
        interest_amount: Decimal = Decimal("0"),
        payable_amount: Decimal = Decimal("0"),
        dissent: Optional[List[Dict[str, Any]]] = None,
        amends: Optional[DecisionRecordDB] = None,
        now: Optional[datetime] = None,
    ) -> DecisionRecordDB:
        record = DecisionRecordDB(
            id=str(uuid4()),
            request_id=request.id,
            amends_decision_id=amends.id if amends else None,
            outcome=outcome,
            tier=tier,
            decided_by=decided_by,
            reason=reason,
            clause=clause,
            amount_claimed=money(request.amount_claimed),
            deductions=deductions or [],
            total_deductions=money(total_deductions),
            interest_amount=money(interest_amount),
            payable_amount=max(money(payable_amount), Decimal("0.00")),
            dissent=dissent or [],
            checkpoints=checkpoints(request),
            created_at=now or utcnow(),
        )
        self.db.add(record)
        self.db.flush()
        return record
