"""
Public status feed (RequestStateChanged stream).

Maps internal pipeline states to the stakeholder-facing milestones
Received -> Under Review -> Approved/Rejected -> Processed. Frozen maps to
"under_review" so a compliance hold is indistinguishable from ordinary
review, and nothing from the screening results is ever copied here.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import RefundRequestDB, RefundState, StatusEventDB
from .deadlines import utcnow


PUBLIC_STATUS = {
    RefundState.RECEIVED: "received",
    RefundState.ACKNOWLEDGED: "received",
    RefundState.L1_SCREENING: "under_review",
    RefundState.PENDING_RETRY: "processing_delayed",
    RefundState.L2_REVIEW: "under_review",
    RefundState.L3_REVIEW: "under_review",
    RefundState.AWAITING_FINAL_AUTHORITY: "under_review",
    RefundState.FROZEN: "under_review",
    RefundState.DISBURSING: "approved",
    RefundState.APPROVED: "processed",
    RefundState.L1_AUTO_REJECTED: "rejected",
    RefundState.REJECTED: "rejected",
    RefundState.EXPIRED: "expired",
    RefundState.CANCELLED: "withdrawn",
    RefundState.WITHDRAWN_BY_STAKEHOLDER: "withdrawn",
}

PUBLIC_SUMMARIES = {
    "received": "Your refund request has been received.",
    "under_review": "Your refund request is under review.",
    "processing_delayed": "Processing of your refund request is delayed. No action is needed from you.",
    "approved": "Your refund has been approved and is being disbursed.",
    "processed": "Your refund has been processed.",
    "rejected": "Your refund request has been rejected.",
    "expired": "Your refund request has expired due to inactivity.",
    "withdrawn": "Your refund request has been withdrawn.",
}


def public_status(state: RefundState) -> str:
    return PUBLIC_STATUS[state]


def public_summary(request: RefundRequestDB, status: str) -> str:
    summary = PUBLIC_SUMMARIES[status]
    if status == "rejected" and request.decision_reason:
        summary = f"{summary} Reason: {request.decision_reason} ({request.decision_clause})"
    return summary


class StatusFeed:
    def __init__(self, db: Session):
        self.db = db

    def publish_if_changed(
        self,
        request: RefundRequestDB,
        old_state: Optional[RefundState],
        new_state: RefundState,
        at: Optional[datetime] = None,
    ) -> Optional[StatusEventDB]:
        """Emit an event only when the public milestone changes."""
        new_status = public_status(new_state)
        if old_state is not None and public_status(old_state) == new_status:
            return None

        sequence = self.db.query(func.max(StatusEventDB.sequence)).filter(
            StatusEventDB.request_id == request.id
        ).scalar()
        event = StatusEventDB(
            id=str(uuid4()),
            request_id=request.id,
            reference_id=request.reference_id,
            sequence=(sequence or 0) + 1,
            public_status=new_status,
            summary=public_summary(request, new_status),
            created_at=at or utcnow(),
        )
        self.db.add(event)
        self.db.flush()
        return event

    def events_for(self, reference_id: str) -> List[StatusEventDB]:
        return self.db.query(StatusEventDB).filter(
            StatusEventDB.reference_id == reference_id
        ).order_by(StatusEventDB.sequence).all()

    def public_view(self, request: RefundRequestDB) -> Dict[str, Any]:
        """Stakeholder-facing snapshot. Built only from public-safe fields."""
        status = public_status(request.state)
        view = {
            "reference_id": request.reference_id,
            "status": status,
            "summary": public_summary(request, status),
            "submitted_at": request.submitted_at.isoformat() if request.submitted_at else None,
            "timeline": [
                {"status": e.public_status, "at": e.created_at.isoformat()}
                for e in self.events_for(request.reference_id)
            ],
        }
        if status in ("approved", "processed") and request.payable_amount is not None:
            view["payable_amount"] = str(request.payable_amount)
        return view
