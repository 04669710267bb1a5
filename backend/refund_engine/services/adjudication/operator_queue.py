"""
Operator queue: requests that need a human to look at them.

Exhausted collaborator retries, SLA alerts that cannot auto-resolve,
blocked payouts and repeated disbursement failures land here.
"""
import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import OperatorQueueDB, OperatorItemStatus, RefundRequestDB
from .deadlines import utcnow
from .errors import NotFoundError

logger = logging.getLogger(__name__)


class OperatorQueue:
    def __init__(self, db: Session):
        self.db = db

    def has_open(self, request_id: str, kind: str) -> bool:
        return self.db.query(OperatorQueueDB).filter(
            OperatorQueueDB.request_id == request_id,
            OperatorQueueDB.kind == kind,
            OperatorQueueDB.status == OperatorItemStatus.OPEN,
        ).first() is not None

    def raise_item(
        self,
        request: Optional[RefundRequestDB],
        kind: str,
        message: str,
        now: Optional[datetime] = None,
        dedupe: bool = True,
    ) -> Optional[OperatorQueueDB]:
        """Add an item; with dedupe, skip if an open item of the same kind exists."""
        request_id = request.id if request is not None else None
        if dedupe and request_id and self.has_open(request_id, kind):
            return None

        item = OperatorQueueDB(
            id=str(uuid4()),
            request_id=request_id,
            kind=kind,
            message=message,
            status=OperatorItemStatus.OPEN,
            created_at=now or utcnow(),
        )
        self.db.add(item)
        self.db.flush()
        logger.warning(f"Operator queue [{kind}]: {message}")
        return item

    def resolve_for(self, request: RefundRequestDB, kind: str, now: Optional[datetime] = None) -> int:
        items = self.db.query(OperatorQueueDB).filter(
            OperatorQueueDB.request_id == request.id,
            OperatorQueueDB.kind == kind,
            OperatorQueueDB.status == OperatorItemStatus.OPEN,
        ).all()
        for item in items:
            item.status = OperatorItemStatus.RESOLVED
            item.resolved_at = now or utcnow()
        return len(items)

    def resolve(self, item_id: str, now: Optional[datetime] = None) -> OperatorQueueDB:
        item = self.db.get(OperatorQueueDB, item_id)
        if item is None:
            raise NotFoundError(f"Operator queue item {item_id} not found")
        item.status = OperatorItemStatus.RESOLVED
        item.resolved_at = now or utcnow()
        return item

    def open_items(self, kind: Optional[str] = None) -> List[OperatorQueueDB]:
        query = self.db.query(OperatorQueueDB).filter(OperatorQueueDB.status == OperatorItemStatus.OPEN)
        if kind:
            query = query.filter(OperatorQueueDB.kind == kind)
        return query.order_by(OperatorQueueDB.created_at).all()
