"""
Audit Trail

Append-only record of every transition and decision input per request.

Core Principles:
1. Records are appended, never edited or deleted (mapper guards enforce it).
2. Each request has its own gap-free sequence.
3. Confidential entries (AML, STR) are hidden from anything stakeholder-facing.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import AuditRecordDB, ActorType, RefundRequestDB
from .deadlines import utcnow


SYSTEM_ACTOR = "system"


class AuditTrail:
    def __init__(self, db: Session):
        self.db = db

    def next_sequence(self, request_id: str) -> int:
        current = self.db.query(func.max(AuditRecordDB.sequence)).filter(
            AuditRecordDB.request_id == request_id
        ).scalar()
        return (current or 0) + 1

    def append(
        self,
        request: RefundRequestDB,
        action: str,
        rationale: str,
        actor: str = SYSTEM_ACTOR,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_role: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        inputs: Optional[Dict[str, Any]] = None,
        confidential: bool = False,
        at: Optional[datetime] = None,
    ) -> AuditRecordDB:
        """
        Append one record. Flushes so the next append in the same
        transaction sees this sequence number.
        """
        record = AuditRecordDB(
            id=str(uuid4()),
            request_id=request.id,
            sequence=self.next_sequence(request.id),
            actor=actor,
            actor_type=actor_type,
            actor_role=actor_role,
            action=action,
            from_state=from_state,
            to_state=to_state,
            inputs=inputs or {},
            rationale=rationale,
            confidential=confidential,
            created_at=at or utcnow(),
        )
        self.db.add(record)
        self.db.flush()
        return record

    def records_for(self, request_id: str, include_confidential: bool = False) -> List[AuditRecordDB]:
        query = self.db.query(AuditRecordDB).filter(AuditRecordDB.request_id == request_id)
        if not include_confidential:
            query = query.filter(AuditRecordDB.confidential.is_(False))
        return query.order_by(AuditRecordDB.sequence).all()
