"""
Reviewer assignment for L2.

Workload-balanced: the active RPO with the fewest open assignments wins;
ties go to whoever was assigned least recently (never-assigned first),
which degrades to round-robin when workloads are equal.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import (
    ReviewerDB, ReviewAssignmentDB, ReviewerRole, RefundRequestDB,
)
from .deadlines import utcnow

logger = logging.getLogger(__name__)


class ReviewerAssigner:
    def __init__(self, db: Session):
        self.db = db

    def open_workload(self, reviewer_id: str) -> int:
        return self.db.query(func.count(ReviewAssignmentDB.id)).filter(
            ReviewAssignmentDB.reviewer_id == reviewer_id,
            ReviewAssignmentDB.completed_at.is_(None),
        ).scalar() or 0

    def pick_reviewer(self, role: ReviewerRole = ReviewerRole.RPO) -> Optional[ReviewerDB]:
        candidates = self.db.query(ReviewerDB).filter(
            ReviewerDB.role == role,
            ReviewerDB.is_active.is_(True),
        ).all()
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda r: (
                self.open_workload(r.id),
                r.last_assigned_at or datetime.min,
                r.email,
            ),
        )

    def assign(
        self,
        request: RefundRequestDB,
        tier: str = "L2",
        role: ReviewerRole = ReviewerRole.RPO,
        now: Optional[datetime] = None,
    ) -> Optional[ReviewAssignmentDB]:
        """Assign the request; returns None when no reviewer of the role is active."""
        reviewer = self.pick_reviewer(role)
        if reviewer is None:
            logger.warning(f"No active {role.value} reviewer for {request.reference_id}")
            return None

        now = now or utcnow()
        assignment = ReviewAssignmentDB(
            id=str(uuid4()),
            request_id=request.id,
            reviewer_id=reviewer.id,
            tier=tier,
            assigned_at=now,
        )
        reviewer.last_assigned_at = now
        self.db.add(assignment)
        self.db.flush()
        logger.info(f"Assigned {request.reference_id} to {reviewer.email} ({tier})")
        return assignment

    def complete(self, request: RefundRequestDB, tier: str, now: Optional[datetime] = None) -> None:
        open_assignments = self.db.query(ReviewAssignmentDB).filter(
            ReviewAssignmentDB.request_id == request.id,
            ReviewAssignmentDB.tier == tier,
            ReviewAssignmentDB.completed_at.is_(None),
        ).all()
        for assignment in open_assignments:
            assignment.completed_at = now or utcnow()

    def current_reviewer_id(self, request: RefundRequestDB, tier: str = "L2") -> Optional[str]:
        assignment = self.db.query(ReviewAssignmentDB).filter(
            ReviewAssignmentDB.request_id == request.id,
            ReviewAssignmentDB.tier == tier,
            ReviewAssignmentDB.completed_at.is_(None),
        ).order_by(ReviewAssignmentDB.assigned_at.desc()).first()
        return assignment.reviewer_id if assignment else None
