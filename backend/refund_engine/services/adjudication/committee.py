"""
L3 committee voting.

A vote is a (role, vote, rationale) record; roles are an enum, not a
reviewer class hierarchy. The committee decides once Finance, Compliance
and Legal have all voted. Approval needs a strict majority of the votes
cast; a tie is not a majority and rejects. On fraud or misrepresentation
grounds a Compliance rejection vetoes approval (Art. 11.2).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    CommitteeVoteDB, RefundRequestDB, ReviewerDB, ReviewerRole, Vote, ActorType,
)
from .audit_trail import AuditTrail
from .deadlines import utcnow
from .errors import AuthorizationError, ValidationError

REQUIRED_ROLES = frozenset({ReviewerRole.FINANCE, ReviewerRole.COMPLIANCE, ReviewerRole.LEGAL})
COMMITTEE_ROLES = REQUIRED_ROLES | {ReviewerRole.OPERATIONS}
FINAL_AUTHORITY_ROLES = frozenset({ReviewerRole.MD_CEO, ReviewerRole.BOARD})


@dataclass
class CommitteeOutcome:
    decided: bool
    decision: Optional[Vote] = None
    approvals: int = 0
    rejections: int = 0
    dissent: List[Dict[str, Any]] = field(default_factory=list)
    pending_roles: List[str] = field(default_factory=list)
    compliance_veto: bool = False


def tally(votes: Iterable[CommitteeVoteDB], fraud_asserted: bool = False) -> CommitteeOutcome:
    """Aggregate committee votes. Pure; does not touch the database."""
    votes = list(votes)
    cast_roles = {v.role for v in votes}
    missing = sorted(r.value for r in REQUIRED_ROLES - cast_roles)

    approvals = sum(1 for v in votes if v.vote == Vote.APPROVE)
    rejections = len(votes) - approvals

    if missing:
        return CommitteeOutcome(
            decided=False, approvals=approvals, rejections=rejections, pending_roles=missing,
        )

    decision = Vote.APPROVE if approvals > rejections else Vote.REJECT
    veto = False
    if fraud_asserted and decision == Vote.APPROVE:
        compliance_votes = [v for v in votes if v.role == ReviewerRole.COMPLIANCE]
        if any(v.vote == Vote.REJECT for v in compliance_votes):
            decision = Vote.REJECT
            veto = True

    dissent = [
        {"role": v.role.value, "reviewer_id": v.reviewer_id, "vote": v.vote.value, "rationale": v.rationale}
        for v in votes if v.vote != decision
    ]
    return CommitteeOutcome(
        decided=True,
        decision=decision,
        approvals=approvals,
        rejections=rejections,
        dissent=dissent,
        compliance_veto=veto,
    )


class CommitteeService:
    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditTrail(db)

    def votes_for(self, request: RefundRequestDB) -> List[CommitteeVoteDB]:
        return self.db.query(CommitteeVoteDB).filter(
            CommitteeVoteDB.request_id == request.id
        ).order_by(CommitteeVoteDB.created_at).all()

    def record_vote(
        self,
        request: RefundRequestDB,
        reviewer: ReviewerDB,
        vote: Vote,
        rationale: str,
        now=None,
    ) -> CommitteeVoteDB:
        if reviewer.role not in COMMITTEE_ROLES:
            raise AuthorizationError(f"Role {reviewer.role.value} does not sit on the refund committee")
        if not rationale or not rationale.strip():
            raise ValidationError("A committee vote must record its rationale")
        if any(v.role == reviewer.role for v in self.votes_for(request)):
            raise ValidationError(f"{reviewer.role.value} has already voted on {request.reference_id}")

        now = now or utcnow()
        record = CommitteeVoteDB(
            id=str(uuid4()),
            request_id=request.id,
            reviewer_id=reviewer.id,
            role=reviewer.role,
            vote=vote,
            rationale=rationale,
            created_at=now,
        )
        self.db.add(record)
        self.audit.append(
            request,
            action="committee_vote",
            rationale=rationale,
            actor=reviewer.id,
            actor_type=ActorType.REVIEWER,
            actor_role=reviewer.role.value,
            inputs={"vote": vote.value},
            at=now,
        )
        return record
