"""Refund Adjudication Engine - Data Models"""
from .db_models import (
    TransactionCategory, LifecycleStage, RefundGround, RefundState,
    DocumentType, EvidenceStatus, RiskLevel, ReviewerRole, Vote,
    RefundRequestDB, EvidenceDB, AuditRecordDB, DecisionRecordDB, ReviewerDB,
)
from .domain import (
    EligibilityOutcome, EligibilityFacts, EligibilityVerdict, DeductionLine, RiskVerdict, money,
)

__all__ = [
    "TransactionCategory", "LifecycleStage", "RefundGround", "RefundState",
    "DocumentType", "EvidenceStatus", "RiskLevel", "ReviewerRole", "Vote",
    "RefundRequestDB", "EvidenceDB", "AuditRecordDB", "DecisionRecordDB", "ReviewerDB",
    "EligibilityOutcome", "EligibilityFacts", "EligibilityVerdict", "DeductionLine", "RiskVerdict", "money",
]
