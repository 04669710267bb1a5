"""
Refund Adjudication Engine - Value Objects

Derived values passed between pipeline stages. None of these are
persisted independently; requests keep JSON snapshots of them.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from .db_models import RefundGround, RiskLevel


PAISE = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Quantize to paise, half-up."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(PAISE, rounding=ROUND_HALF_UP)


def _date_or_none(value) -> Optional[date]:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value) if value else None


# =============================================================================
# ELIGIBILITY
# =============================================================================

class EligibilityOutcome(str, Enum):
    ELIGIBLE = "eligible"
    CONDITIONAL = "conditional"
    INELIGIBLE = "ineligible"


@dataclass
class EligibilityFacts:
    """
    Transaction facts the deduction formulas need. Submitted with the
    request and corrected by the L2 reviewer where documents show otherwise.
    """
    gateway_fee: Decimal = Decimal("0")
    third_party_costs: Decimal = Decimal("0")
    processing_fee_rate: Optional[Decimal] = None  # Percent; defaults to the rule maximum
    dividends_received: Decimal = Decimal("0")
    accessed: bool = False
    utilised_fraction: Decimal = Decimal("0")  # 0..1 of the term consumed
    interest_from: Optional[date] = None  # Allotment date or agreed transfer date
    subscription_date: Optional[date] = None
    claim_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateway_fee": str(self.gateway_fee),
            "third_party_costs": str(self.third_party_costs),
            "processing_fee_rate": str(self.processing_fee_rate) if self.processing_fee_rate is not None else None,
            "dividends_received": str(self.dividends_received),
            "accessed": self.accessed,
            "utilised_fraction": str(self.utilised_fraction),
            "interest_from": self.interest_from.isoformat() if self.interest_from else None,
            "subscription_date": self.subscription_date.isoformat() if self.subscription_date else None,
            "claim_date": self.claim_date.isoformat() if self.claim_date else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> EligibilityFacts:
        data = data or {}
        rate = data.get("processing_fee_rate")
        return cls(
            gateway_fee=Decimal(str(data.get("gateway_fee") or "0")),
            third_party_costs=Decimal(str(data.get("third_party_costs") or "0")),
            processing_fee_rate=Decimal(str(rate)) if rate is not None else None,
            dividends_received=Decimal(str(data.get("dividends_received") or "0")),
            accessed=bool(data.get("accessed", False)),
            utilised_fraction=Decimal(str(data.get("utilised_fraction") or "0")),
            interest_from=_date_or_none(data.get("interest_from")),
            subscription_date=_date_or_none(data.get("subscription_date")),
            claim_date=_date_or_none(data.get("claim_date")),
        )


@dataclass
class DeductionLine:
    label: str
    amount: Decimal
    kind: str = "charge"  # charge (counts toward the forfeiture cap) or consumed

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "amount": str(self.amount), "kind": self.kind}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DeductionLine:
        return cls(label=data["label"], amount=Decimal(data["amount"]), kind=data.get("kind", "charge"))


@dataclass
class EligibilityVerdict:
    """
    Pure result of the rules engine. Never a silent default: ineligible
    verdicts always carry the clause that produced them.
    """
    outcome: EligibilityOutcome
    clause: str
    reason: str
    ground: Optional[RefundGround] = None
    formula_id: Optional[str] = None
    deductions: List[DeductionLine] = field(default_factory=list)
    interest_rate: Decimal = Decimal("0")  # Contractual interest, % p.a.
    interest_from: Optional[date] = None
    requires_l3: bool = False

    @property
    def is_eligible(self) -> bool:
        return self.outcome != EligibilityOutcome.INELIGIBLE

    @property
    def total_deductions(self) -> Decimal:
        return money(sum((d.amount for d in self.deductions), Decimal("0")))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "clause": self.clause,
            "reason": self.reason,
            "ground": self.ground.value if self.ground else None,
            "formula_id": self.formula_id,
            "deductions": [d.to_dict() for d in self.deductions],
            "total_deductions": str(self.total_deductions),
            "interest_rate": str(self.interest_rate),
            "interest_from": self.interest_from.isoformat() if self.interest_from else None,
            "requires_l3": self.requires_l3,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EligibilityVerdict:
        return cls(
            outcome=EligibilityOutcome(data["outcome"]),
            clause=data["clause"],
            reason=data["reason"],
            ground=RefundGround(data["ground"]) if data.get("ground") else None,
            formula_id=data.get("formula_id"),
            deductions=[DeductionLine.from_dict(d) for d in data.get("deductions", [])],
            interest_rate=Decimal(data.get("interest_rate") or "0"),
            interest_from=_date_or_none(data.get("interest_from")),
            requires_l3=bool(data.get("requires_l3", False)),
        )


# =============================================================================
# AML
# =============================================================================

@dataclass
class RiskVerdict:
    """
    Output of AML screening. screened_at is excluded from equality so two
    screenings over unchanged data compare equal.
    """
    level: RiskLevel
    indicators: List[str] = field(default_factory=list)
    list_version: Optional[str] = None
    screened_at: datetime = field(default_factory=datetime.utcnow, compare=False)

    @property
    def is_suspicious(self) -> bool:
        return self.level == RiskLevel.SUSPICIOUS

    @property
    def requires_edd(self) -> bool:
        return self.level == RiskLevel.EDD_REQUIRED
