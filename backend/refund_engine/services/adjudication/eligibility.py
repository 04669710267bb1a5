"""
Eligibility Rules Engine

AUTHORITY: SYSTEM
Pure function from (category, stage, grounds, amount) to an EligibilityVerdict.

Key behaviors:
- Rules are table-driven, keyed by (category, stage, ground); ANY matches every value
- Deduction formulas are looked up by id, so adding a category touches only RULES
- Completed transactions are ineligible except for fraud or misrepresentation
- No matching rule is an ineligible verdict with a citation, never a default approval
- Aggregate forfeiture is capped (Schedule II(C))
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ...models.db_models import TransactionCategory, LifecycleStage, RefundGround, FRAUD_GROUNDS
from ...models.domain import (
    EligibilityFacts, EligibilityOutcome, EligibilityVerdict, DeductionLine, money,
)
from .errors import ValidationError

ANY = "*"
HUNDRED = Decimal("100")


# =============================================================================
# RULE TABLE (Art. 4 and Art. 5)
# =============================================================================

@dataclass(frozen=True)
class Rule:
    outcome: EligibilityOutcome
    clause: str
    description: str
    formula_id: Optional[str] = None
    params: Dict[str, Decimal] = field(default_factory=dict, hash=False)
    requires_l3: bool = False


C = TransactionCategory
S = LifecycleStage
G = RefundGround
E = EligibilityOutcome

COOLING_OFF_RULE = Rule(
    E.ELIGIBLE, "Art. 5.3(a)(i)", "Cooling-off cancellation",
    "cooling_off", {"window_days": Decimal("7"), "admin_pct": Decimal("20")},
)
DISCONTINUATION_RULE = Rule(
    E.CONDITIONAL, "Art. 5.3(a)(ii)", "Mid-term discontinuation or SLA breach",
    "pro_rata_less_admin", {"admin_pct": Decimal("30")},
)
FRAUD_RULE = Rule(
    E.CONDITIONAL, "Art. 5.1(b)(i)", "Fraud or misrepresentation established",
    "full", requires_l3=True,
)

RULES: Dict[Tuple, Rule] = {
    # Pre-IPO subscriptions, pre-allotment
    (C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, G.VOLUNTARY_WITHDRAWAL): Rule(
        E.ELIGIBLE, "Art. 5.1(a)(i)", "Voluntary withdrawal before acceptance",
        "processing_and_costs", {"max_rate": Decimal("2")},
    ),
    (C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, G.ISSUER_CANCELLATION): Rule(
        E.ELIGIBLE, "Art. 5.1(a)(ii)", "Cancellation by issuer",
        "capped_costs", {"cap_amount": Decimal("5000"), "cap_pct": Decimal("1")},
    ),
    (C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, G.REGULATORY_IMPEDIMENT): Rule(
        E.ELIGIBLE, "Art. 5.1(a)(iii)", "Regulatory impediment to allotment",
        "costs_plus_admin", {"admin_pct": Decimal("1.5")},
    ),

    # Pre-IPO subscriptions, post-allotment
    (C.SUBSCRIPTION_POST_ALLOTMENT, S.POST_ALLOTMENT, G.TRANSFER_FAILURE): Rule(
        E.ELIGIBLE, "Art. 5.1(b)(ii)", "Transfer failure due to platform default",
        "full_with_interest", {"rate": Decimal("12")},
    ),

    # Unlisted share purchases
    (C.SHARE_PURCHASE, S.EXPRESSION_OF_INTEREST, G.VOLUNTARY_WITHDRAWAL): Rule(
        E.ELIGIBLE, "Art. 5.2(a)(i)", "Withdrawal before definitive agreement",
        "forfeiture_plus_costs", {"forfeit_pct": Decimal("10")},
    ),
    (C.SHARE_PURCHASE, S.EXPRESSION_OF_INTEREST, G.SELLER_DECLINED): Rule(
        E.ELIGIBLE, "Art. 5.2(a)(ii)", "Seller declined or shares unavailable", "full",
    ),
    (C.SHARE_PURCHASE, S.AGREEMENT_EXECUTED, G.NOT_TRANSFERRED): Rule(
        E.ELIGIBLE, "Art. 5.2(b)(i)", "Shares not transferred within agreed timeline",
        "full_with_interest", {"rate": Decimal("15")},
    ),
    (C.SHARE_PURCHASE, S.AGREEMENT_EXECUTED, G.NON_CONFORMING_TRANSFER): Rule(
        E.ELIGIBLE, "Art. 5.2(b)(ii)", "Transferred shares do not conform", "full",
    ),

    # Subscriptions and advisory
    (C.PLATFORM_FEE, S.COOLING_OFF, G.COOLING_OFF): COOLING_OFF_RULE,
    (C.ADVISORY_SERVICE, S.COOLING_OFF, G.COOLING_OFF): COOLING_OFF_RULE,
    (C.PLATFORM_FEE, S.IN_TERM, G.SERVICE_DISCONTINUED): DISCONTINUATION_RULE,
    (C.ADVISORY_SERVICE, S.IN_TERM, G.SERVICE_DISCONTINUED): DISCONTINUATION_RULE,
    (C.PLATFORM_FEE, S.IN_TERM, G.PLATFORM_TERMINATION): Rule(
        E.ELIGIBLE, "Art. 5.4(b)", "Data subscription terminated by platform", "pro_rata",
    ),
    (C.ADVISORY_SERVICE, S.DELIVERED, G.SERVICE_DEFICIENCY): Rule(
        E.CONDITIONAL, "Art. 5.3(b)(ii)", "Advisory service not delivered or materially deficient",
        "retention", {"retain_pct": Decimal("25")},
    ),

    # Technical errors
    (C.TECHNICAL_ERROR, ANY, G.DUPLICATE_DEBIT): Rule(
        E.ELIGIBLE, "Art. 4.4(c)", "Duplicate or excess debit", "full",
    ),

    # Any category
    (ANY, ANY, G.REGULATORY_NON_COMPLIANCE): Rule(
        E.CONDITIONAL, "Art. 4.4(b)", "Regulatory non-compliance or legal invalidity", "full",
    ),
    (ANY, ANY, G.FRAUD): FRAUD_RULE,
    (ANY, ANY, G.MISREPRESENTATION): FRAUD_RULE,
    (ANY, ANY, G.DISSATISFACTION): Rule(
        E.INELIGIBLE, "Art. 5.3(b)(iii)", "Dissatisfaction with quality, outcome or recommendations",
    ),
}

COMPLETED_CLAUSE = "Art. 4.3(c)"
NO_RULE_CLAUSE = "Art. 4.1(a)"
FORFEITURE_CAP_CLAUSE = "Schedule II(C)"
FORFEITURE_CAP_PCT = Decimal("50")
FORFEITURE_CAP_WITH_COSTS_PCT = Decimal("75")


def find_rule(
    category: TransactionCategory,
    stage: LifecycleStage,
    ground: RefundGround,
) -> Optional[Rule]:
    """Most specific rule first: exact, any stage, any category, any both."""
    for key in (
        (category, stage, ground),
        (category, ANY, ground),
        (ANY, stage, ground),
        (ANY, ANY, ground),
    ):
        rule = RULES.get(key)
        if rule is not None:
            return rule
    return None


# =============================================================================
# DEDUCTION FORMULAS
# =============================================================================

@dataclass
class FormulaResult:
    deductions: List[DeductionLine] = field(default_factory=list)
    interest_rate: Decimal = Decimal("0")
    interest_from: Optional[object] = None
    ineligible_reason: Optional[str] = None


def _pct(amount: Decimal, pct: Decimal) -> Decimal:
    return money(amount * pct / HUNDRED)


def _consumed(amount: Decimal, facts: EligibilityFacts) -> Decimal:
    fraction = min(max(facts.utilised_fraction, Decimal("0")), Decimal("1"))
    return money(amount * fraction)


def _cost_lines(facts: EligibilityFacts) -> List[DeductionLine]:
    lines = []
    if facts.gateway_fee > 0:
        lines.append(DeductionLine("Payment gateway fee", money(facts.gateway_fee)))
    if facts.third_party_costs > 0:
        lines.append(DeductionLine("Committed third-party costs", money(facts.third_party_costs)))
    return lines


def _processing_and_costs(amount, facts, params) -> FormulaResult:
    max_rate = params["max_rate"]
    rate = max_rate if facts.processing_fee_rate is None else min(facts.processing_fee_rate, max_rate)
    lines = [DeductionLine(f"Processing fee ({rate}%)", _pct(amount, rate))]
    return FormulaResult(lines + _cost_lines(facts))


def _capped_costs(amount, facts, params) -> FormulaResult:
    cap = min(params["cap_amount"], _pct(amount, params["cap_pct"]))
    costs = min(money(facts.third_party_costs), cap)
    if costs <= 0:
        return FormulaResult()
    return FormulaResult([DeductionLine("Documented third-party costs (capped)", costs)])


def _costs_plus_admin(amount, facts, params) -> FormulaResult:
    lines = [DeductionLine(f"Administrative charge ({params['admin_pct']}%)", _pct(amount, params["admin_pct"]))]
    if facts.third_party_costs > 0:
        lines.append(DeductionLine("Third-party costs", money(facts.third_party_costs)))
    return FormulaResult(lines)


def _full(amount, facts, params) -> FormulaResult:
    return FormulaResult()


def _full_with_interest(amount, facts, params) -> FormulaResult:
    lines = []
    if facts.dividends_received > 0:
        lines.append(DeductionLine("Dividends received", money(facts.dividends_received), kind="consumed"))
    return FormulaResult(lines, interest_rate=params["rate"], interest_from=facts.interest_from)


def _forfeiture_plus_costs(amount, facts, params) -> FormulaResult:
    lines = [DeductionLine(f"Booking amount forfeiture ({params['forfeit_pct']}%)", _pct(amount, params["forfeit_pct"]))]
    if facts.third_party_costs > 0:
        lines.append(DeductionLine("Actual costs incurred", money(facts.third_party_costs)))
    return FormulaResult(lines)


def _cooling_off(amount, facts, params) -> FormulaResult:
    if not facts.subscription_date or not facts.claim_date:
        return FormulaResult(ineligible_reason="Cooling-off claim without a subscription and claim date")
    elapsed = (facts.claim_date - facts.subscription_date).days
    if elapsed > int(params["window_days"]):
        return FormulaResult(ineligible_reason=(
            f"Cooling-off period of {params['window_days']} days elapsed ({elapsed} days since subscription)"
        ))
    if not facts.accessed:
        return FormulaResult()
    consumed = _consumed(amount, facts)
    return FormulaResult([
        DeductionLine("Service consumed (pro-rata)", consumed, kind="consumed"),
        DeductionLine(f"Administrative charge ({params['admin_pct']}%)", _pct(amount - consumed, params["admin_pct"])),
    ])


def _pro_rata_less_admin(amount, facts, params) -> FormulaResult:
    consumed = _consumed(amount, facts)
    return FormulaResult([
        DeductionLine("Service consumed (pro-rata)", consumed, kind="consumed"),
        DeductionLine(f"Administrative charge ({params['admin_pct']}%)", _pct(amount - consumed, params["admin_pct"])),
    ])


def _pro_rata(amount, facts, params) -> FormulaResult:
    consumed = _consumed(amount, facts)
    if consumed <= 0:
        return FormulaResult()
    return FormulaResult([DeductionLine("Service consumed (pro-rata)", consumed, kind="consumed")])


def _retention(amount, facts, params) -> FormulaResult:
    return FormulaResult([
        DeductionLine(f"Administrative retention ({params['retain_pct']}%)", _pct(amount, params["retain_pct"])),
    ])


FORMULAS: Dict[str, Callable[[Decimal, EligibilityFacts, Dict], FormulaResult]] = {
    "processing_and_costs": _processing_and_costs,
    "capped_costs": _capped_costs,
    "costs_plus_admin": _costs_plus_admin,
    "full": _full,
    "full_with_interest": _full_with_interest,
    "forfeiture_plus_costs": _forfeiture_plus_costs,
    "cooling_off": _cooling_off,
    "pro_rata_less_admin": _pro_rata_less_admin,
    "pro_rata": _pro_rata,
    "retention": _retention,
}


def apply_forfeiture_cap(
    amount: Decimal,
    deductions: List[DeductionLine],
    third_party_costs: Decimal,
) -> List[DeductionLine]:
    """
    Charges never exceed 50% of the claim, or 75% where third-party costs
    were incurred. Consumed-service lines are outside the cap.
    Total deductions never exceed the claim.
    """
    cap_pct = FORFEITURE_CAP_WITH_COSTS_PCT if third_party_costs > 0 else FORFEITURE_CAP_PCT
    cap = _pct(amount, cap_pct)
    charges = money(sum((d.amount for d in deductions if d.kind == "charge"), Decimal("0")))

    capped = list(deductions)
    if charges > cap:
        capped.append(DeductionLine(f"Forfeiture cap adjustment ({FORFEITURE_CAP_CLAUSE})", cap - charges))

    total = money(sum((d.amount for d in capped), Decimal("0")))
    if total > amount:
        capped.append(DeductionLine("Deductions limited to amount claimed", amount - total))
    return capped


# =============================================================================
# EVALUATION
# =============================================================================

_OUTCOME_RANK = {E.ELIGIBLE: 0, E.CONDITIONAL: 1, E.INELIGIBLE: 2}


def evaluate_ground(
    category: TransactionCategory,
    stage: LifecycleStage,
    ground: RefundGround,
    amount: Decimal,
    facts: Optional[EligibilityFacts] = None,
) -> EligibilityVerdict:
    """Verdict for a single asserted ground."""
    facts = facts or EligibilityFacts()

    if stage == S.COMPLETED and ground not in FRAUD_GROUNDS:
        return EligibilityVerdict(
            outcome=E.INELIGIBLE,
            clause=COMPLETED_CLAUSE,
            reason="Completed transactions are not refundable except for fraud or misrepresentation",
            ground=ground,
        )

    rule = find_rule(category, stage, ground)
    if rule is None:
        return EligibilityVerdict(
            outcome=E.INELIGIBLE,
            clause=NO_RULE_CLAUSE,
            reason=f"No refund right for {category.value} at {stage.value} on ground {ground.value}",
            ground=ground,
        )

    if rule.outcome == E.INELIGIBLE or rule.formula_id is None:
        return EligibilityVerdict(outcome=E.INELIGIBLE, clause=rule.clause, reason=rule.description, ground=ground)

    result = FORMULAS[rule.formula_id](amount, facts, rule.params)
    if result.ineligible_reason:
        return EligibilityVerdict(
            outcome=E.INELIGIBLE,
            clause=rule.clause,
            reason=result.ineligible_reason,
            ground=ground,
            formula_id=rule.formula_id,
        )

    return EligibilityVerdict(
        outcome=rule.outcome,
        clause=rule.clause,
        reason=rule.description,
        ground=ground,
        formula_id=rule.formula_id,
        deductions=apply_forfeiture_cap(amount, result.deductions, facts.third_party_costs),
        interest_rate=result.interest_rate,
        interest_from=result.interest_from,
        requires_l3=rule.requires_l3,
    )


def evaluate(
    category: TransactionCategory,
    stage: LifecycleStage,
    grounds: Iterable[RefundGround],
    amount: Decimal,
    facts: Optional[EligibilityFacts] = None,
) -> EligibilityVerdict:
    """
    Evaluate every asserted ground and return the strongest verdict:
    eligible over conditional over ineligible, then the smaller deduction.
    Any fraud or misrepresentation ground marks the verdict for L3.
    """
    grounds = [RefundGround(g) for g in grounds]
    amount = money(amount)
    if amount <= 0:
        raise ValidationError("Amount claimed must be positive")
    if not grounds:
        return EligibilityVerdict(
            outcome=E.INELIGIBLE,
            clause="Art. 7.2(c)",
            reason="No refund ground asserted",
        )

    verdicts = [evaluate_ground(category, stage, g, amount, facts) for g in grounds]
    best = min(verdicts, key=lambda v: (_OUTCOME_RANK[v.outcome], v.total_deductions))

    if best.is_eligible and FRAUD_GROUNDS.intersection(grounds):
        best.requires_l3 = True
    return best
