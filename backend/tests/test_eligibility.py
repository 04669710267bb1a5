"""
Tests for the Eligibility Rules Engine.

Covers:
1. Rule lookup per (category, stage, ground), including wildcard rules
2. Deduction formulas per category
3. Completed transactions refundable only on fraud or misrepresentation
4. No matching rule -> ineligible with a clause, never a default approval
5. Forfeiture cap (Schedule II(C))
6. Strongest verdict across multiple asserted grounds
"""
import pytest
from datetime import date
from decimal import Decimal

from refund_engine.models.db_models import LifecycleStage, RefundGround, TransactionCategory
from refund_engine.models.domain import DeductionLine, EligibilityFacts, EligibilityOutcome
from refund_engine.services.adjudication.eligibility import (
    COMPLETED_CLAUSE, NO_RULE_CLAUSE, RULES, apply_forfeiture_cap, evaluate, find_rule,
)
from refund_engine.services.adjudication.errors import ValidationError

C = TransactionCategory
S = LifecycleStage
G = RefundGround


# =============================================================================
# RULE LOOKUP
# =============================================================================

class TestFindRule:
    """Most specific rule wins; wildcards fill the gaps."""

    def test_exact_rule(self):
        """Pre-allotment voluntary withdrawal resolves to Art. 5.1(a)(i)."""
        rule = find_rule(C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, G.VOLUNTARY_WITHDRAWAL)
        assert rule.clause == "Art. 5.1(a)(i)"

    def test_any_stage_rule(self):
        """Duplicate debit applies at every stage of a technical error."""
        rule = find_rule(C.TECHNICAL_ERROR, S.DELIVERED, G.DUPLICATE_DEBIT)
        assert rule.clause == "Art. 4.4(c)"

    def test_any_category_rule(self):
        """Fraud applies to every category."""
        rule = find_rule(C.PLATFORM_FEE, S.IN_TERM, G.FRAUD)
        assert rule.requires_l3 is True

    def test_missing_rule(self):
        """Seller declined makes no sense for a platform fee."""
        assert find_rule(C.PLATFORM_FEE, S.IN_TERM, G.SELLER_DECLINED) is None

    def test_every_formula_is_registered(self):
        """No rule points at a formula that does not exist."""
        from refund_engine.services.adjudication.eligibility import FORMULAS

        for rule in RULES.values():
            if rule.formula_id is not None:
                assert rule.formula_id in FORMULAS


# =============================================================================
# DEDUCTION FORMULAS
# =============================================================================

class TestDeductions:
    """Per-category deduction formulas."""

    def test_voluntary_withdrawal_processing_fee(self):
        """50,000 withdrawal: 2% processing fee, nothing else."""
        verdict = evaluate(C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, [G.VOLUNTARY_WITHDRAWAL], Decimal("50000"))

        assert verdict.outcome == EligibilityOutcome.ELIGIBLE
        assert verdict.clause == "Art. 5.1(a)(i)"
        assert verdict.total_deductions == Decimal("1000.00")

    def test_processing_fee_rate_below_maximum(self):
        """An agreed rate below the 2% ceiling is used as-is."""
        facts = EligibilityFacts(processing_fee_rate=Decimal("1.5"), gateway_fee=Decimal("120"))
        verdict = evaluate(
            C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, [G.VOLUNTARY_WITHDRAWAL], Decimal("50000"), facts,
        )
        assert verdict.total_deductions == Decimal("870.00")

    def test_issuer_cancellation_costs_capped(self):
        """Issuer cancellation: costs capped at the lower of 5,000 and 1%."""
        facts = EligibilityFacts(third_party_costs=Decimal("8000"))
        verdict = evaluate(
            C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, [G.ISSUER_CANCELLATION], Decimal("3000000"), facts,
        )
        assert verdict.total_deductions == Decimal("5000.00")

    def test_issuer_cancellation_without_costs_is_full_refund(self):
        verdict = evaluate(C.SUBSCRIPTION_PRE_ALLOTMENT, S.PRE_ALLOTMENT, [G.ISSUER_CANCELLATION], Decimal("3000000"))
        assert verdict.deductions == []

    def test_transfer_failure_carries_interest(self):
        """Shares not transferred: full refund plus 15% p.a. from the agreed date."""
        facts = EligibilityFacts(interest_from=date(2026, 1, 31))
        verdict = evaluate(C.SHARE_PURCHASE, S.AGREEMENT_EXECUTED, [G.NOT_TRANSFERRED], Decimal("50000"), facts)

        assert verdict.interest_rate == Decimal("15")
        assert verdict.interest_from == date(2026, 1, 31)
        assert verdict.total_deductions == Decimal("0.00")

    def test_dividends_deducted_on_transfer_failure(self):
        facts = EligibilityFacts(dividends_received=Decimal("1200"))
        verdict = evaluate(
            C.SUBSCRIPTION_POST_ALLOTMENT, S.POST_ALLOTMENT, [G.TRANSFER_FAILURE], Decimal("80000"), facts,
        )
        assert verdict.total_deductions == Decimal("1200.00")
        assert verdict.interest_rate == Decimal("12")

    def test_cooling_off_not_accessed_is_full_refund(self):
        facts = EligibilityFacts(subscription_date=date(2026, 2, 20), claim_date=date(2026, 2, 24))
        verdict = evaluate(C.PLATFORM_FEE, S.COOLING_OFF, [G.COOLING_OFF], Decimal("10000"), facts)

        assert verdict.outcome == EligibilityOutcome.ELIGIBLE
        assert verdict.deductions == []

    def test_cooling_off_accessed_deducts_consumption_and_admin(self):
        """Consumed share, then 20% admin on the remainder."""
        facts = EligibilityFacts(
            accessed=True, utilised_fraction=Decimal("0.25"),
            subscription_date=date(2026, 2, 20), claim_date=date(2026, 2, 24),
        )
        verdict = evaluate(C.ADVISORY_SERVICE, S.COOLING_OFF, [G.COOLING_OFF], Decimal("10000"), facts)

        assert verdict.total_deductions == Decimal("4000.00")

    def test_cooling_off_without_dates_is_ineligible(self):
        facts = EligibilityFacts(accessed=False)
        verdict = evaluate(C.PLATFORM_FEE, S.COOLING_OFF, [G.COOLING_OFF], Decimal("10000"), facts)

        assert verdict.outcome == EligibilityOutcome.INELIGIBLE

    def test_cooling_off_window_elapsed(self):
        """Claims outside the 7-day window are ineligible, with the reason stated."""
        facts = EligibilityFacts(subscription_date=date(2026, 2, 1), claim_date=date(2026, 2, 11))
        verdict = evaluate(C.PLATFORM_FEE, S.COOLING_OFF, [G.COOLING_OFF], Decimal("10000"), facts)

        assert verdict.outcome == EligibilityOutcome.INELIGIBLE
        assert "10 days" in verdict.reason

    def test_advisory_deficiency_retention(self):
        verdict = evaluate(C.ADVISORY_SERVICE, S.DELIVERED, [G.SERVICE_DEFICIENCY], Decimal("40000"))

        assert verdict.outcome == EligibilityOutcome.CONDITIONAL
        assert verdict.total_deductions == Decimal("10000.00")


# =============================================================================
# INELIGIBILITY
# =============================================================================

class TestIneligibility:
    """Ineligible verdicts always cite the clause that produced them."""

    def test_completed_dissatisfaction(self):
        """Completed transaction, dissatisfaction ground -> Art. 4.3(c)."""
        verdict = evaluate(C.ADVISORY_SERVICE, S.COMPLETED, [G.DISSATISFACTION], Decimal("50000"))

        assert verdict.outcome == EligibilityOutcome.INELIGIBLE
        assert verdict.clause == COMPLETED_CLAUSE

    def test_completed_fraud_is_eligible_for_l3(self):
        """Fraud survives completion but always goes to the committee."""
        verdict = evaluate(C.SHARE_PURCHASE, S.COMPLETED, [G.FRAUD], Decimal("50000"))

        assert verdict.outcome == EligibilityOutcome.CONDITIONAL
        assert verdict.requires_l3 is True

    def test_no_rule_is_ineligible_not_approved(self):
        verdict = evaluate(C.PLATFORM_FEE, S.IN_TERM, [G.SELLER_DECLINED], Decimal("5000"))

        assert verdict.outcome == EligibilityOutcome.INELIGIBLE
        assert verdict.clause == NO_RULE_CLAUSE

    def test_no_grounds(self):
        verdict = evaluate(C.PLATFORM_FEE, S.IN_TERM, [], Decimal("5000"))
        assert verdict.outcome == EligibilityOutcome.INELIGIBLE
        assert verdict.clause == "Art. 7.2(c)"

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            evaluate(C.PLATFORM_FEE, S.IN_TERM, [G.PLATFORM_TERMINATION], Decimal("0"))


# =============================================================================
# CAPS AND MULTIPLE GROUNDS
# =============================================================================

class TestForfeitureCapAndGrounds:
    """Schedule II(C) cap and strongest-ground selection."""

    def test_forfeiture_capped_at_75_percent_with_costs(self):
        """10% forfeiture plus 80,000 costs on 100,000 is capped at 75,000."""
        facts = EligibilityFacts(third_party_costs=Decimal("80000"))
        verdict = evaluate(
            C.SHARE_PURCHASE, S.EXPRESSION_OF_INTEREST, [G.VOLUNTARY_WITHDRAWAL], Decimal("100000"), facts,
        )
        assert verdict.total_deductions == Decimal("75000.00")
        assert any("Schedule II(C)" in d.label for d in verdict.deductions)

    def test_consumed_service_outside_cap(self):
        """Consumption is not a charge; the cap applies to charges only."""
        lines = [
            DeductionLine("Service consumed (pro-rata)", Decimal("60000"), kind="consumed"),
            DeductionLine("Administrative charge", Decimal("12000")),
        ]
        capped = apply_forfeiture_cap(Decimal("100000"), lines, Decimal("0"))
        assert sum(d.amount for d in capped) == Decimal("72000")

    def test_deductions_never_exceed_claim(self):
        lines = [
            DeductionLine("Service consumed (pro-rata)", Decimal("90000"), kind="consumed"),
            DeductionLine("Administrative charge", Decimal("30000")),
        ]
        capped = apply_forfeiture_cap(Decimal("100000"), lines, Decimal("0"))
        assert sum(d.amount for d in capped) == Decimal("100000")

    def test_strongest_ground_wins(self):
        """Eligible ground beats an ineligible one asserted alongside it."""
        verdict = evaluate(
            C.ADVISORY_SERVICE, S.DELIVERED, [G.DISSATISFACTION, G.SERVICE_DEFICIENCY], Decimal("40000"),
        )
        assert verdict.ground == G.SERVICE_DEFICIENCY
        assert verdict.is_eligible

    def test_fraud_alongside_other_ground_marks_l3(self):
        verdict = evaluate(
            C.SHARE_PURCHASE, S.EXPRESSION_OF_INTEREST, [G.SELLER_DECLINED, G.MISREPRESENTATION], Decimal("40000"),
        )
        assert verdict.ground == G.SELLER_DECLINED
        assert verdict.requires_l3 is True

    def test_verdict_round_trips_through_snapshot(self):
        """The JSON snapshot stored on the request restores the same verdict."""
        from refund_engine.models.domain import EligibilityVerdict

        facts = EligibilityFacts(interest_from=date(2026, 1, 31), dividends_received=Decimal("100"))
        verdict = evaluate(C.SHARE_PURCHASE, S.AGREEMENT_EXECUTED, [G.NOT_TRANSFERRED], Decimal("50000"), facts)
        assert EligibilityVerdict.from_dict(verdict.to_dict()) == verdict
