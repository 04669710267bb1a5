"""
AML/Sanctions Screener

AUTHORITY: SYSTEM
Produces a RiskVerdict (CLEAR / EDD_REQUIRED / SUSPICIOUS) for a refund payout.

Checks, in order of severity:
  1. Sanctions and PEP lists (exact and fuzzy name match)
  2. Source of funds against declared income, above the high-value cutoff
  3. Refund pattern history (repeated small refunds, consolidation)
  4. Payout account against verified accounts
  5. Profile risk (risk category, residency, jurisdiction, adverse media)

Fuzzy sanctions hits and PEP hits require enhanced due diligence; they never
block on their own. Only an exact sanctions match or an implausible pattern
is suspicious, and suspicious requests stay clearable by Compliance.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from ...config import EngineConfig
from ...models.db_models import RiskLevel
from ...models.domain import RiskVerdict
from .collaborators import StakeholderRegistry, SanctionsListProvider, StakeholderProfile
from .deadlines import utcnow
from .name_matching import is_exact_match
from .retry import RetryPolicy, call_with_backoff

logger = logging.getLogger(__name__)
compliance_logger = logging.getLogger("refund_engine.compliance")


# =============================================================================
# INDICATORS
# =============================================================================

SANCTIONS_EXACT_MATCH = "SANCTIONS_EXACT_MATCH"
SANCTIONS_POSSIBLE_MATCH = "SANCTIONS_POSSIBLE_MATCH"
PEP_MATCH = "PEP_MATCH"
SOURCE_OF_FUNDS_UNDOCUMENTED = "SOURCE_OF_FUNDS_UNDOCUMENTED"
SOURCE_OF_FUNDS_INCONSISTENT = "SOURCE_OF_FUNDS_INCONSISTENT"
SOURCE_OF_FUNDS_IMPLAUSIBLE = "SOURCE_OF_FUNDS_IMPLAUSIBLE"
REPEATED_SMALL_REFUNDS = "REPEATED_SMALL_REFUNDS"
STRUCTURED_CONSOLIDATION = "STRUCTURED_CONSOLIDATION"
FREQUENT_REFUNDS = "FREQUENT_REFUNDS"
PAYOUT_ACCOUNT_MISMATCH = "PAYOUT_ACCOUNT_MISMATCH"
HIGH_RISK_CATEGORY = "HIGH_RISK_CATEGORY"
NON_RESIDENT = "NON_RESIDENT"
HIGH_RISK_JURISDICTION = "HIGH_RISK_JURISDICTION"
ADVERSE_MEDIA = "ADVERSE_MEDIA"
KYC_NOT_VERIFIED = "KYC_NOT_VERIFIED"

SUSPICIOUS_INDICATORS = frozenset({
    SANCTIONS_EXACT_MATCH,
    SOURCE_OF_FUNDS_IMPLAUSIBLE,
    STRUCTURED_CONSOLIDATION,
})

# Indicators that mark a request for enhanced L2 scrutiny even when
# the overall verdict is EDD rather than suspicious.
RED_FLAG_INDICATORS = frozenset({
    REPEATED_SMALL_REFUNDS,
    FREQUENT_REFUNDS,
    PAYOUT_ACCOUNT_MISMATCH,
})

# FATF high-risk and increased-monitoring jurisdictions (ISO 3166 alpha-2)
HIGH_RISK_JURISDICTIONS = frozenset({"KP", "IR", "MM"})

IMPLAUSIBLE_INCOME_MULTIPLE = Decimal("5")
FREQUENT_REFUND_MULTIPLE = 2


def indicator_code(indicator: str) -> str:
    """'SANCTIONS_EXACT_MATCH:OFAC' -> 'SANCTIONS_EXACT_MATCH'."""
    return indicator.split(":", 1)[0]


def classify(indicators: List[str]) -> RiskLevel:
    codes = {indicator_code(i) for i in indicators}
    if codes & SUSPICIOUS_INDICATORS:
        return RiskLevel.SUSPICIOUS
    if codes:
        return RiskLevel.EDD_REQUIRED
    return RiskLevel.CLEAR


def has_red_flag(indicators: List[str]) -> bool:
    return bool({indicator_code(i) for i in indicators} & RED_FLAG_INDICATORS)


# =============================================================================
# SCREENER
# =============================================================================

class AmlScreener:
    """
    Screens a payout against the stakeholder's profile, history and the
    sanctions lists. Deterministic for unchanged inputs.
    """

    def __init__(
        self,
        registry: StakeholderRegistry,
        sanctions: SanctionsListProvider,
        config: EngineConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.registry = registry
        self.sanctions = sanctions
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)

    def screen(
        self,
        stakeholder_id: str,
        amount: Decimal,
        payout_account: str,
        transaction_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> RiskVerdict:
        as_of = as_of or utcnow()
        profile = call_with_backoff(
            self.registry.lookup, stakeholder_id,
            operation="stakeholder_registry.lookup", policy=self.retry_policy,
        )
        candidates = call_with_backoff(
            self.sanctions.match_name, profile.full_name, profile.date_of_birth,
            operation="sanctions.match_name", policy=self.retry_policy,
        )
        list_version = self.sanctions.version

        indicators: List[str] = []
        indicators += self._check_sanctions(profile, candidates)
        indicators += self._check_source_of_funds(profile, amount)
        indicators += self._check_patterns(profile, amount, transaction_id, as_of)
        indicators += self._check_payout_account(profile, payout_account, transaction_id)
        indicators += self._check_profile(profile)

        indicators = sorted(set(indicators))
        level = classify(indicators)
        verdict = RiskVerdict(level=level, indicators=indicators, list_version=list_version, screened_at=as_of)

        if level == RiskLevel.SUSPICIOUS:
            compliance_logger.warning(
                f"Suspicious screening for stakeholder {stakeholder_id}: {indicators} (list {list_version})"
            )
        else:
            logger.info(f"Screened stakeholder {stakeholder_id}: {level.value} (list {list_version})")
        return verdict

    def _check_sanctions(self, profile: StakeholderProfile, candidates) -> List[str]:
        found = []
        for candidate in candidates:
            if profile.date_of_birth and candidate.date_of_birth and profile.date_of_birth != candidate.date_of_birth:
                continue
            if candidate.is_pep:
                if candidate.score >= self.config.fuzzy_match_threshold:
                    found.append(f"{PEP_MATCH}:{candidate.list_name}")
            elif is_exact_match(profile.full_name, candidate.name):
                found.append(f"{SANCTIONS_EXACT_MATCH}:{candidate.list_name}")
            elif candidate.score >= self.config.fuzzy_match_threshold:
                found.append(f"{SANCTIONS_POSSIBLE_MATCH}:{candidate.list_name}")
        return found

    def _check_source_of_funds(self, profile: StakeholderProfile, amount: Decimal) -> List[str]:
        if amount <= self.config.aml_high_value_cutoff:
            return []
        income = profile.declared_annual_income
        if income is None or income <= 0:
            return [SOURCE_OF_FUNDS_UNDOCUMENTED]
        if amount > income * IMPLAUSIBLE_INCOME_MULTIPLE:
            return [SOURCE_OF_FUNDS_IMPLAUSIBLE]
        if amount > income:
            return [SOURCE_OF_FUNDS_INCONSISTENT]
        return []

    def _check_patterns(
        self,
        profile: StakeholderProfile,
        amount: Decimal,
        transaction_id: Optional[str],
        as_of: datetime,
    ) -> List[str]:
        window_start = as_of - timedelta(days=self.config.pattern_window_days)
        recent = [
            h for h in profile.history
            if window_start <= h.requested_at <= as_of and h.transaction_id != transaction_id
        ]
        small = [h for h in recent if h.amount < self.config.small_refund_threshold]

        found = []
        if len(small) >= self.config.repeated_small_refund_count:
            found.append(REPEATED_SMALL_REFUNDS)
            combined = sum((h.amount for h in small), Decimal("0"))
            if amount >= self.config.small_refund_threshold and amount >= combined:
                found.append(STRUCTURED_CONSOLIDATION)
        if len(recent) >= self.config.repeated_small_refund_count * FREQUENT_REFUND_MULTIPLE:
            found.append(FREQUENT_REFUNDS)
        return found

    def _check_payout_account(
        self,
        profile: StakeholderProfile,
        payout_account: str,
        transaction_id: Optional[str],
    ) -> List[str]:
        source = profile.source_account_for(transaction_id) if transaction_id else None
        if payout_account == source or payout_account in profile.payout_accounts:
            return []
        return [PAYOUT_ACCOUNT_MISMATCH]

    def _check_profile(self, profile: StakeholderProfile) -> List[str]:
        found = []
        if profile.kyc_status != "VERIFIED":
            found.append(KYC_NOT_VERIFIED)
        if profile.risk_category == "high":
            found.append(HIGH_RISK_CATEGORY)
        if not profile.resident:
            found.append(NON_RESIDENT)
        if profile.jurisdiction in HIGH_RISK_JURISDICTIONS:
            found.append(HIGH_RISK_JURISDICTION)
        if profile.adverse_media:
            found.append(ADVERSE_MEDIA)
        return found
