"""
Refund Adjudication Engine - Configuration

Thresholds, SLAs and retry policy for the adjudication pipeline.
Defaults follow the published refund policy; every value can be
overridden through REFUND_* environment variables.
"""
import os
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Tuple


class FreezeResumePolicy(str, Enum):
    """Where a frozen request goes once compliance clears it."""
    RESUME_PRIOR = "resume_prior"
    RESTART_L1 = "restart_l1"


def _decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _holidays(raw: str) -> Tuple[date, ...]:
    return tuple(
        date.fromisoformat(item.strip())
        for item in raw.split(",")
        if item.strip()
    )


@dataclass(frozen=True)
class EngineConfig:
    # Escalation thresholds (Art. 8.4)
    high_value_threshold: Decimal = Decimal("1000000")
    final_authority_threshold: Decimal = Decimal("2500000")

    # AML screening (Art. 8.5)
    aml_high_value_cutoff: Decimal = Decimal("1000000")
    small_refund_threshold: Decimal = Decimal("10000")
    repeated_small_refund_count: int = 3
    pattern_window_days: int = 90
    fuzzy_match_threshold: float = 0.85

    # SLAs
    acknowledgment_sla_business_days: int = 2
    l3_sla_business_days: int = 15
    frozen_alert_after_days: int = 30
    inactivity_expiry_days: int = 180

    freeze_resume_policy: FreezeResumePolicy = FreezeResumePolicy.RESUME_PRIOR

    # External collaborator calls
    retry_attempts: int = 3
    retry_delays: Tuple[float, ...] = (0.5, 1.0, 2.0)
    external_call_timeout: float = 10.0

    holidays: Tuple[date, ...] = field(default_factory=tuple)
    policy_version: str = "RP-2024.1"

    def with_overrides(self, **changes) -> "EngineConfig":
        return replace(self, **changes)


def load_config() -> EngineConfig:
    """Build an EngineConfig from the environment."""
    delays = os.getenv("REFUND_RETRY_DELAYS")
    return EngineConfig(
        high_value_threshold=_decimal("REFUND_HIGH_VALUE_THRESHOLD", "1000000"),
        final_authority_threshold=_decimal("REFUND_FINAL_AUTHORITY_THRESHOLD", "2500000"),
        aml_high_value_cutoff=_decimal("REFUND_AML_HIGH_VALUE_CUTOFF", "1000000"),
        small_refund_threshold=_decimal("REFUND_SMALL_REFUND_THRESHOLD", "10000"),
        repeated_small_refund_count=_int("REFUND_REPEATED_SMALL_REFUND_COUNT", 3),
        pattern_window_days=_int("REFUND_PATTERN_WINDOW_DAYS", 90),
        fuzzy_match_threshold=float(os.getenv("REFUND_FUZZY_MATCH_THRESHOLD", "0.85")),
        acknowledgment_sla_business_days=_int("REFUND_ACK_SLA_BUSINESS_DAYS", 2),
        l3_sla_business_days=_int("REFUND_L3_SLA_BUSINESS_DAYS", 15),
        frozen_alert_after_days=_int("REFUND_FROZEN_ALERT_AFTER_DAYS", 30),
        inactivity_expiry_days=_int("REFUND_INACTIVITY_EXPIRY_DAYS", 180),
        freeze_resume_policy=FreezeResumePolicy(
            os.getenv("REFUND_FREEZE_RESUME_POLICY", FreezeResumePolicy.RESUME_PRIOR.value)
        ),
        retry_attempts=_int("REFUND_RETRY_ATTEMPTS", 3),
        retry_delays=tuple(float(d) for d in delays.split(",")) if delays else (0.5, 1.0, 2.0),
        external_call_timeout=float(os.getenv("REFUND_EXTERNAL_CALL_TIMEOUT", "10")),
        holidays=_holidays(os.getenv("REFUND_HOLIDAYS", "")),
        policy_version=os.getenv("REFUND_POLICY_VERSION", "RP-2024.1"),
    )
