# accrual/config.py
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "t", "yes")
    return bool(value)


@dataclass(frozen=True)
class ReferralConfig:
    """
    Referral programme settings.
    Caps are counted against pending + completed rewards at award time.
    """
    reward_percent: Decimal = Decimal("3")
    max_reward_per_referral: Decimal = Decimal("100")
    max_referrals_lifetime: int = 50
    max_earnings_lifetime: Decimal = Decimal("10000")
    unlock_days: int = 14

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "ReferralConfig":
        defaults = cls()
        return cls(
            reward_percent=Decimal(str(config.get("REFERRAL_REWARD_PERCENT", defaults.reward_percent))),
            max_reward_per_referral=Decimal(str(config.get("REFERRAL_MAX_REWARD", defaults.max_reward_per_referral))),
            max_referrals_lifetime=int(config.get("REFERRAL_MAX_REFERRALS_LIFETIME", defaults.max_referrals_lifetime)),
            max_earnings_lifetime=Decimal(str(config.get("REFERRAL_MAX_EARNINGS_LIFETIME", defaults.max_earnings_lifetime))),
            unlock_days=int(config.get("REFERRAL_UNLOCK_DAYS", defaults.unlock_days)),
        )


@dataclass(frozen=True)
class AccrualConfig:
    """Everything a processor run needs, passed in explicitly on every invocation."""
    early_withdrawal_penalty_rate: Decimal = Decimal("0.10")
    lock_ttl_seconds: int = 900
    interval_seconds: int = 3600
    maintenance_mode: bool = False
    withdrawal_min: Decimal = Decimal("20")
    withdrawal_max: Decimal = Decimal("50000")
    referral: ReferralConfig = field(default_factory=ReferralConfig)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "AccrualConfig":
        defaults = cls()
        return cls(
            early_withdrawal_penalty_rate=Decimal(str(config.get(
                "EARLY_WITHDRAWAL_PENALTY_RATE", defaults.early_withdrawal_penalty_rate))),
            lock_ttl_seconds=int(config.get("ACCRUAL_LOCK_TTL_SECONDS", defaults.lock_ttl_seconds)),
            interval_seconds=int(config.get("ACCRUAL_INTERVAL_SECONDS", defaults.interval_seconds)),
            maintenance_mode=_flag(config.get("MAINTENANCE_MODE", defaults.maintenance_mode)),
            withdrawal_min=Decimal(str(config.get("WITHDRAWAL_MIN", defaults.withdrawal_min))),
            withdrawal_max=Decimal(str(config.get("WITHDRAWAL_MAX", defaults.withdrawal_max))),
            referral=ReferralConfig.from_mapping(config),
        )
