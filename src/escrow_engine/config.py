"""Environment settings for the escrow engine.

Deployment concerns (database, bind address, log level) and the escrow
policy knobs an operator may override per environment. Anything unset
falls back to the policy defaults in ``escrow_engine.settlement.config``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from escrow_engine.settlement.config import EngineConfig


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    engine_version: str
    host: str
    port: int
    debug: bool
    log_level: str
    scheduler_interval_seconds: float
    scheduler_workers: int
    # Policy overrides; None keeps the default
    platform_fee_rate: Decimal | None = None
    hold_period_days: int | None = None
    payout_max_attempts: int | None = None
    minimum_payout_amount: int | None = None

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables (and a .env file if present)."""
        load_dotenv()

        fee_rate = _optional("ESCROW_PLATFORM_FEE_RATE")
        hold_days = _optional("ESCROW_HOLD_DAYS")
        max_attempts = _optional("ESCROW_PAYOUT_MAX_ATTEMPTS")
        minimum = _optional("ESCROW_MINIMUM_PAYOUT")
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./escrow_engine.db"),
            engine_version=os.getenv("ENGINE_VERSION", "1.0.0"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            scheduler_interval_seconds=float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60")),
            scheduler_workers=int(os.getenv("SCHEDULER_WORKERS", "4")),
            platform_fee_rate=Decimal(fee_rate) if fee_rate else None,
            hold_period_days=int(hold_days) if hold_days else None,
            payout_max_attempts=int(max_attempts) if max_attempts else None,
            minimum_payout_amount=int(minimum) if minimum else None,
        )

    def engine_config(self) -> EngineConfig:
        """Default policy config with this environment's overrides applied.

        Raises:
            ValueError: if an override fails policy validation
        """
        from escrow_engine.settlement.config import create_default_config

        config = create_default_config()
        if self.platform_fee_rate is not None:
            config = replace(config, fees=replace(config.fees, platform_fee_rate=self.platform_fee_rate))
        if self.hold_period_days is not None:
            config = replace(
                config, holds=replace(config.holds, hold_period=timedelta(days=self.hold_period_days))
            )
        payout_overrides = {}
        if self.payout_max_attempts is not None:
            payout_overrides["max_attempts"] = self.payout_max_attempts
        if self.minimum_payout_amount is not None:
            payout_overrides["minimum_payout_amount"] = self.minimum_payout_amount
        if payout_overrides:
            config = replace(config, payouts=replace(config.payouts, **payout_overrides))
        return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()
