"""
service settings.

everything is read from the environment (prefix REFERRAL_) or a local .env file.
commission percentages are policy, not code: they live here so operators can
change them without a deploy.
"""

import sys
from decimal import Decimal
from functools import lru_cache
from typing import Dict

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from commission_engine import CommissionPolicy


class Settings(BaseSettings):
    # database
    database_dsn: str = "dbname=referral user=referral host=localhost port=5432"

    # chain walking
    max_chain_hops: int = Field(default=50, ge=1, le=500)

    # commission policy
    commission_pool_pct: Decimal = Field(default=Decimal("0.20"), ge=0, le=1)
    platform_fee_pct: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)
    upline_share_pct: Decimal = Field(default=Decimal("0.50"), ge=0, le=1)
    rank_upline_share_pct: Dict[str, Decimal] = Field(default_factory=dict)

    # partner registration
    referral_code_attempts: int = Field(default=10, ge=1)
    partner_type_cooldown_days: int = Field(default=30, ge=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="REFERRAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("rank_upline_share_pct")
    @classmethod
    def check_rank_overrides(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for rank, pct in value.items():
            if pct < 0 or pct > 1:
                raise ValueError(f"upline share for rank {rank} must be within [0, 1]")
        return value

    def commission_policy(self) -> CommissionPolicy:
        return CommissionPolicy(
            commission_pool_pct=self.commission_pool_pct,
            platform_fee_pct=self.platform_fee_pct,
            upline_share_pct=self.upline_share_pct,
            rank_upline_share_pct=dict(self.rank_upline_share_pct),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def setup_logging(level: str = "INFO") -> None:
    """replace loguru's default sink with a stderr sink at `level`."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
