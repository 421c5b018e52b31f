"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from zincwallet.constants import (
    DEFAULT_FEE_RATE,
    DEFAULT_GAP_LIMIT,
    DEFAULT_RESERVATION_TIMEOUT,
    MIN_RELAY_FEE_RATE,
    STANDARD_DUST_LIMIT,
)

NetworkName = Literal["mainnet", "testnet", "signet", "regtest"]


class SelectionPolicy(str, Enum):
    """Deterministic input ordering used by coin selection."""

    OLDEST_FIRST = "oldest_first"
    SMALLEST_FIRST = "smallest_first"
    LARGEST_FIRST = "largest_first"


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ZINC_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: NetworkName = "mainnet"
    account: int = Field(default=0, ge=0, lt=0x80000000)
    gap_limit: int = Field(default=DEFAULT_GAP_LIMIT, ge=1, le=1000)

    # Fees (sat/vB)
    fee_rate: Decimal = Field(default=DEFAULT_FEE_RATE, gt=0)
    min_relay_fee_rate: Decimal = Field(default=MIN_RELAY_FEE_RATE, gt=0)

    # Coin selection and balance policy
    min_confirmations: int = Field(default=0, ge=0)
    selection_policy: SelectionPolicy = SelectionPolicy.OLDEST_FIRST
    dust_limit: int = Field(default=STANDARD_DUST_LIMIT, ge=0)
    reservation_timeout: float = Field(default=DEFAULT_RESERVATION_TIMEOUT, gt=0)

    # Sync provider
    esplora_url: str = "https://mempool.space/api"
    poll_interval: float = Field(default=30.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)

    data_dir: Path = Path.home() / ".zincwallet"
    log_level: str = "INFO"
    # WARNING: logs watched addresses when enabled
    sensitive_logging: bool = False

    @model_validator(mode="after")
    def check_fee_rate(self) -> WalletSettings:
        if self.fee_rate < self.min_relay_fee_rate:
            raise ValueError(
                f"fee_rate {self.fee_rate} is below min_relay_fee_rate {self.min_relay_fee_rate}"
            )
        return self


def get_settings(**overrides: object) -> WalletSettings:
    return WalletSettings(**overrides)  # type: ignore[arg-type]
