"""Runtime settings, read from the environment and an optional .env file.

Settings.from_env() calls load_dotenv() first, so a .env at the working
directory (or the path given) populates any variable not already set in
the process environment.

Secrets (private key, bearer tokens) are never logged or rendered.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from podium.errors import ValidationError
from podium.payout.prizes import parse_payout_table, validate_payout_table

DEFAULT_PAYOUT_TABLE = "0.60,0.30,0.10"
DEFAULT_CHAIN_ID = 84532  # Base Sepolia


@dataclass(frozen=True)
class Settings:
    """Everything the service, API and CLI need to run."""
    finalize_secret: Optional[str] = field(default=None, repr=False)
    operator_token: Optional[str] = field(default=None, repr=False)
    database_url: Optional[str] = None
    rpc_url: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)
    contract_address: Optional[str] = None
    chain_id: int = DEFAULT_CHAIN_ID
    token_decimals: int = 6
    payout_table: tuple[Decimal, ...] = parse_payout_table(DEFAULT_PAYOUT_TABLE)
    platform_fee_bps: int = 0
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    receipt_timeout: float = 300.0
    event_log_path: Optional[Path] = None
    log_level: str = "INFO"

    @property
    def chain_enabled(self) -> bool:
        """True when every setting the settlement submitter needs is present."""
        return bool(self.rpc_url and self.private_key and self.contract_address)

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Settings:
        """Build settings from the environment. Raises ValidationError."""
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        def get(key: str) -> Optional[str]:
            value = environ.get(key)
            if value is None or not value.strip():
                return None
            return value.strip()

        payout_table = parse_payout_table(get("PODIUM_PAYOUT_TABLE") or DEFAULT_PAYOUT_TABLE)
        validate_payout_table(payout_table)

        settings = cls(
            finalize_secret=get("PODIUM_FINALIZE_SECRET"),
            operator_token=get("PODIUM_OPERATOR_TOKEN"),
            database_url=get("PODIUM_DATABASE_URL"),
            rpc_url=get("SETTLEMENT_RPC_URL"),
            private_key=get("SETTLEMENT_PRIVATE_KEY"),
            contract_address=get("SETTLEMENT_CONTRACT_ADDRESS"),
            chain_id=_int(get("SETTLEMENT_CHAIN_ID"), DEFAULT_CHAIN_ID, "SETTLEMENT_CHAIN_ID"),
            token_decimals=_int(get("PAYMENT_TOKEN_DECIMALS"), 6, "PAYMENT_TOKEN_DECIMALS"),
            payout_table=payout_table,
            platform_fee_bps=_int(get("PODIUM_PLATFORM_FEE_BPS"), 0, "PODIUM_PLATFORM_FEE_BPS"),
            max_attempts=_int(get("SETTLEMENT_MAX_ATTEMPTS"), 3, "SETTLEMENT_MAX_ATTEMPTS"),
            backoff_seconds=_float(get("SETTLEMENT_BACKOFF_SECONDS"), 2.0, "SETTLEMENT_BACKOFF_SECONDS"),
            receipt_timeout=_float(get("SETTLEMENT_RECEIPT_TIMEOUT"), 300.0, "SETTLEMENT_RECEIPT_TIMEOUT"),
            event_log_path=Path(get("PODIUM_EVENT_LOG")) if get("PODIUM_EVENT_LOG") else None,
            log_level=(get("PODIUM_LOG_LEVEL") or "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.token_decimals < 0 or self.token_decimals > 36:
            raise ValidationError(f"PAYMENT_TOKEN_DECIMALS out of range: {self.token_decimals}")
        if not 0 <= self.platform_fee_bps < 10_000:
            raise ValidationError(f"PODIUM_PLATFORM_FEE_BPS out of range: {self.platform_fee_bps}")
        if self.max_attempts < 1:
            raise ValidationError("SETTLEMENT_MAX_ATTEMPTS must be at least 1")
        if self.backoff_seconds < 0 or self.receipt_timeout <= 0:
            raise ValidationError("Settlement backoff and receipt timeout must be positive")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValidationError(f"PODIUM_LOG_LEVEL is not a logging level: {self.log_level!r}")
        partial = [self.rpc_url, self.private_key, self.contract_address]
        if any(partial) and not all(partial):
            raise ValidationError(
                "SETTLEMENT_RPC_URL, SETTLEMENT_PRIVATE_KEY and "
                "SETTLEMENT_CONTRACT_ADDRESS must be set together"
            )


def _int(raw: Optional[str], default: int, key: str) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from exc


def _float(raw: Optional[str], default: float, key: str) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be a number, got {raw!r}") from exc
