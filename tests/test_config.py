"""Tests for runtime settings."""

import os
from decimal import Decimal
from pathlib import Path

import pytest

from podium.config import Settings
from podium.errors import ValidationError

CHAIN_ENV = {
    "SETTLEMENT_RPC_URL": "https://sepolia.base.org",
    "SETTLEMENT_PRIVATE_KEY": "0x" + "11" * 32,
    "SETTLEMENT_CONTRACT_ADDRESS": "0x" + "22" * 20,
}


class TestFromEnv:
    def test_defaults(self) -> None:
        settings = Settings.from_env(environ={})
        assert settings.chain_id == 84532
        assert settings.token_decimals == 6
        assert settings.payout_table == (Decimal("0.60"), Decimal("0.30"), Decimal("0.10"))
        assert settings.max_attempts == 3
        assert settings.log_level == "INFO"
        assert settings.database_url is None
        assert not settings.chain_enabled

    def test_values_are_read(self) -> None:
        settings = Settings.from_env(environ={
            **CHAIN_ENV,
            "PODIUM_FINALIZE_SECRET": "s3cret",
            "PODIUM_PAYOUT_TABLE": "0.5, 0.5",
            "PAYMENT_TOKEN_DECIMALS": "18",
            "SETTLEMENT_BACKOFF_SECONDS": "0.5",
            "PODIUM_EVENT_LOG": "/tmp/events.jsonl",
            "PODIUM_LOG_LEVEL": "debug",
        })
        assert settings.chain_enabled
        assert settings.finalize_secret == "s3cret"
        assert settings.payout_table == (Decimal("0.5"), Decimal("0.5"))
        assert settings.token_decimals == 18
        assert settings.backoff_seconds == 0.5
        assert settings.event_log_path == Path("/tmp/events.jsonl")
        assert settings.log_level == "DEBUG"

    def test_blank_values_are_unset(self) -> None:
        settings = Settings.from_env(environ={"PODIUM_DATABASE_URL": "   "})
        assert settings.database_url is None

    def test_secrets_not_in_repr(self) -> None:
        settings = Settings.from_env(environ={
            **CHAIN_ENV, "PODIUM_OPERATOR_TOKEN": "operator-secret-xyz",
        })
        text = repr(settings)
        assert CHAIN_ENV["SETTLEMENT_PRIVATE_KEY"] not in text
        assert "operator-secret-xyz" not in text

    def test_env_file(self, tmp_path, monkeypatch) -> None:
        monkeypatch.delenv("PODIUM_PLATFORM_FEE_BPS", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("PODIUM_PLATFORM_FEE_BPS=250\n", encoding="utf-8")
        try:
            settings = Settings.from_env(env_file)
        finally:
            os.environ.pop("PODIUM_PLATFORM_FEE_BPS", None)
        assert settings.platform_fee_bps == 250


class TestValidation:
    @pytest.mark.parametrize("env", [
        {"PAYMENT_TOKEN_DECIMALS": "six"},
        {"PAYMENT_TOKEN_DECIMALS": "40"},
        {"PODIUM_PLATFORM_FEE_BPS": "10000"},
        {"SETTLEMENT_MAX_ATTEMPTS": "0"},
        {"SETTLEMENT_RECEIPT_TIMEOUT": "0"},
        {"SETTLEMENT_BACKOFF_SECONDS": "soon"},
        {"PODIUM_PAYOUT_TABLE": "0.7,0.7"},
        {"PODIUM_PAYOUT_TABLE": "first,second"},
        {"PODIUM_LOG_LEVEL": "chatty"},
    ])
    def test_malformed(self, env) -> None:
        with pytest.raises(ValidationError):
            Settings.from_env(environ=env)

    def test_partial_chain_settings(self) -> None:
        env = dict(CHAIN_ENV)
        del env["SETTLEMENT_PRIVATE_KEY"]
        with pytest.raises(ValidationError, match="set together"):
            Settings.from_env(environ=env)
