"""Tests for configuration settings."""

from decimal import Decimal
from pathlib import Path

import pytest

from deal_invoicing.config.bank_accounts import (
    load_bank_account_config,
    parse_bank_account_config,
)
from deal_invoicing.config.settings import Settings, get_settings


def test_settings_loads_from_env():
    """Test that settings loads secrets from environment variables."""
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.crm_api_token.get_secret_value() == "crm-test-token"
    assert settings.accounting_api_token.get_secret_value() == "accounting-test-token"
    assert settings.ledger_api_key.get_secret_value() == "ledger-test-key"


def test_settings_has_defaults():
    """Test that settings has sensible defaults."""
    get_settings.cache_clear()
    settings = get_settings()

    assert settings.http_timeout == 30.0
    assert settings.http_max_retries == 3
    assert settings.trigger_proforma_value == 70
    assert settings.trigger_done_value == 73
    assert settings.trigger_delete_value == 74
    assert settings.payment_terms_days == 3
    assert settings.split_threshold_days == 30
    assert settings.deposit_percent == Decimal("50")
    assert settings.webhook_dedup_ttl_seconds == 60.0


def test_settings_env_override(monkeypatch):
    monkeypatch.setenv("SPLIT_THRESHOLD_DAYS", "45")
    monkeypatch.setenv("LOG_FORMAT", "json")

    settings = Settings()

    assert settings.split_threshold_days == 45
    assert settings.log_format == "json"


def test_settings_are_cached():
    """Test that get_settings returns cached instance."""
    get_settings.cache_clear()

    settings1 = get_settings()
    settings2 = get_settings()

    assert settings1 is settings2


class TestBankAccountConfig:
    def test_bundled_config(self):
        config = load_bank_account_config()

        assert set(config) >= {"EUR", "PLN"}
        assert config["EUR"].name == "Rachunek EUR"
        assert all(code == entry.currency for code, entry in config.items())

    def test_fallback_defaults_to_name(self):
        config = parse_bank_account_config({"eur": {"name": "Rachunek EUR"}})

        assert config["EUR"].fallback == "Rachunek EUR"

    @pytest.mark.parametrize(
        "data,message",
        [
            (["EUR"], "must be a mapping"),
            ({"EURO": {"name": "x"}}, "invalid currency code"),
            ({"EUR": "Rachunek"}, "must be a mapping"),
            ({"EUR": {"fallback": "x"}}, "missing a bank account name"),
        ],
    )
    def test_invalid_config(self, data, message):
        with pytest.raises(ValueError, match=message):
            parse_bank_account_config(data)

    def test_missing_file(self, tmp_path: Path):
        assert load_bank_account_config(tmp_path / "missing.yaml") == {}

    def test_load_from_file(self, tmp_path: Path):
        path = tmp_path / "accounts.yaml"
        path.write_text('CHF:\n  name: "Konto CHF"\n', encoding="utf-8")

        config = load_bank_account_config(path)

        assert list(config) == ["CHF"]
        assert config["CHF"].fallback == "Konto CHF"
