"""Configuration module for deal invoicing."""

from deal_invoicing.config.bank_accounts import (
    BankAccountConfig,
    load_bank_account_config,
)
from deal_invoicing.config.logging import configure_logging
from deal_invoicing.config.settings import Settings, get_settings

__all__ = [
    "BankAccountConfig",
    "Settings",
    "configure_logging",
    "get_settings",
    "load_bank_account_config",
]
