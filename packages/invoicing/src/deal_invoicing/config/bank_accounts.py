"""Utilities for loading per-currency bank account configuration from YAML."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import yaml  # type: ignore[import-untyped]

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "bank_accounts.yaml"


@dataclass(frozen=True)
class BankAccountConfig:
    """Which backend bank account to print for one currency."""

    currency: str
    name: str
    fallback: str


def parse_bank_account_config(data: object, source: str = "<memory>") -> dict[str, BankAccountConfig]:
    """Validate a raw YAML mapping of currency -> {name, fallback}."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{source}: bank account config must be a mapping")

    configs: dict[str, BankAccountConfig] = {}
    for currency, entry in data.items():
        code = str(currency).strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"{source}: invalid currency code {currency!r}")
        if not isinstance(entry, dict):
            raise ValueError(f"{source}: entry for {code} must be a mapping")

        name = str(entry.get("name") or "").strip()
        if not name:
            raise ValueError(f"{source}: {code} is missing a bank account name")
        fallback = str(entry.get("fallback") or name).strip()

        configs[code] = BankAccountConfig(currency=code, name=name, fallback=fallback)

    return configs


@lru_cache
def load_bank_account_config(path: Path | None = None) -> dict[str, BankAccountConfig]:
    """Load the bank account mapping; its keys are the supported currencies."""
    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return {}
    raw = config_path.read_text(encoding="utf-8")
    return parse_bank_account_config(yaml.safe_load(raw), source=config_path.name)
