"""Configuration settings for deal invoicing."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Flat settings read from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # CRM (trigger source)
    crm_api_url: str = Field(
        default="https://api.pipedrive.com/v1", validation_alias="CRM_API_URL"
    )
    crm_api_token: SecretStr = Field(..., validation_alias="CRM_API_TOKEN")

    # Accounting backend
    accounting_api_url: str = Field(
        default="http://localhost:8080/api", validation_alias="ACCOUNTING_API_URL"
    )
    accounting_api_token: SecretStr = Field(..., validation_alias="ACCOUNTING_API_TOKEN")
    accounting_company_id: str | None = Field(
        default=None, validation_alias="ACCOUNTING_COMPANY_ID"
    )

    # Local ledger (PostgREST)
    ledger_url: str = Field(
        default="http://localhost:54321/rest/v1", validation_alias="LEDGER_URL"
    )
    ledger_api_key: SecretStr = Field(..., validation_alias="LEDGER_API_KEY")

    # HTTP behaviour shared by all clients
    http_timeout: float = Field(default=30.0, validation_alias="HTTP_TIMEOUT")
    http_max_retries: int = Field(default=3, validation_alias="HTTP_MAX_RETRIES")

    # CRM custom field keys
    invoice_type_field_key: str = Field(
        default="ad67729ecfe0345287b71a3b00910e8ba5b3b496",
        validation_alias="CRM_INVOICE_TYPE_FIELD",
    )
    invoice_id_field_key: str = Field(
        default="a1b0e5f2f9e64c3f8a9b1a6c6a0b3d2e1f4c5d6e",
        validation_alias="CRM_INVOICE_ID_FIELD",
    )
    invoice_number_field_key: str = Field(
        default="0598d1168fe79005061aa3710ec45c3e03dbe8a3",
        validation_alias="CRM_INVOICE_NUMBER_FIELD",
    )
    delete_ids_field_key: str = Field(
        default="b7c3f1e4d2a94e0f8c6b5a3d1e2f4a6b8c0d9e7f",
        validation_alias="CRM_DELETE_IDS_FIELD",
    )

    # Option ids of the invoice type field
    trigger_proforma_value: int = Field(default=70, validation_alias="TRIGGER_PROFORMA_VALUE")
    trigger_done_value: int = Field(default=73, validation_alias="TRIGGER_DONE_VALUE")
    trigger_delete_value: int = Field(default=74, validation_alias="TRIGGER_DELETE_VALUE")

    # Payment schedule
    payment_terms_days: int = Field(default=3, validation_alias="PAYMENT_TERMS_DAYS")
    split_threshold_days: int = Field(default=30, validation_alias="SPLIT_THRESHOLD_DAYS")
    deposit_percent: Decimal = Field(default=Decimal("50"), validation_alias="DEPOSIT_PERCENT")

    # Write-back retries
    writeback_max_attempts: int = Field(default=3, validation_alias="WRITEBACK_MAX_ATTEMPTS")
    writeback_backoff_seconds: float = Field(
        default=1.0, validation_alias="WRITEBACK_BACKOFF_SECONDS"
    )

    # Deletion and webhook handling
    deletion_concurrency: int = Field(default=4, validation_alias="DELETION_CONCURRENCY")
    webhook_dedup_ttl_seconds: float = Field(
        default=60.0, validation_alias="WEBHOOK_DEDUP_TTL_SECONDS"
    )
    webhook_dedup_max_size: int = Field(default=500, validation_alias="WEBHOOK_DEDUP_MAX_SIZE")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
