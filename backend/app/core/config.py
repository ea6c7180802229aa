from functools import lru_cache

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    supabase_url: str = ""
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    base_currency: str = Field(
        default="GBP",
        validation_alias=AliasChoices("BASE_CURRENCY", "base_currency"),
    )
    fx_api_url: str = "https://api.frankfurter.app/latest"
    fx_cache_ttl_hours: int = 24
    fx_timeout_seconds: float = 5.0

    google_sheet_id: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_SHEET_ID", "google_sheet_id"),
    )
    google_sheets_service_account_key: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_SHEETS_SERVICE_ACCOUNT_KEY", "google_sheets_service_account_key"),
    )
    accountant_tab_name: str = "Accountant_CSV_Ready"
    enable_sheets_sync: bool = True

    ai_receipt_provider: str = "mock"
    ai_receipt_model: str = ""
    ai_allowed_providers: list[str] = Field(default_factory=lambda: ["mock", "claude"])
    anthropic_api_key: str = ""
    ai_timeout_seconds: float = 30.0
    ai_max_tokens: int = 1024

    max_upload_bytes: int = 20 * 1024 * 1024
    archive_max_batch_operations: int = 500
    stats_max_retries: int = 5

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED", "pii_redaction_enabled"),
    )
    pii_redaction_fields: list[str] = Field(
        default_factory=lambda: ["email", "phone", "address"],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS", "pii_redaction_fields"),
    )

    cors_allow_origins: list[str] = Field(default_factory=list)
    cors_allow_methods: list[str] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "OPTIONS",
    ])
    cors_allow_headers: list[str] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        "ai_allowed_providers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("base_currency", mode="after")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return (value or "GBP").strip().upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()
