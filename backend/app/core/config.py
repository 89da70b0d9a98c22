from functools import lru_cache
from typing import Annotated
import json
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value: str) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        except ValueError:
            pass
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    # Business rules
    house_number_min: int = 1
    house_number_max: int = 66
    duplicate_amount_epsilon: float = 0.01
    confirmation_code_max_attempts: int = 5
    business_timezone: str = Field(
        default="America/Mexico_City",
        validation_alias=AliasChoices("BUSINESS_TIMEZONE", "TZ_BUSINESS"),
    )

    # Conversations
    conversation_timeout_seconds: int = 600
    conversation_sweep_interval_seconds: int = 300
    message_dedup_retention_seconds: int = 86_400
    message_dedup_sweep_interval_seconds: int = 3_600
    enable_recurring_jobs: bool = True

    db_retry_max_attempts: int = 3
    db_retry_base_delay_seconds: float = 0.2

    # WhatsApp Cloud API
    enable_whatsapp_webhook: bool = True
    whatsapp_api_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_api_version: str = "v21.0"

    # WhatsApp over Twilio
    enable_twilio_whatsapp: bool = False
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from_number: str = ""
    twilio_webhook_url: str = ""
    allow_insecure_webhooks: bool = Field(
        default=False,
        validation_alias=AliasChoices("ALLOW_INSECURE_WEBHOOKS"),
    )

    # Email channel (CloudMailin in, SMTP out)
    enable_email_webhook: bool = False
    cloudmailin_username: str = ""
    cloudmailin_password: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_email: str = ""

    # Receipt storage
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""
    receipts_bucket: str = "vouchers"

    # AI extraction
    ai_voucher_provider: str = Field(
        default="mock",
        validation_alias=AliasChoices("AI_VOUCHER_PROVIDER", "AI_PROVIDER"),
    )
    ai_voucher_model: str = ""
    # Idle-text classification (greeting / payment question / off topic)
    enable_message_classifier: bool = False
    ai_classifier_provider: str = "mock"
    ai_classifier_model: str = ""
    ai_allowed_providers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["mock", "openai"])
    ai_timeout_seconds: float = 30.0
    ai_max_tokens: int = 512
    openai_api_key: str = ""

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )

    rate_limit_webhook_enabled: bool = True
    rate_limit_whatsapp_ip_per_min: int = 600
    rate_limit_twilio_ip_per_min: int = 120
    rate_limit_email_webhook_ip_per_min: int = 60
    rate_limit_sender_per_min: int = 20
    rate_limit_voucher_upload_ip_per_min: int = 30

    # REST voucher API (list/detail, OCR, two-step frontend intake)
    enable_voucher_api: bool = True
    voucher_upload_max_bytes: int = 10 * 1024 * 1024
    receipt_view_url_ttl_seconds: int = 3600

    trusted_proxy_cidrs_raw: str = Field(
        default="",
        validation_alias=AliasChoices("TRUSTED_PROXY_CIDRS"),
    )

    @field_validator("ai_allowed_providers", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @property
    def trusted_proxy_cidrs(self) -> list[str]:
        return _parse_list_value(self.trusted_proxy_cidrs_raw)

    @property
    def house_number_range(self) -> tuple[int, int]:
        return self.house_number_min, self.house_number_max


@lru_cache
def get_settings() -> Settings:
    return Settings()
