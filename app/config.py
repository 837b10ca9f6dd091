from __future__ import annotations

from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Runtime configuration read from the environment (or a local .env)."""

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False, populate_by_name=True
    )

    app_name: str = "medassist"
    database_url: str = Field(default="sqlite:///./data/medassist.sqlite", alias="DATABASE_URL")

    app_timezone: str = Field(default="Asia/Kolkata", alias="APP_TIMEZONE")
    escalation_minutes: int = Field(default=15, alias="ESCALATION_MINUTES")
    sweep_interval_seconds: float = Field(default=60.0, alias="SWEEP_INTERVAL_SECONDS")
    sweep_enabled: bool = Field(default=True, alias="SWEEP_ENABLED")
    db_auto_create: bool = Field(default=False, alias="DB_AUTO_CREATE")
    seed_demo_data: bool = Field(default=False, alias="SEED_DEMO_DATA")

    api_timeout_seconds: float = Field(default=12.0, alias="API_TIMEOUT_SECONDS")
    session_ttl_seconds: int = Field(default=60 * 60 * 24 * 7, alias="SESSION_TTL_SECONDS")
    auth_rate_window_seconds: int = Field(default=10 * 60, alias="AUTH_RATE_WINDOW_SECONDS")
    auth_rate_max_attempts: int = Field(default=25, alias="AUTH_RATE_MAX_ATTEMPTS")

    twilio_account_sid: str | None = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_phone_number: str | None = Field(default=None, alias="TWILIO_PHONE_NUMBER")
    twilio_sms_from: str | None = Field(default=None, alias="TWILIO_SMS_FROM")
    twilio_twiml_url: str = Field(default="http://demo.twilio.com/docs/voice.xml", alias="TWILIO_TWIML_URL")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    @field_validator("escalation_minutes", "session_ttl_seconds", "auth_rate_window_seconds", "auth_rate_max_attempts")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("sweep_interval_seconds", "api_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("app_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {v}") from exc
        return v

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)

    @property
    def sms_sender(self) -> str | None:
        return self.twilio_sms_from or self.twilio_phone_number


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
