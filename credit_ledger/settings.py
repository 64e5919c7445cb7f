from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CREDIT_LEDGER_", env_file=".env", extra="ignore")

    # Upper bound on credits an admin may grant when overriding a request
    max_credit_grant: int = Field(default=100, ge=1)
    initial_credits: int = Field(default=0, ge=0)

    retry_max_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.2, ge=0)
    retry_max_delay: float = Field(default=5.0, ge=0)
    retry_jitter: bool = True

    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
