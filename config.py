import logging
from functools import lru_cache
from typing import List

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "wholesale_marketplace"
    port: int = 8000

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_days: int = 7
    password_setup_expire_minutes: int = 60
    bcrypt_rounds: int = 12

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    log_json: bool = False

    gst_api_url: str = "https://gst-verification.p.rapidapi.com/v3/tasks/sync/verify_with_source/ind_gst_certificate"
    gst_api_host: str = "gst-verification.p.rapidapi.com"
    gst_api_key: str = ""
    gst_timeout_seconds: float = 15.0

    order_number_retries: int = 5
    enforce_connection_at_checkout: bool = True
    salesman_retailers_require_approval: bool = False
    seed_default_categories: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
