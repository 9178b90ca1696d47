import logging
from types import MappingProxyType
from typing import Dict, Mapping

from pydantic_settings import BaseSettings

__version__ = "1.0.0"

DEFAULT_LICENSE_DURATIONS: Dict[str, int] = {
    "1m": 60 * 1000,                  # short test keys
    "1h": 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
    "7d": 7 * 24 * 60 * 60 * 1000,
    "30d": 30 * 24 * 60 * 60 * 1000,
}


class Settings(BaseSettings):
    # Service Info
    PROJECT_NAME: str = "Keybind License Authority"
    APP_VERSION: str = __version__
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Key Store
    KEY_STORE_BACKEND: str = "sql"  # sql | json | memory
    DATABASE_URL: str = "sqlite:///license_keys.db"
    KEY_STORE_PATH: str = "license_keys.json"
    STORAGE_TIMEOUT_SECONDS: float = 5.0

    # License types -> lifetime in milliseconds, fixed at startup
    LICENSE_DURATIONS: Dict[str, int] = DEFAULT_LICENSE_DURATIONS

    # Admin channel (closed when empty)
    ADMIN_TOKEN: str = ""

    # Expired-record sweep, 0 disables
    SWEEP_INTERVAL_SECONDS: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # License Client Configuration
    LICENSE_API_URL: str = "http://localhost:8000"
    LICENSE_API_TIMEOUT: int = 30
    POLL_INTERVAL_SECONDS: int = 60
    COUNTDOWN_TICK_SECONDS: int = 1
    CLIENT_DATABASE_URL: str = "sqlite:///license_client.db"

    class Config:
        env_file = ".env"


settings = Settings()


def load_durations(raw: Mapping[str, int]) -> Mapping[str, int]:
    """
    Validate the license duration table and freeze it.

    Spans are milliseconds and must be non-negative.
    """
    table = {}
    for license_type, span in raw.items():
        span = int(span)
        if span < 0:
            raise ValueError(f"Negative duration for license type {license_type!r}: {span}")
        table[str(license_type)] = span
    return MappingProxyType(table)


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=settings.LOG_FORMAT,
    )
