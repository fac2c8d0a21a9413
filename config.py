import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from errors import ConfigurationError

# Load environment variables
load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///finance_tracker.db"
    job_secret: Optional[str] = None
    max_workers: int = 4
    read_attempts: int = 2
    transaction_lookback_hours: float = 1.0
    anomaly_history_days: int = 30
    anomaly_multiplier: float = 3.0
    anomaly_min_history: int = 3
    log_level: str = "INFO"


def _env_number(name: str, default, cast, minimum=None):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def load_settings() -> Settings:
    """Build settings from the environment (and a .env file, if present)."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///finance_tracker.db"),
        job_secret=os.getenv("NOTIFICATION_JOB_SECRET") or None,
        max_workers=_env_number("JOB_MAX_WORKERS", 4, int, minimum=1),
        read_attempts=_env_number("JOB_READ_ATTEMPTS", 2, int, minimum=1),
        transaction_lookback_hours=_env_number("TRANSACTION_LOOKBACK_HOURS", 1.0, float, minimum=0),
        anomaly_history_days=_env_number("ANOMALY_HISTORY_DAYS", 30, int, minimum=1),
        anomaly_multiplier=_env_number("ANOMALY_MULTIPLIER", 3.0, float, minimum=1),
        anomaly_min_history=_env_number("ANOMALY_MIN_HISTORY", 3, int, minimum=1),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=level or os.getenv("LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )
