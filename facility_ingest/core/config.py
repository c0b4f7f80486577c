"""Application configuration helpers.

Every tunable of the ingestion pipeline is read from the environment so the
scheduler that triggers runs can reconfigure it without code changes.
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
DEFAULT_OVERPASS_URL = "https://overpass-api.de/api/interpreter"
DEFAULT_USER_AGENT = "FacilityIngest/1.0 (+public toilet data ingestion)"


class ConfigError(RuntimeError):
    """Raised when configuration values are missing or malformed."""


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    dedup_radius_m: float = 15.0
    confidence_threshold: float = 0.6
    max_retries: int = 3
    fetch_timeout: float = 30.0
    max_concurrent_requests: int = 3
    min_request_interval: float = 1.0
    fetch_workers: int = 4
    cache_ttl: float = 0.0
    disabled_sources: Tuple[str, ...] = ()
    data_gov_in_api_key: str = ""
    overpass_url: str = DEFAULT_OVERPASS_URL
    user_agent: str = DEFAULT_USER_AGENT
    log_level: str = "INFO"


def _get_float(name: str, default: float, *, minimum: Optional[float] = None, maximum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got {value}")
    return value


def _get_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache settings from environment variables."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    data_gov_in_api_key = os.getenv("DATA_GOV_IN_API_KEY", "")

    settings = Settings(
        database_url=database_url,
        dedup_radius_m=_get_float("INGEST_DEDUP_RADIUS_M", 15.0, minimum=0.0),
        confidence_threshold=_get_float("INGEST_CONFIDENCE_THRESHOLD", 0.6, minimum=0.0, maximum=1.0),
        max_retries=_get_int("INGEST_MAX_RETRIES", 3),
        fetch_timeout=_get_float("INGEST_FETCH_TIMEOUT", 30.0, minimum=0.1),
        max_concurrent_requests=_get_int("INGEST_MAX_CONCURRENT", 3),
        min_request_interval=_get_float("INGEST_MIN_REQUEST_INTERVAL", 1.0, minimum=0.0),
        fetch_workers=_get_int("INGEST_FETCH_WORKERS", 4),
        cache_ttl=_get_float("INGEST_CACHE_TTL", 0.0, minimum=0.0),
        disabled_sources=_get_list("INGEST_DISABLED_SOURCES"),
        data_gov_in_api_key=data_gov_in_api_key,
        overpass_url=os.getenv("OVERPASS_URL") or DEFAULT_OVERPASS_URL,
        user_agent=os.getenv("INGEST_USER_AGENT") or DEFAULT_USER_AGENT,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )

    if not database_url:
        logger.warning("DATABASE_URL is not set; the PostGIS inventory gateway will fail.")
    if not data_gov_in_api_key:
        logger.warning("DATA_GOV_IN_API_KEY is not configured; government datasets will be skipped.")

    return settings


def configure_logging(level: Optional[str] = None) -> None:
    """Install the pipeline log format; intended for the scheduling entrypoint."""
    logging.basicConfig(level=level or get_settings().log_level, format=LOG_FORMAT)
