"""
Runtime settings for the location stats service.

All values come from environment variables (a project-root ``.env`` is loaded
first). Only ``GHL_API_KEY`` is required; ``Settings.from_env`` raises
``ConfigError`` without it so the server refuses to start.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from scripts.lib.errors import ConfigError

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_BASE_URL = "https://rest.gohighlevel.com"
API_VERSION = "2021-07-28"
PAGE_SIZE = 100
STRATEGIES = ("tag", "stage")


@dataclass(frozen=True)
class Settings:
    agency_api_key: str
    base_url: str = DEFAULT_BASE_URL
    api_version: str = API_VERSION
    page_size: int = PAGE_SIZE
    max_pages: int = 100
    timeout_seconds: float = 15.0
    max_retries: int = 3
    retry_backoff: float = 1.0
    credentials_csv: Path = PROJECT_ROOT / "secrets" / "api_keys.csv"
    location_name_prefix: str = ""
    pipeline_whitelist: Tuple[str, ...] = ("youth", "adult", "leagues")
    strategy: str = "tag"
    cache_ttl_seconds: float = 120.0
    location_concurrency: int = 6
    subfetch_concurrency: int = 8
    default_window_days: int = 30
    require_date_range: bool = False
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv(PROJECT_ROOT / ".env")
            env = os.environ

        api_key = (env.get("GHL_API_KEY") or "").strip()
        if not api_key:
            raise ConfigError("Missing GHL_API_KEY in environment")

        strategy = env.get("CLASSIFICATION_STRATEGY", "tag").strip().lower()
        if strategy not in STRATEGIES:
            raise ConfigError(
                f"CLASSIFICATION_STRATEGY must be one of {', '.join(STRATEGIES)}, got '{strategy}'"
            )

        csv_path = Path(env.get("CREDENTIALS_CSV") or PROJECT_ROOT / "secrets" / "api_keys.csv")
        if not csv_path.is_absolute():
            csv_path = PROJECT_ROOT / csv_path

        return Settings(
            agency_api_key=api_key,
            base_url=env.get("GHL_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            api_version=env.get("GHL_API_VERSION", API_VERSION),
            page_size=_int(env, "GHL_PAGE_SIZE", PAGE_SIZE, minimum=1),
            max_pages=_int(env, "GHL_MAX_PAGES", 100, minimum=1),
            timeout_seconds=_float(env, "GHL_TIMEOUT", 15.0),
            max_retries=_int(env, "GHL_MAX_RETRIES", 3, minimum=1),
            retry_backoff=_float(env, "GHL_RETRY_BACKOFF", 1.0),
            credentials_csv=csv_path,
            location_name_prefix=env.get("LOCATION_NAME_PREFIX", ""),
            pipeline_whitelist=_csv_tuple(env.get("PIPELINE_WHITELIST", "youth,adult,leagues")),
            strategy=strategy,
            cache_ttl_seconds=_float(env, "STATS_CACHE_TTL", 120.0),
            location_concurrency=_int(env, "LOCATION_CONCURRENCY", 6, minimum=1),
            subfetch_concurrency=_int(env, "SUBFETCH_CONCURRENCY", 8, minimum=1),
            default_window_days=_int(env, "DEFAULT_WINDOW_DAYS", 30, minimum=1),
            require_date_range=env.get("REQUIRE_DATE_RANGE", "false").lower() == "true",
            cors_origins=_csv_tuple(env.get("CORS_ORIGINS", "*"), lower=False),
        )


def _int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{raw}'")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{raw}'")
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def _csv_tuple(raw: str, lower: bool = True) -> Tuple[str, ...]:
    items = [part.strip() for part in (raw or "").split(",")]
    if lower:
        items = [part.lower() for part in items]
    return tuple(part for part in items if part)
