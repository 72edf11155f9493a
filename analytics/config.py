from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parents[1]

DEFAULT_TICKETS_URL = "https://nes-analytics.s3.ap-southeast-5.amazonaws.com/maintainance/maintence.csv"
DEFAULT_PARQUET_URL = "https://nes-analytics.s3.ap-southeast-5.amazonaws.com/data/FINAL_DATA_NES.parquet"
DEFAULT_APPROVAL_URL = "https://nes-analytics.s3.ap-southeast-5.amazonaws.com/storage/report/approvalTP.csv"
DEFAULT_MEMBERSHIP_CSV = str(PROJECT_DIR / "data" / "consolidated_data.csv")
DEFAULT_ATTACHMENT_BASE_URL = "https://api.nadi.my/api/attachment/view?file_url="


def _get_str_env(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _get_bool_env(name: str, default: bool) -> bool:
    """Read a boolean from environment variables with safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return max(minimum, value)


def _get_float_env(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class Settings:
    tickets_url: str = DEFAULT_TICKETS_URL
    parquet_url: str = DEFAULT_PARQUET_URL
    membership_csv: str = DEFAULT_MEMBERSHIP_CSV
    approval_url: str = DEFAULT_APPROVAL_URL
    attachment_base_url: str = DEFAULT_ATTACHMENT_BASE_URL
    attachment_token: str = ""
    cache_path: str = str(PROJECT_DIR / ".cache" / "datasets.sqlite3")
    cache_max_age_seconds: int = 24 * 60 * 60
    load_timeout_seconds: float = 8.0
    debounce_seconds: float = 0.25
    duckdb_path: str = ":memory:"
    log_level: str = "INFO"
    use_demo_fallback: bool = True


def load_settings() -> Settings:
    """Build settings from the environment, falling back to defaults per key."""
    defaults = Settings()
    return Settings(
        tickets_url=_get_str_env("NES_TICKETS_URL", defaults.tickets_url),
        parquet_url=_get_str_env("NES_PARQUET_URL", defaults.parquet_url),
        membership_csv=_get_str_env("NES_MEMBERSHIP_CSV", defaults.membership_csv),
        approval_url=_get_str_env("NES_APPROVAL_URL", defaults.approval_url),
        attachment_base_url=_get_str_env("NES_ATTACHMENT_BASE_URL", defaults.attachment_base_url),
        attachment_token=_get_str_env("NES_ATTACHMENT_TOKEN", defaults.attachment_token),
        cache_path=_get_str_env("NES_CACHE_PATH", defaults.cache_path),
        cache_max_age_seconds=_get_int_env("NES_CACHE_MAX_AGE_SECONDS", defaults.cache_max_age_seconds),
        load_timeout_seconds=_get_float_env("NES_LOAD_TIMEOUT_SECONDS", defaults.load_timeout_seconds, minimum=0.1),
        debounce_seconds=_get_float_env("NES_DEBOUNCE_SECONDS", defaults.debounce_seconds),
        duckdb_path=_get_str_env("NES_DUCKDB_PATH", defaults.duckdb_path),
        log_level=_get_str_env("NES_LOG_LEVEL", defaults.log_level).upper(),
        use_demo_fallback=_get_bool_env("NES_USE_DEMO_FALLBACK", defaults.use_demo_fallback),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
