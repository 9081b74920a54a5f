from __future__ import annotations

import os
from pathlib import Path

import httpx

BASE_DIR = Path(__file__).resolve().parent.parent

PROXY_BASE_URL_ENV = "EXPLORER_PROXY_BASE_URL"
REQUEST_TIMEOUT_ENV = "EXPLORER_REQUEST_TIMEOUT"
LOAD_DEADLINE_ENV = "EXPLORER_LOAD_DEADLINE"
RETRY_BACKOFF_ENV = "EXPLORER_RETRY_BACKOFF"
DATA_DIR_ENV = "EXPLORER_DATA_DIR"
DATABASE_URL_ENV = "EXPLORER_DATABASE_URL"
DATABASE_FILENAME = "explorer.db"

DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_LOAD_DEADLINE = 90.0
DEFAULT_RETRY_BACKOFF = 2.0


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError:
        return default
    return max(0.0, value)


def proxy_base_url() -> str | None:
    """Base URL of the tile relay, or ``None`` to contact upstream servers directly."""

    value = os.getenv(PROXY_BASE_URL_ENV, "").strip()
    return value.rstrip("/") or None


def request_timeout() -> httpx.Timeout:
    return httpx.Timeout(_env_float(REQUEST_TIMEOUT_ENV, DEFAULT_REQUEST_TIMEOUT))


def load_deadline_seconds() -> float:
    return _env_float(LOAD_DEADLINE_ENV, DEFAULT_LOAD_DEADLINE)


def retry_backoff_seconds() -> float:
    return _env_float(RETRY_BACKOFF_ENV, DEFAULT_RETRY_BACKOFF)


def data_dir() -> Path:
    override = os.getenv(DATA_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return BASE_DIR / "data"


def database_url() -> str:
    override = os.getenv(DATABASE_URL_ENV, "").strip()
    if override:
        return override
    return f"sqlite:///{data_dir() / DATABASE_FILENAME}"
