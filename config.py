from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_url: str
    reservation_api_key: str
    admin_api_key: str
    cancellation_notice_period: int
    default_buffer_time: int
    status_machine: dict[str, Any] | None
    log_level: str


def _clean(value: str | None) -> str:
    return (value or "").strip().strip('"').strip("'")


def _get_required_env(name: str) -> str:
    value = _clean(os.getenv(name))
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _get_int_env(name: str, default: int) -> int:
    value = _clean(os.getenv(name))
    if not value:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {value!r}") from exc


def _get_json_env(name: str) -> dict[str, Any] | None:
    value = _clean(os.getenv(name))
    if not value:
        return None
    try:
        payload = json.loads(value)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Environment variable {name} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"Environment variable {name} must be a JSON object.")
    return payload


@lru_cache
def get_settings() -> Settings:
    return Settings(
        app_name="Resource Reservations API",
        app_version="1.0.0",
        database_url=_get_required_env("DATABASE_URL"),
        reservation_api_key=_get_required_env("RESERVATION_API_KEY"),
        admin_api_key=_get_required_env("ADMIN_API_KEY"),
        cancellation_notice_period=_get_int_env("CANCELLATION_NOTICE_PERIOD_HOURS", 24),
        default_buffer_time=_get_int_env("DEFAULT_BUFFER_MINUTES", 0),
        status_machine=_get_json_env("RESERVATION_STATUS_MACHINE"),
        log_level=_clean(os.getenv("LOG_LEVEL")).upper() or "INFO",
    )
