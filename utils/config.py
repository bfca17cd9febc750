"""Environment-driven configuration for the relay and library service.

Values are read from the process environment (optionally populated from a
`.env` file by `main.py`). Components never read the environment themselves;
they receive an `AppConfig` or the individual values they need.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

DEFAULT_FRONTEND_URL = "http://localhost:2427"
DEFAULT_APP_TITLE = "SillyTavern Character Generator"
DEFAULT_MAX_EMBEDDED_CHARS = 400_000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} must be a number") from exc


def _env_list(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.getenv(name) or default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class AppConfig:
    """Runtime settings shared by the application factory.

    Attributes:
        database_dir: Directory where `app.db` lives. None defers to the
            database initializer, which requires `DATABASE_DIR`.
        frontend_url: Allowed CORS origin, also sent as `HTTP-Referer` to aggregators.
        app_title: Sent as `X-Title` to aggregators.
        aggregator_markers: Substrings of a target address identifying an aggregator.
        max_embedded_chars: Size threshold above which a large optional
            request field is dropped before storage.
        max_record_bytes: Hard cap for a serialized request snapshot; 0 disables it.
        upstream_timeout: Seconds before an upstream call is abandoned.
        default_max_tokens: `max_tokens` used when the caller sends none.
        default_temperature: `temperature` used when the caller sends none.
        port: Listening port for the development runner.
        allowed_origins: CORS origins replacing the local defaults (`FRONTEND_URL`
            is always allowed).
    """

    database_dir: Optional[Path] = None
    frontend_url: str = DEFAULT_FRONTEND_URL
    app_title: str = DEFAULT_APP_TITLE
    aggregator_markers: Tuple[str, ...] = ("openrouter.ai",)
    max_embedded_chars: int = DEFAULT_MAX_EMBEDDED_CHARS
    max_record_bytes: int = 0
    upstream_timeout: float = 300.0
    default_max_tokens: int = 1000
    default_temperature: float = 0.7
    port: int = 2426
    allowed_origins: Tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build the configuration from environment variables."""
        frontend_url = os.getenv("FRONTEND_URL") or DEFAULT_FRONTEND_URL
        database_dir = os.getenv("DATABASE_DIR")
        return cls(
            database_dir=Path(database_dir).expanduser() if database_dir and database_dir.strip() else None,
            frontend_url=frontend_url,
            app_title=os.getenv("APP_TITLE") or DEFAULT_APP_TITLE,
            aggregator_markers=_env_list("AGGREGATOR_MARKERS", "openrouter.ai"),
            max_embedded_chars=_env_int("MAX_EMBEDDED_CHARS", DEFAULT_MAX_EMBEDDED_CHARS),
            max_record_bytes=_env_int("MAX_RECORD_BYTES", 0),
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT_SECONDS", 300.0),
            default_max_tokens=_env_int("DEFAULT_MAX_TOKENS", 1000),
            default_temperature=_env_float("DEFAULT_TEMPERATURE", 0.7),
            port=_env_int("PORT", 2426),
            allowed_origins=_env_list("ALLOWED_ORIGINS"),
        )

    def cors_origins(self) -> list[str]:
        """Return the de-duplicated list of origins allowed by CORS."""
        origins = list(self.allowed_origins) or [
            "http://localhost:2427",
            "http://127.0.0.1:2427",
        ]
        if self.frontend_url not in origins:
            origins.append(self.frontend_url)
        return origins
