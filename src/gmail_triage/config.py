"""Runtime configuration read from the environment (and a local .env)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import find_dotenv, load_dotenv

from .constants import (
    CONFIG_DIR,
    DEFAULT_LOOKBACK,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MODEL_NAME,
    DEFAULT_TIMEOUT_SECONDS,
    UNPARSEABLE_RISK_POLICIES,
)
from .errors import ConfigError


@dataclass(frozen=True)
class Settings:
    # The mailbox owner; also used for self-mail suppression.
    user_email: str
    pubsub_topic: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    redirect_uri: str = "http://localhost:8080/oauth2callback"
    azure_openai_endpoint: str = ""
    azure_openai_key: str = ""
    openai_api_key: str = ""
    model_name: str = DEFAULT_MODEL_NAME
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    lookback: int = DEFAULT_LOOKBACK
    max_workers: int = DEFAULT_MAX_WORKERS
    unparseable_risk: str = "review"
    home: Path = CONFIG_DIR

    @property
    def store_path(self) -> Path:
        return self.home / "store.db"


def _int(env: Mapping[str, str], key: str, default: int, minimum: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from env (defaults to ``os.environ`` after loading .env)."""
    if env is None:
        load_dotenv(find_dotenv(usecwd=True))
        env = os.environ

    user_email = env.get("USER_EMAIL", "").strip()
    if not user_email:
        raise ConfigError("USER_EMAIL is not set")

    unparseable = env.get("GMAIL_TRIAGE_UNPARSEABLE_RISK", "review").strip().lower() or "review"
    if unparseable not in UNPARSEABLE_RISK_POLICIES:
        raise ConfigError(
            f"GMAIL_TRIAGE_UNPARSEABLE_RISK must be one of {', '.join(UNPARSEABLE_RISK_POLICIES)}"
        )

    home = env.get("GMAIL_TRIAGE_HOME", "").strip()
    return Settings(
        user_email=user_email,
        pubsub_topic=env.get("GMAIL_PUBSUB_TOPIC", "").strip(),
        google_client_id=env.get("GOOGLE_CLIENT_ID", ""),
        google_client_secret=env.get("GOOGLE_CLIENT_SECRET", ""),
        redirect_uri=env.get("GOOGLE_REDIRECT_URI", "") or Settings.redirect_uri,
        azure_openai_endpoint=env.get("AZURE_OPENAI_ENDPOINT", ""),
        azure_openai_key=env.get("AZURE_OPENAI_KEY", ""),
        openai_api_key=env.get("OPENAI_API_KEY", ""),
        model_name=env.get("OPENAI_MODEL_NAME", "") or DEFAULT_MODEL_NAME,
        timeout_seconds=_float(env, "OPENAI_API_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        lookback=_int(env, "GMAIL_TRIAGE_LOOKBACK", DEFAULT_LOOKBACK, minimum=0),
        max_workers=_int(env, "GMAIL_TRIAGE_MAX_WORKERS", DEFAULT_MAX_WORKERS, minimum=1),
        unparseable_risk=unparseable,
        home=Path(home).expanduser() if home else CONFIG_DIR,
    )
