from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DB_PATH = BASE_DIR / "data" / "lenon.db"
DEFAULT_UPLOAD_DIR = BASE_DIR / "uploads"
DEFAULT_SESSION_IDLE_SECONDS = 60 * 60 * 24  # 1 day


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer env value name=%s value=%s", name, raw)
        return default


def _load_secret_key() -> str:
    """Use ROBYN_SECRET_KEY when set, otherwise generate a per-process secret."""
    secret = os.getenv("ROBYN_SECRET_KEY")
    if secret:
        return secret
    logger.warning(
        "Using a randomly generated signing secret. Sessions will break when the "
        "process restarts. Set ROBYN_SECRET_KEY to a fixed value."
    )
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    upload_dir: Path
    upload_url_prefix: str
    secret_key: str
    secure_cookies: bool
    session_idle_seconds: int
    require_approval: bool
    db_max_connections: int
    host: str
    port: int
    log_level: str


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Read settings from the environment, after loading a .env file if present."""
    load_dotenv(env_file)
    prefix = "/" + (os.getenv("LENON_UPLOAD_URL_PREFIX") or "/uploads").strip("/")
    return Settings(
        db_path=Path(os.getenv("LENON_DB_PATH") or DEFAULT_DB_PATH),
        upload_dir=Path(os.getenv("LENON_UPLOAD_DIR") or DEFAULT_UPLOAD_DIR),
        upload_url_prefix=prefix,
        secret_key=_load_secret_key(),
        secure_cookies=_env_bool("ROBYN_SECURE_COOKIES", False),
        session_idle_seconds=max(
            1, _env_int("LENON_SESSION_IDLE_SECONDS", DEFAULT_SESSION_IDLE_SECONDS)
        ),
        require_approval=_env_bool("LENON_REQUIRE_APPROVAL", True),
        db_max_connections=max(1, _env_int("LENON_DB_MAX_CONNECTIONS", 5)),
        host=os.getenv("ROBYN_HOST") or "0.0.0.0",
        port=_env_int("ROBYN_PORT", 3000),
        log_level=(os.getenv("LENON_LOG_LEVEL") or "INFO").upper(),
    )
