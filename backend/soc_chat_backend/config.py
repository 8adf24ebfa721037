from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(slots=True)
class AppConfig:
    port: int
    firebase_credentials_path: Path
    local_data_dir: Path
    firestore_database_id: Optional[str] = None
    storage_bucket: Optional[str] = None
    agent_uid: Optional[str] = None
    background_services_enabled: bool = True
    scheduler_interval: int = 60
    cleanup_interval_hours: int = 6
    read_message_expiry_days: int = 3
    unread_message_expiry_days: int = 7
    media_file_expiry_days: int = 14
    connectivity_check_interval: int = 5
    connectivity_probe_url: str = "https://firestore.googleapis.com/"
    sync_max_retries: int = 3
    sync_backoff_seconds: int = 30
    log_level: str = "INFO"


def _resolve_path(path_str: str, base_dir: Path) -> Path:
    # Normalize Windows-style backslashes to forward slashes so paths work across OSes.
    path_str = path_str.strip().replace("\\", "/")
    candidate = Path(path_str).expanduser()
    if candidate.is_absolute():
        return candidate

    for root in (base_dir, base_dir.parent):
        resolved = (root / candidate).resolve()
        if resolved.exists():
            return resolved

    return (base_dir / candidate).resolve()


def _int_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config() -> AppConfig:
    """Load configuration from environment variables/.env file."""
    backend_dir = Path(__file__).resolve().parent.parent
    dotenv_path = backend_dir / ".env"
    load_dotenv(dotenv_path)

    port = _int_env("PORT", 5000)

    credentials_path_raw = os.getenv("FIREBASE_CREDENTIALS_PATH")
    if not credentials_path_raw:
        raise ConfigError("FIREBASE_CREDENTIALS_PATH is required")

    credentials_path = _resolve_path(credentials_path_raw, backend_dir)
    if not credentials_path.exists():
        raise ConfigError(
            "Firebase credentials file not found at resolved path: "
            f"{credentials_path}"
        )

    local_data_raw = os.getenv("LOCAL_DATA_DIR")
    if local_data_raw:
        local_data_dir = _resolve_path(local_data_raw, backend_dir)
    else:
        local_data_dir = (backend_dir / "local_data").resolve()
    local_data_dir.mkdir(parents=True, exist_ok=True)

    firestore_database_id = (os.getenv("FIRESTORE_DATABASE_ID") or "").strip() or None
    storage_bucket = (os.getenv("FIREBASE_STORAGE_BUCKET") or "").strip() or None
    agent_uid = (os.getenv("CHAT_AGENT_UID") or "").strip() or None

    read_expiry = _int_env("READ_MESSAGE_EXPIRY_DAYS", 3)
    unread_expiry = _int_env("UNREAD_MESSAGE_EXPIRY_DAYS", 7)
    if unread_expiry < read_expiry:
        raise ConfigError(
            "UNREAD_MESSAGE_EXPIRY_DAYS must not be shorter than READ_MESSAGE_EXPIRY_DAYS"
        )

    probe_url = os.getenv("CONNECTIVITY_PROBE_URL", "https://firestore.googleapis.com/").strip()
    if not probe_url.startswith(("http://", "https://")):
        raise ConfigError("CONNECTIVITY_PROBE_URL must be an http(s) URL")

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}, got '{log_level}'")

    return AppConfig(
        port=port,
        firebase_credentials_path=credentials_path,
        local_data_dir=local_data_dir,
        firestore_database_id=firestore_database_id,
        storage_bucket=storage_bucket,
        agent_uid=agent_uid,
        background_services_enabled=_bool_env("BACKGROUND_SERVICES_ENABLED", True),
        scheduler_interval=_int_env("SCHEDULER_INTERVAL_SECONDS", 60),
        cleanup_interval_hours=_int_env("CLEANUP_INTERVAL_HOURS", 6),
        read_message_expiry_days=read_expiry,
        unread_message_expiry_days=unread_expiry,
        media_file_expiry_days=_int_env("MEDIA_FILE_EXPIRY_DAYS", 14),
        connectivity_check_interval=_int_env("CONNECTIVITY_CHECK_INTERVAL", 5),
        connectivity_probe_url=probe_url,
        sync_max_retries=_int_env("SYNC_MAX_RETRIES", 3),
        sync_backoff_seconds=_int_env("SYNC_BACKOFF_SECONDS", 30, minimum=0),
        log_level=log_level,
    )
