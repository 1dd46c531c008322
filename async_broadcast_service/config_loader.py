"""Settings loader: INI file with environment variable fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with BROADCAST_):
      BROADCAST_CONFIG - Path to config.ini file (default: config.ini)
      BROADCAST_LOG_LEVEL - Logging level (default: INFO)
      BROADCAST_DB_PATH - Database path (default: /data/broadcast_service.db)
      BROADCAST_HOST - Server host (default: 0.0.0.0)
      BROADCAST_PORT - Server port (default: 8000)
      BROADCAST_API_TOKEN - API authentication token
      BROADCAST_TELEGRAM_TOKEN - Telegram bot token
      BROADCAST_TELEGRAM_API_BASE - Bot API base URL (default: https://api.telegram.org)
      BROADCAST_MEDIA_ROOT - Directory local image paths are relative to (default: .)
      BROADCAST_SEND_TIMEOUT - Per-request transport timeout in seconds (default: 15)
      BROADCAST_BATCH_SIZE - Deliveries claimed per round (default: 50)
      BROADCAST_CONCURRENCY - Parallel sends per batch (default: 4)
      BROADCAST_MAX_ATTEMPTS - Attempts before a delivery fails permanently (default: 5)
      BROADCAST_TICK_INTERVAL - Seconds between ticks (default: 20)
      BROADCAST_TEST_MODE - Only tick when woken up (default: False)
      BROADCAST_RETENTION_DAYS - Days finished runs are kept (default: 30)
      BROADCAST_ACTIVE_SUBSCRIBER_DAYS - Recency window for active subscribers (default: 30)
      BROADCAST_LOG_DELIVERY_ACTIVITY - Log every delivery outcome (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [telegram] bot_token, api_base, media_root, timeout_seconds
      [delivery] batch_size, concurrency, max_attempts, tick_interval_seconds, test_mode
      [retention] days
      [audience] active_subscriber_days
      [logging] delivery_activity
    """
    config_path = Path(config_path or os.getenv("BROADCAST_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("BROADCAST_DB_PATH", "/data/broadcast_service.db")),
        "http_host": get("server", "host", os.getenv("BROADCAST_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("BROADCAST_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("BROADCAST_API_TOKEN")),
        "telegram_bot_token": get("telegram", "bot_token", os.getenv("BROADCAST_TELEGRAM_TOKEN")),
        "telegram_api_base": get(
            "telegram", "api_base", os.getenv("BROADCAST_TELEGRAM_API_BASE", "https://api.telegram.org")
        ),
        "media_root": get("telegram", "media_root", os.getenv("BROADCAST_MEDIA_ROOT", ".")),
        "send_timeout": get_float("telegram", "timeout_seconds", os.getenv("BROADCAST_SEND_TIMEOUT"), default=15.0),
        "batch_size": get_int("delivery", "batch_size", os.getenv("BROADCAST_BATCH_SIZE"), default=50),
        "concurrency": get_int("delivery", "concurrency", os.getenv("BROADCAST_CONCURRENCY"), default=4),
        "max_attempts": get_int("delivery", "max_attempts", os.getenv("BROADCAST_MAX_ATTEMPTS"), default=5),
        "tick_interval": get_float(
            "delivery", "tick_interval_seconds", os.getenv("BROADCAST_TICK_INTERVAL"), default=20.0
        ),
        "test_mode": get_bool("delivery", "test_mode", os.getenv("BROADCAST_TEST_MODE"), False),
        "retention_days": get_int("retention", "days", os.getenv("BROADCAST_RETENTION_DAYS"), default=30),
        "active_subscriber_days": get_int(
            "audience",
            "active_subscriber_days",
            os.getenv("BROADCAST_ACTIVE_SUBSCRIBER_DAYS"),
            default=30,
        ),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("BROADCAST_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "telegram_bot_token"):
        token = settings.get(key)
        if isinstance(token, str):
            token = token.strip() or None
        settings[key] = token
    return settings


def core_kwargs(settings: dict[str, object]) -> dict[str, object]:
    """Map loaded settings onto :class:`BroadcastCore` keyword arguments."""
    return dict(
        db_path=settings["db_path"],
        batch_size=settings.get("batch_size"),
        concurrency=settings.get("concurrency"),
        max_attempts=settings.get("max_attempts"),
        tick_interval=settings.get("tick_interval"),
        retention_days=settings.get("retention_days"),
        active_subscriber_days=settings.get("active_subscriber_days"),
        telegram_bot_token=settings.get("telegram_bot_token"),
        telegram_api_base=settings.get("telegram_api_base"),
        media_root=settings.get("media_root"),
        send_timeout=settings.get("send_timeout"),
        test_mode=bool(settings.get("test_mode")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )
