"""
Logging configuration for the Agent Vault.
"""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger
from redis import Redis

from vault.config import settings


def _resolve_log_path(default_path: Path) -> Path:
    try:
        default_path.parent.mkdir(parents=True, exist_ok=True)
        return default_path
    except OSError:
        fallback_dir = Path.cwd() / "logs"
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / default_path.name


class RedisLogSink:
    """Loguru sink that writes log records to Redis capped list."""

    def __init__(self, key: str, max_entries: int) -> None:
        self.key = key
        self.max_entries = max_entries
        try:
            self.client = Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                decode_responses=True,
            )
            # Probe connection
            self.client.ping()
            self._available = True
        except Exception as exc:
            logger.warning(f"Redis log sink unavailable: {exc}")
            self._available = False

    def write(self, message: Any) -> None:
        if not self._available:
            return
        try:
            record: Dict[str, Any] = message.record
            payload = {
                "timestamp": record["time"].isoformat(),
                "level": record["level"].name,
                "message": record["message"],
                "name": record["name"],
                "function": record["function"],
                "line": record["line"],
                "extra": {key: str(value) for key, value in record.get("extra", {}).items()},
            }
            self.client.rpush(self.key, json.dumps(payload))
            self.client.ltrim(self.key, -self.max_entries, -1)
        except Exception as exc:
            # Downgrade to debug to avoid recursive logging
            logger.debug(f"Failed to push log entry to Redis: {exc}")


class LoguruHandler(logging.Handler):
    """Route stdlib logging records (uvicorn, web3, redis) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    """Configure loguru logger with appropriate settings."""

    logger.remove()
    logger.configure(extra={"environment": settings.environment})

    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.log_level,
        colorize=True,
    )

    log_path = _resolve_log_path(Path(settings.log_file))

    logger.add(
        log_path,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="100 MB",
        retention="30 days",
        compression="zip",
    )

    error_log_path = _resolve_log_path(log_path.parent / "errors.log")
    logger.add(
        str(error_log_path),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="ERROR",
        rotation="50 MB",
        retention="90 days",
        compression="zip",
    )

    # Committed trades and closes are bound with TRADE=True
    trading_log_path = _resolve_log_path(log_path.parent / "trading_activity.log")
    logger.add(
        str(trading_log_path),
        format="{time:YYYY-MM-DD HH:mm:ss} | {message}",
        level="INFO",
        filter=lambda record: record["extra"].get("TRADE"),
        rotation="50 MB",
        retention="365 days",
        compression="zip",
    )

    if settings.log_redis_enabled:
        redis_sink = RedisLogSink(settings.log_redis_list_key, settings.log_redis_max_entries)
        logger.add(redis_sink, level="INFO", enqueue=False)

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(logging.INFO)
    root_logger.addHandler(LoguruHandler())

    logger.info(f"Logging initialized - Level: {settings.log_level}, File: {log_path}")
    return logger


log = setup_logging()
