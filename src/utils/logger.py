"""
Console logging for the Hemline API: colored levels, component emojis and
short helpers for the request/outcome lines every handler writes.
"""

import logging
import os
import sys
from datetime import datetime
from typing import Optional


class HealthCheckFilter(logging.Filter):
    """Drop uvicorn access lines for the /health check."""

    def filter(self, record):
        args = getattr(record, "args", None)
        if isinstance(args, tuple) and len(args) >= 3:
            path = args[2] if isinstance(args[2], str) else ""
            if path.startswith("/health"):
                return False

        msg = record.msg if isinstance(record.msg, str) else ""
        return "GET /health" not in msg


class ColorFormatter(logging.Formatter):
    """Formatter with colors and emojis for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
        "BOLD": "\033[1m",
        "DIM": "\033[2m",
    }

    EMOJIS = {
        "DEBUG": "🔍",
        "INFO": "✅",
        "WARNING": "⚠️",
        "ERROR": "❌",
        "CRITICAL": "🚨",
    }

    # Matched against the logger name, first hit wins
    COMPONENT_EMOJIS = {
        "webhook": "📨",
        "stripe": "💳",
        "shippo": "📦",
        "notify": "🔔",
        "scheduler": "⏰",
        "supabase": "💾",
        "api": "🌐",
    }

    def __init__(self, use_color: Optional[bool] = None):
        super().__init__()
        if use_color is None:
            use_color = _color_enabled()
        self.use_color = use_color

    def _paint(self, key: str, text: str) -> str:
        if not self.use_color:
            return text
        return f"{self.COLORS[key]}{text}{self.COLORS['RESET']}"

    def _component(self, name: str) -> str:
        lowered = name.lower()
        return next(
            (emoji for part, emoji in self.COMPONENT_EMOJIS.items() if part in lowered), ""
        )

    def format(self, record):
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        short_name = record.name.rsplit(".", 1)[-1][:12]
        level = self._paint(record.levelname, self._paint("BOLD", f"{record.levelname:<8}"))
        sep = self._paint("DIM", "│")

        line = (
            f"{self._paint('DIM', f'[{stamp}]')} "
            f"{self.EMOJIS.get(record.levelname, '📝')} {level} {sep} "
            f"{self._component(record.name)} {self._paint('BOLD', f'{short_name:<12}')} {sep} "
            f"{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _color_enabled() -> bool:
    flag = (os.environ.get("LOG_COLOR") or "").lower()
    if flag in ("0", "false", "no"):
        return False
    if flag in ("1", "true", "yes"):
        return True
    return sys.stdout.isatty()


def _default_level() -> str:
    return (os.environ.get("LOG_LEVEL") or "INFO").upper()


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Create (or return the already configured) named logger.

    Args:
        name: Logger name, e.g. "hemline.webhook"
        level: Log level; falls back to LOG_LEVEL, then INFO

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    resolved = getattr(logging, (level or _default_level()).upper(), logging.INFO)
    logger.setLevel(resolved)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(ColorFormatter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def log_api_request(
    logger: logging.Logger, method: str, endpoint: str, params: Optional[dict] = None
):
    """Log an incoming request line."""
    params_str = f" {params}" if params else ""
    logger.info(f"🌐 {method} {endpoint}{params_str}")


def log_database_operation(
    logger: logging.Logger, operation: str, count: int, table: str
):
    """Log a bulk datastore write summary."""
    logger.info(f"💾 {table}: {operation} {count} row(s)")


def log_success(logger: logging.Logger, message: str):
    """INFO line tagged [OK] so outcomes are easy to grep in plain text logs."""
    logger.info(f"[OK] {message}")


def log_failure(logger: logging.Logger, message: str):
    """ERROR line tagged [FAIL]."""
    logger.error(f"[FAIL] {message}")


api_logger = setup_logger("hemline.api")
webhook_logger = setup_logger("hemline.webhook")
stripe_logger = setup_logger("hemline.stripe")
shippo_logger = setup_logger("hemline.shippo")
supabase_logger = setup_logger("hemline.supabase")
notify_logger = setup_logger("hemline.notify")
scheduler_logger = setup_logger("hemline.scheduler")
