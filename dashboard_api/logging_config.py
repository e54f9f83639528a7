from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Iterable, Optional, Sequence

_DEFAULT_EXTRA_KEYS = (
    "trace_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "identity",
)

_configured = False


class ContextualFormatter(logging.Formatter):
    """Añade al final del mensaje el contexto del request pasado en ``extra=``."""

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        style: str = "%",
        extra_keys: Optional[Iterable[str]] = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or _DEFAULT_EXTRA_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context_parts = []
        for key in self._extra_keys:
            value = getattr(record, key, None)
            if value is None:
                continue
            context_parts.append(f"{key}={value}")
        if context_parts:
            return f"{message} | {' '.join(context_parts)}"
        return message


def configure_logging(level: str = "INFO", *, force: bool = False) -> None:
    global _configured
    if _configured and not force:
        return

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "dashboard_api.logging_config.ContextualFormatter",
                    "fmt": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                    "style": "%",
                    "extra_keys": list(_DEFAULT_EXTRA_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": level,
                    "formatter": "contextual",
                }
            },
            "root": {"handlers": ["default"], "level": level},
        }
    )

    _configured = True


def mask_key(key: Optional[str]) -> str:
    if not key:
        return "****"
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


def truncate_ip(ip: Optional[str]) -> str:
    # 203.0.113.42 -> 203.0.113.x ; IPv6 conserva los 3 primeros grupos
    if not ip or ip == "unknown":
        return "unknown"
    if "." in ip and ":" not in ip:
        parts = ip.split(".")
        return ".".join(parts[:3] + ["x"]) if len(parts) == 4 else ip
    if ":" in ip:
        groups = ip.split(":")
        return ":".join(groups[:3]) + ":x"
    return ip
