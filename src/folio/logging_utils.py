from __future__ import annotations

import os
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

_DEBUG_LOG = os.environ.get("FOLIO_DEBUG", "").strip().lower() in {"1", "true", "yes", "on"}


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled


def debug_enabled() -> bool:
    return _DEBUG_LOG


def debug_log(scope: str, message: str) -> None:
    if _DEBUG_LOG:
        print(f"[folio {scope} debug] {message}")


def _decode_path(value: str) -> str:
    try:
        return unquote(value, encoding="utf-8", errors="replace")
    except Exception:
        return value


class Utf8AccessFormatter(UvicornAccessFormatter):
    """Access log formatter that prints book paths decoded (titles are often CJK)."""

    def formatMessage(self, record):  # type: ignore[override]
        try:
            client_addr, method, full_path, http_version, status_code = record.args
        except Exception:
            return super().formatMessage(record)
        decoded_path = _decode_path(full_path) if isinstance(full_path, str) else full_path
        new_record = copy(record)
        new_record.args = (client_addr, method, decoded_path, http_version, status_code)
        return super().formatMessage(new_record)


def build_uvicorn_log_config(*, debug: bool | None = None) -> dict[str, Any]:
    """Return a uvicorn logging config using Utf8AccessFormatter."""
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "folio.logging_utils.Utf8AccessFormatter"
    verbose = _DEBUG_LOG if debug is None else debug
    if verbose:
        for logger in config.get("loggers", {}).values():
            if isinstance(logger, dict):
                logger["level"] = "DEBUG"
    return config


__all__ = [
    "Utf8AccessFormatter",
    "build_uvicorn_log_config",
    "debug_enabled",
    "debug_log",
    "set_debug_logging",
]
