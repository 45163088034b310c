# sitesync/telemetry/logging.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Dict, Mapping, MutableMapping, Optional, Tuple

# ------------------------------- JSON utilities -------------------------------


def _iso8601(dt: datetime) -> str:
    # Always UTC, explicit trailing 'Z'
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


_JSON_SAFE_PRIMITIVES = (str, int, float, bool, type(None))


def _json_sanitize(value: Any) -> Any:
    """
    Best-effort JSON sanitizer for log payloads:
    - Pass through JSON-safe primitives
    - Convert bytes to utf-8 (errors replaced)
    - Convert datetimes to ISO8601
    - Fallback to str(value)
    """
    if isinstance(value, _JSON_SAFE_PRIMITIVES):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        return _iso8601(value)
    if isinstance(value, Mapping):
        return {str(k): _json_sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_sanitize(v) for v in value]
    return str(value)


# Standard LogRecord attributes to exclude from "extra"
_STD_KEYS: Tuple[str, ...] = (
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
)


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: v
        for k, v in record.__dict__.items()
        if k not in _STD_KEYS and not k.startswith("_")
    }


# ------------------------------ Formatters ------------------------------------


class JsonFormatter(logging.Formatter):
    """
    Minimal JSON formatter with stable keys. Ensures all fields are
    JSON-serializable and line-oriented.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _iso8601(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = _extra_fields(record)
        if extra:
            payload.update(_json_sanitize(extra))

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human oriented single line format; bound context is appended as key=value."""

    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = _extra_fields(record)
        if extra:
            ctx = " ".join(f"{k}={_json_sanitize(v)}" for k, v in sorted(extra.items()))
            line = f"{line} [{ctx}]"
        return line


# ------------------------------ Logger helpers --------------------------------


_handler: Optional[logging.Handler] = None


def resolve_level(level: int | str = "INFO", *, quiet: bool = False, verbose: bool = False) -> int:
    """Verbose wins over quiet; otherwise fall back to the configured level."""
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def configure_logging(
    level: int | str = "INFO",
    fmt: str = "text",
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """
    Root logger setup writing to stdout. Calling it again replaces the handler
    installed by the previous call, so there is never more than one.
    """
    global _handler

    root = logging.getLogger()
    root.setLevel(resolve_level(level))

    if _handler is not None:
        root.removeHandler(_handler)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())
    root.addHandler(handler)
    _handler = handler
    return handler


class ContextAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """
    Bind static context (e.g., site, cmd) to a logger, ensuring those
    keys appear on every log line via the 'extra' mechanism.
    """

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        super().__init__(logger, dict(extra or {}))

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        # Merge adapter's context with per-call extra (if any)
        merged_extra: Dict[str, Any] = {}
        call_extra = kwargs.get("extra")
        if isinstance(call_extra, Mapping):
            merged_extra.update(dict(call_extra))
        for k, v in (self.extra or {}).items():
            merged_extra.setdefault(k, v)
        kwargs["extra"] = merged_extra
        return msg, kwargs


def bind(logger: logging.Logger | None = None, **context: Any) -> ContextAdapter:
    """
    Return a LoggerAdapter with bound context.

        log = bind(logging.getLogger(__name__), cmd="sync")
        log.info("started")

    If logger is None, the root logger is used.
    """
    base = logger or logging.getLogger()
    return ContextAdapter(base, context)


__all__ = [
    "ContextAdapter",
    "JsonFormatter",
    "TextFormatter",
    "bind",
    "configure_logging",
    "resolve_level",
]
