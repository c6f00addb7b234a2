# app/infra/logging_config.py
"""
Logging setup: JSON lines in production, colored console lines elsewhere.

Dispatch code logs through ``LogContext`` so every record carries the
cycle / recipient / notification / request it belongs to.
"""
import logging
import sys
import json
from datetime import datetime, timezone


CONTEXT_FIELDS = ("cycle_id", "recipient_id", "notification_id", "request_id")

# Console shows a short prefix of long ids
_CONSOLE_FIELDS = (("cycle_id", "cycle", None), ("recipient_id", "recipient", 8), ("notification_id", "notification", 8))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _utc_now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})

        # Per-cycle structured summary
        if hasattr(record, "summary"):
            entry["summary"] = record.summary

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line format for development"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)

        parts = []
        for attr, label, width in _CONSOLE_FIELDS:
            if hasattr(record, attr):
                value = str(getattr(record, attr))
                parts.append(f"{label}={value[:width] if width else value}")
        context = f" [{' '.join(parts)}]" if parts else ""

        line = (
            f"{color}[{_utc_now():%Y-%m-%d %H:%M:%S}] {record.levelname:8}{self.RESET} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Replace root handlers with a single stdout handler.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        use_json: JSON lines (production) instead of the console format
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    # Third-party chatter
    for name, lib_level in (
        ("uvicorn.access", logging.WARNING),
        ("uvicorn.error", logging.INFO),
        ("google", logging.WARNING),
        ("urllib3", logging.WARNING),
    ):
        logging.getLogger(name).setLevel(lib_level)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext(logging.LoggerAdapter):
    """
    Logger adapter that stamps dispatch context onto every record.

        log = LogContext(logger, cycle_id=summary.cycle_id)
        log.bind(recipient_id=rid).warning("...")

    ``None`` values are dropped, so optional ids can be passed through as-is.
    Extra fields given per call are kept; bound context wins on conflicts.
    """

    def __init__(
            self,
            logger: logging.Logger,
            cycle_id: str | None = None,
            recipient_id: str | None = None,
            notification_id: str | None = None,
            request_id: str | None = None,
    ):
        fields = {
            "cycle_id": cycle_id,
            "recipient_id": recipient_id,
            "notification_id": notification_id,
            "request_id": request_id,
        }
        super().__init__(logger, {k: v for k, v in fields.items() if v is not None})

    @property
    def context(self) -> dict:
        return dict(self.extra)

    def bind(self, **context: str | None) -> "LogContext":
        """New adapter with ``context`` layered over the current fields"""
        layered = {k: v for k, v in context.items() if v is not None}
        return LogContext(self.logger, **{**self.extra, **layered})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs


def mask_token(token: str) -> str:
    """Mask a push registration token for logging.

    Example: ``mask_token("dQw4w9WgXcQ:APA91b...Zx9")`` → ``"dQw4w9****Zx9"``

    FCM tokens are bearer credentials for a device; only a short
    prefix and suffix are kept, enough to correlate log lines.
    """
    if len(token) <= 10:
        return "****"
    return f"{token[:6]}****{token[-3:]}"
