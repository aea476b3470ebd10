# mayday/infra/logging_config.py
import json
import logging
import sys
from datetime import datetime, timezone

# Record attributes that travel with dispatch and notification log lines
CONTEXT_FIELDS = ("dispatch_id", "notification_id", "officer_id", "jurisdiction", "audit_action")

_SHORT_IDS = ("dispatch_id", "notification_id")


def _context(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for production log shipping"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
            **_context(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for development"""

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
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        parts = []
        for name, value in _context(record).items():
            label = name.removesuffix("_id")
            parts.append(f"{label}={str(value)[:8] if name in _SHORT_IDS else value}")
        context = f" [{' '.join(parts)}]" if parts else ""

        line = f"{color}[{stamp}] {record.levelname:8}{self.RESET} {record.name}{context} - {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: JSON lines (production) instead of the console format
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    for noisy, noisy_level in (
        ("uvicorn.access", logging.WARNING),
        ("twilio.http_client", logging.WARNING),
        ("asyncio", logging.WARNING),
    ):
        logging.getLogger(noisy).setLevel(noisy_level)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext(logging.LoggerAdapter):
    """Logger that stamps every record with dispatch context (ids, jurisdiction)"""

    def __init__(self, logger: logging.Logger, **context):
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def mask_address(address: str | None) -> str:
    """Mask a phone number or email for logging: +13045550123 -> +130***0123"""
    if not address:
        return "***"
    clean = address.strip()
    if "@" in clean:
        local, _, domain = clean.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(clean) <= 6:
        return "***"
    return f"{clean[:4]}***{clean[-4:]}"
