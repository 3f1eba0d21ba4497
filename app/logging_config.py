"""JSON logging for SatiZap API.

Every record is one JSON line. Structured context travels in
``extra={"context": {...}}``; patient documents and directory credentials
in that context are masked before the line is written.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "satizap-api"

REDACTED_KEYS = frozenset({"cpf", "responsible_cpf", "password", "api_key", "authorization"})

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "***" if str(k).lower() in REDACTED_KEYS and v else redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = redact(context)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route everything through a single stdout handler emitting JSON lines."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"satizap.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Carries a fixed context (tenant, phone, session) into every record.

    A per-call ``context=`` kwarg is merged on top of the bound one.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        merged = {**(self.extra or {}), **(kwargs.pop("context", None) or {})}
        if merged:
            kwargs["extra"] = {"context": merged}
        return msg, kwargs
