from __future__ import annotations

import logging
from contextvars import ContextVar


_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

LOG_FORMAT = "%(levelname)s %(name)s request_id=%(request_id)s: %(message)s"


def set_request_id(value: str | None) -> None:
    _request_id.set(value)


def get_request_id() -> str | None:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Stamps every record with the id of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = get_request_id() or "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    """
    One stderr handler for the bilvo.* loggers. Safe to call more than once.
    """
    root = logging.getLogger("bilvo")
    root.setLevel((level or "INFO").upper())
    if any(getattr(h, "_bilvo", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler._bilvo = True  # type: ignore[attr-defined]
    root.addHandler(handler)
