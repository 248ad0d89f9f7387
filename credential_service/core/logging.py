"""Logging configuration for credential-service.

WHAT WE LOG, AND WHERE
------------------------
The interesting events in this service are not HTTP requests but the
cross-store steps behind them:

  - an issuance that uploaded a blob, then failed to commit on the ledger
    and had to unpin it again (compensation)
  - a verification that found the index and the ledger disagreeing
  - a rate limiter that lost its Redis and started failing open

Each of those is logged by the component that owns the step, at
WARNING or above, with the credential id attached.  Log lines from the
HTTP layer carry the request id, so one verification request can be
followed from the middleware down into the engine.

WHY TWO FORMATTERS
--------------------
  _ContainerFormatter: human-readable, single-line, for local dev.  The
    same context fields trail the message as key=value pairs, so
    `grep credential_id=...` follows one credential through issuance,
    reconciliation and verification.

  _JsonFormatter: machine-parseable, for production.  Log aggregation
    systems parse JSON natively, so fields such as credential_id or
    reason_code become filterable without regex:

      reason_code == "HASH_MISMATCH" AND credential_id == "..."

    Set LOG_JSON=true in production to switch to JSON output.
"""

from __future__ import annotations

import json
import logging
import sys


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter for container stdout.

    timestamp (ms), level, logger, message, then any context fields.
    WARNING+ also gets [filename:lineno]; a traceback, when present,
    follows on the next lines.
    """

    _LINE_FIELDS = ("request_id", "credential_id", "reason_code", "caller_key")

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)-8s %(name)s  %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        # .NNN goes before the +0000 offset
        return f"{base[:-5]}.{int(record.msecs):03d}{base[-5:]}"

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = " ".join(
            f"{key}={getattr(record, key)}"
            for key in self._LINE_FIELDS
            if getattr(record, key, None) is not None
        )
        if context:
            line = f"{line}  {context}"
        if record.levelno >= logging.WARNING:
            line = f"{line}  [{record.filename}:{record.lineno}]"
        return line


class _JsonFormatter(logging.Formatter):
    """JSON formatter for machine-parseable log output (one object per line).

    Context fields are attached either by the RequestContextMiddleware
    (request_id, method, path, status_code, duration_ms) or by the core
    components via ``extra=`` (credential_id, caller_key, reason_code).
    """

    _CONTEXT_FIELDS = (
        "request_id",
        "method",
        "path",
        "status_code",
        "duration_ms",
        "credential_id",
        "caller_key",
        "reason_code",
    )

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self._CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Route every logger to one stdout handler.

    ``level_name`` is a Settings.log_level string; unknown names mean INFO.
    ``json_format`` follows LOG_JSON.  Calling it again replaces the
    handler, it never stacks a second one.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Driver and server chatter stays at WARNING even when we debug.
    for name in (
        "uvicorn",
        "uvicorn.access",
        "uvicorn.error",
        "httpcore",
        "httpx",
        "sqlalchemy.engine",
    ):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
