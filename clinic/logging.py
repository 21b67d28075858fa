"""
Secure Ward - Structured Logging with Run Correlation

Emits one JSON line per workflow event. Every entry carries the trace_id
of the workflow run that produced it, so a whole admission-to-invoice run
can be reconstructed from the log stream alone.

Design decisions:
  - Transport: Python logging with JSON formatter
  - Schema: OTel-compatible field names (trace_id, service.name)
  - Ignored actions are DEBUG only; applied transitions are INFO

Usage:
    from clinic.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    log = StructuredLogger(facility="st-zama-hospital-001")
    log.on_transition_applied("SPECIALIST", "compute", "DIAGNOSIS", "abc123")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


ROOT_LOGGER = "secure_ward"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("WARD_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the secure_ward logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for secure_ward
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the secure_ward namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Run-scoped structured logger used by the transition engine.

    One instance per workflow run; reset() on the engine starts a new
    trace_id via renew().
    """

    def __init__(self, facility: str = "", trace_id: str | None = None):
        self.facility = facility
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("workflow")

    def renew(self) -> StructuredLogger:
        """Logger for the next run at the same facility."""
        return StructuredLogger(facility=self.facility)

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "trace_id": self.trace_id,
            "facility": self.facility,
            "action": action,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Engine events ───────────────────────────────────────────

    def on_action_received(self, role: str, action: str, target: str | None) -> None:
        self._emit(logging.DEBUG, "action_received",
                   role=role, requested=action, target=target)

    def on_action_ignored(self, role: str, action: str, reason: str) -> None:
        self._emit(logging.DEBUG, "action_ignored",
                   role=role, requested=action, reason=reason)

    def on_transition_applied(
        self,
        role: str,
        action: str,
        audit_action: str,
        record_id: str,
        state: str = "",
    ) -> None:
        self._emit(
            logging.INFO, "transition_applied",
            role=role,
            requested=action,
            audit_action=audit_action,
            record_id=record_id,
            state=state,
        )

    def on_advisory_complete(self, role: str, amount: float, fallback: bool,
                             elapsed: float) -> None:
        self._emit(
            logging.INFO, "advisory_complete",
            role=role,
            amount=amount,
            fallback=fallback,
            latency_ms=round(elapsed * 1000, 1),
        )

    def on_advisory_fallback(self, role: str, error: str) -> None:
        self._emit(logging.WARNING, "advisory_fallback",
                   role=role, error=error[:500])

    def on_run_complete(self, record_id: str, total_charge: float) -> None:
        self._emit(logging.INFO, "run_complete",
                   record_id=record_id, total_charge=total_charge)

    def on_run_reset(self, previous_trace_id: str) -> None:
        self._emit(logging.INFO, "run_reset",
                   previous_trace_id=previous_trace_id)
