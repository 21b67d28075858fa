"""
Secure Ward - Append-Only Audit Log

In-memory event log that records every applied transition of a workflow
run, in the order the transitions' sub-steps completed.

Features:
  - Append-only: no update, no delete exposed
  - SHA-256 hash chain: each entry's integrity tag covers the previous tag
  - Tamper detection: verify_chain() recomputes every tag on demand

The log is unbounded; a caller that needs bounded memory must wrap it.

Usage:
    log = AuditLog()
    log.append("SPECIALIST", "DIAGNOSIS", "Severity estimated", metrics={...})
    entries = log.entries()
    ok, message = log.verify_chain()
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger("secure_ward.audit")


# ═══════════════════════════════════════════════════════════════════
# Audit Entry
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuditEntry:
    """A single immutable audit log entry."""
    id: str
    sequence: int
    timestamp: float
    source: str
    action: str
    details: str
    integrity_tag: str
    previous_tag: str
    metrics: Mapping[str, Any] | None = None
    formula: str | None = None
    derivation_steps: tuple[str, ...] | None = None
    record_id: str | None = field(default=None, compare=False)

    @property
    def iso_timestamp(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "sequence": self.sequence,
            "timestamp": self.iso_timestamp,
            "source": self.source,
            "action": self.action,
            "details": self.details,
            "integrity_tag": self.integrity_tag,
        }
        if self.metrics is not None:
            data["metrics"] = dict(self.metrics)
        if self.formula is not None:
            data["formula"] = self.formula
        if self.derivation_steps is not None:
            data["derivation_steps"] = list(self.derivation_steps)
        if self.record_id is not None:
            data["record_id"] = self.record_id
        return data


# ═══════════════════════════════════════════════════════════════════
# Hash Chain
# ═══════════════════════════════════════════════════════════════════

GENESIS_TAG = "0" * 64


def compute_integrity_tag(previous_tag: str, entry_id: str, sequence: int,
                          timestamp: float, content_json: str) -> str:
    """Compute the SHA-256 integrity tag for an audit entry."""
    content = f"{previous_tag}|{entry_id}|{sequence}|{timestamp}|{content_json}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _content_json(source: str, action: str, details: str,
                  metrics: Mapping[str, Any] | None, formula: str | None,
                  derivation_steps: tuple[str, ...] | None) -> str:
    return json.dumps(
        {
            "source": source,
            "action": action,
            "details": details,
            "metrics": dict(metrics) if metrics is not None else None,
            "formula": formula,
            "derivation_steps": list(derivation_steps) if derivation_steps is not None else None,
        },
        sort_keys=True,
        default=str,
    )


# ═══════════════════════════════════════════════════════════════════
# Audit Log
# ═══════════════════════════════════════════════════════════════════

class AuditLog:
    """Append-only, ordered, in-memory audit log with hash-chain integrity."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: list[AuditEntry] = []
        self._last_timestamp = 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self.entries())

    def _next_timestamp(self) -> float:
        # Wall clock, nudged so timestamps never go backwards within a run
        now = time.time()
        if now <= self._last_timestamp:
            now = self._last_timestamp + 1e-6
        self._last_timestamp = now
        return now

    def append(
        self,
        source: str,
        action: str,
        details: str,
        metrics: Mapping[str, Any] | None = None,
        formula: str | None = None,
        derivation_steps: list[str] | tuple[str, ...] | None = None,
        record_id: str | None = None,
    ) -> AuditEntry:
        """Append one entry. Never fails, never reorders prior entries."""
        steps = tuple(derivation_steps) if derivation_steps is not None else None
        frozen_metrics = MappingProxyType(dict(metrics)) if metrics is not None else None

        with self._lock:
            sequence = len(self._entries) + 1
            entry_id = uuid.uuid4().hex
            timestamp = self._next_timestamp()
            previous_tag = self._entries[-1].integrity_tag if self._entries else GENESIS_TAG
            tag = compute_integrity_tag(
                previous_tag, entry_id, sequence, timestamp,
                _content_json(source, action, details, frozen_metrics, formula, steps),
            )
            entry = AuditEntry(
                id=entry_id,
                sequence=sequence,
                timestamp=timestamp,
                source=source,
                action=action,
                details=details,
                integrity_tag=tag,
                previous_tag=previous_tag,
                metrics=frozen_metrics,
                formula=formula,
                derivation_steps=steps,
                record_id=record_id,
            )
            self._entries.append(entry)

        logger.debug("audit append #%d %s/%s", sequence, source, action)
        return entry

    # ── Query Methods ───────────────────────────────────────────

    def entries(self) -> tuple[AuditEntry, ...]:
        """Snapshot of all entries in append order."""
        with self._lock:
            return tuple(self._entries)

    def by_source(self, source: str) -> list[AuditEntry]:
        return [e for e in self.entries() if e.source == source]

    def by_action(self, action: str) -> list[AuditEntry]:
        return [e for e in self.entries() if e.action == action]

    def last(self) -> AuditEntry | None:
        with self._lock:
            return self._entries[-1] if self._entries else None

    # ── Integrity Verification ──────────────────────────────────

    def verify_chain(self) -> tuple[bool, str]:
        """
        Recompute every integrity tag and check the chain linkage.

        Returns (is_valid, message).
        """
        entries = self.entries()
        if not entries:
            return True, "Empty log, nothing to verify"

        expected_prev = GENESIS_TAG
        for entry in entries:
            if entry.previous_tag != expected_prev:
                return False, (
                    f"Chain broken at entry {entry.sequence}: "
                    f"expected previous_tag={expected_prev[:16]}..., "
                    f"got {entry.previous_tag[:16]}..."
                )
            computed = compute_integrity_tag(
                entry.previous_tag, entry.id, entry.sequence, entry.timestamp,
                _content_json(entry.source, entry.action, entry.details,
                              entry.metrics, entry.formula, entry.derivation_steps),
            )
            if computed != entry.integrity_tag:
                return False, (
                    f"Tampered entry {entry.sequence}: "
                    f"computed tag={computed[:16]}..., "
                    f"stored tag={entry.integrity_tag[:16]}..."
                )
            expected_prev = entry.integrity_tag

        return True, f"Chain verified: {len(entries)} entries, integrity intact"
