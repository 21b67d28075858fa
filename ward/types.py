"""
Secure Ward - Workflow Type Definitions

Records, payload shapes, confidentiality states, agent roles and slots.
Records are copy-on-write: every mutation helper returns a new Record,
so a value read from a slot can never change underneath its reader.
"""

from __future__ import annotations

import dataclasses
import enum
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Union


# ─── Roles ──────────────────────────────────────────────────────────

class AgentRole(str, enum.Enum):
    """The six agents of the ward chain."""
    PATIENT = "PATIENT"
    GENERAL_DOCTOR = "GENERAL_DOCTOR"
    SPECIALIST = "SPECIALIST"
    MEDICAL_LAB = "MEDICAL_LAB"
    BILLING = "BILLING"
    HUMAN_DOCTOR = "HUMAN_DOCTOR"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, value: Any) -> AgentRole | None:
        """Lenient lookup: enum member, enum value, or display name."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        key = value.strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return cls(key)
        except ValueError:
            return None


# ─── Confidentiality ────────────────────────────────────────────────

class ConfidentialityState(str, enum.Enum):
    """Forward-only confidentiality lifecycle of a Record."""
    PLAINTEXT = "PLAINTEXT"
    CONFIDENTIAL = "CONFIDENTIAL"
    ANNOTATED = "ANNOTATED"
    REVEALED = "REVEALED"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    @property
    def is_locked(self) -> bool:
        return self in (ConfidentialityState.CONFIDENTIAL, ConfidentialityState.ANNOTATED)

    def can_advance_to(self, other: ConfidentialityState) -> bool:
        return other.rank >= self.rank


_STATE_ORDER = [
    ConfidentialityState.PLAINTEXT,
    ConfidentialityState.CONFIDENTIAL,
    ConfidentialityState.ANNOTATED,
    ConfidentialityState.REVEALED,
]


# ─── Payload shapes ─────────────────────────────────────────────────

class InvalidPayload(ValueError):
    """Payload values do not fit the Record's active shape."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Vitals:
    """Patient vitals. All fields numeric."""
    heart_rate: float       # bpm
    systolic: float         # mmHg
    diastolic: float        # mmHg
    temperature: float      # Celsius
    oxygen_sat: float       # %
    symptom_severity: float  # 0-100

    kind = "vitals"

    def values(self) -> dict[str, float]:
        return dataclasses.asdict(self)

    def amend(self, changes: dict[str, Any]) -> Vitals:
        """Return a copy with the given fields replaced (same shape only)."""
        normalized = {}
        for key, value in changes.items():
            name = _VITALS_ALIASES.get(key, key)
            if name not in _VITALS_FIELDS:
                raise InvalidPayload(f"unknown vitals field {key!r}")
            if not _is_number(value):
                raise InvalidPayload(f"vitals field {key!r} must be numeric, got {value!r}")
            normalized[name] = value
        return dataclasses.replace(self, **normalized)


_VITALS_FIELDS = {f.name for f in dataclasses.fields(Vitals)}
_VITALS_ALIASES = {
    "heartRate": "heart_rate",
    "oxygenSat": "oxygen_sat",
    "symptomSeverity": "symptom_severity",
}


@dataclass(frozen=True)
class Scalar:
    """A single generic numeric value."""
    value: float

    kind = "scalar"

    def values(self) -> dict[str, float]:
        return {"value": self.value}

    def amend(self, changes: dict[str, Any]) -> Scalar:
        unknown = set(changes) - {"value"}
        if unknown:
            raise InvalidPayload(f"unknown scalar field(s) {sorted(unknown)}")
        if "value" in changes and not _is_number(changes["value"]):
            raise InvalidPayload(f"scalar value must be numeric, got {changes['value']!r}")
        return dataclasses.replace(self, **changes)


Payload = Union[Vitals, Scalar]


def build_payload(raw: Any, default_vitals: dict[str, float]) -> Payload:
    """
    Build the admission payload.

    None → default vitals; a number → Scalar; a mapping → default vitals
    amended with the given fields. Anything else raises InvalidPayload.
    """
    base = Vitals(**default_vitals)
    if raw is None:
        return base
    if isinstance(raw, (Vitals, Scalar)):
        return raw
    if _is_number(raw):
        return Scalar(value=raw)
    if isinstance(raw, dict):
        if set(raw) == {"value"}:
            return Scalar(value=0).amend(raw)
        return base.amend(raw)
    raise InvalidPayload(f"unsupported payload {raw!r}")


# ─── Record ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Record:
    """
    The unit of clinical data flowing through the ward.

    charges is a read-only mapping in insertion order; total_charge is only
    set by the billing step; provenance only ever grows.
    """
    id: str
    payload: Payload
    state: ConfidentialityState = ConfidentialityState.PLAINTEXT
    provenance: tuple[str, ...] = ()
    charges: Mapping[str, float] = field(default_factory=dict)
    total_charge: float | None = None
    severity: float | None = None
    sealed_blob: str = ""

    def __post_init__(self):
        object.__setattr__(self, "charges", MappingProxyType(dict(self.charges)))

    @staticmethod
    def create(payload: Payload) -> Record:
        return Record(
            id=f"rec_{uuid.uuid4().hex[:12]}",
            payload=payload,
            provenance=("Created",),
        )

    def evolve(self, **changes: Any) -> Record:
        """Copy with changes; state may only move forward."""
        new_state = changes.get("state", self.state)
        if not self.state.can_advance_to(new_state):
            raise ValueError(
                f"Record {self.id}: {self.state.value} → {new_state.value} is a backward transition"
            )
        return dataclasses.replace(self, **changes)

    def with_milestone(self, milestone: str) -> Record:
        return self.evolve(provenance=self.provenance + (milestone,))

    def with_charge(self, agent_name: str, amount: float) -> Record:
        charges = dict(self.charges)
        charges[agent_name] = amount
        return self.evolve(charges=charges)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "payload_kind": self.payload.kind,
            "payload": self.payload.values(),
            "state": self.state.value,
            "provenance": list(self.provenance),
            "charges": dict(self.charges),
        }
        if self.total_charge is not None:
            data["total_charge"] = self.total_charge
        if self.severity is not None:
            data["severity"] = self.severity
        if self.sealed_blob:
            data["sealed_blob"] = self.sealed_blob
        return data


# ─── Slots ──────────────────────────────────────────────────────────

IDLE = "IDLE"
IN_FLIGHT_MARKER = "..."


@dataclass(frozen=True)
class Slot:
    """One agent's holding area: at most one Record plus a status line."""
    role: AgentRole
    record: Record | None = None
    status: str = IDLE

    @property
    def is_empty(self) -> bool:
        return self.record is None

    @property
    def is_busy(self) -> bool:
        """A transition is in flight (status ends with an ellipsis)."""
        return self.status.endswith(IN_FLIGHT_MARKER)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "status": self.status,
            "record": self.record.to_dict() if self.record else None,
        }
