"""
Secure Ward - Transition Engine

Validates and executes one (role, action[, target]) request at a time
against the slot registry, the held Record's confidentiality state and
the operation table.

Rules:
  - An action whose precondition fails is a no-op: no slot change, no
    audit entry, no exception. submit() returns an ignored
    TransitionResult carrying the reason.
  - Multi-step actions mark the issuing slot busy (status ending in
    "...") before their first await, so a second action against the same
    slot is ignored until the first commits.
  - Commit = registry writes + audit appends with no await in between.
    If a provider call raises, the issuing slot is restored to its exact
    prior value and the exception propagates; nothing is appended.
  - Chained follow-ups (`then:`) run only after the first step has
    committed, and are themselves subject to the same no-op rules.
"""

from __future__ import annotations

import copy
import dataclasses
import inspect
import json
import time
from dataclasses import dataclass
from typing import Any

from clinic.advisory import Advice, FallbackAdvisor, load_role_advisories
from clinic.audit import AuditEntry, AuditLog
from clinic.computation import ComputationResult, SimulatedComputationProvider
from clinic.config import get_config_value, load_config
from clinic.logging import StructuredLogger, get_logger
from ward.registry import SlotRegistry
from ward.routing import OperationSpec, RoutingConfigError, RoutingTable, load_routing_table
from ward.types import (
    IN_FLIGHT_MARKER,
    AgentRole,
    ConfidentialityState,
    InvalidPayload,
    Record,
    Slot,
    build_payload,
)

logger = get_logger("transitions")

DEFAULT_VITALS = {
    "heart_rate": 72,
    "systolic": 120,
    "diastolic": 80,
    "temperature": 36.6,
    "oxygen_sat": 98,
    "symptom_severity": 20,
}

# Action names used by earlier UI builds
ACTION_ALIASES = {
    "create_data": "admit",
    "encrypt": "lock",
    "decrypt": "unlock",
    "delegate": "forward",
    "inference": "compute",
}


# ─── Ignore reasons ─────────────────────────────────────────────────

UNKNOWN_ROLE = "unknown_role"
UNKNOWN_ACTION = "unknown_action"
ILLEGAL_TARGET = "illegal_target"
SLOT_EMPTY = "slot_empty"
SLOT_OCCUPIED = "slot_occupied"
SLOT_BUSY = "slot_busy"
WRONG_STATE = "wrong_state"
TARGET_OCCUPIED = "target_occupied"
TARGET_BUSY = "target_busy"
INVALID_PAYLOAD = "invalid_payload"
RUN_RESET = "run_reset"


class ComputationContractError(RuntimeError):
    """The computation provider returned a Record it was not allowed to produce."""


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one submitted action. Falsy when the action was ignored."""
    applied: bool
    role: str
    action: str
    reason: str = ""
    entries: tuple[AuditEntry, ...] = ()
    record_id: str | None = None
    chained: TransitionResult | None = None

    def __bool__(self) -> bool:
        return self.applied

    def all_entries(self) -> tuple[AuditEntry, ...]:
        if self.chained is None:
            return self.entries
        return self.entries + self.chained.all_entries()


class TransitionEngine:
    """
    Single mutator of the slot registry and the audit log.

    The upward surface is submit() plus the read-only queries slot(),
    slots(), entries(), snapshot(), facility() and available_operations(),
    and reset().
    """

    def __init__(
        self,
        routing: RoutingTable,
        computation,
        advisor,
        facility: dict[str, Any] | None = None,
        default_vitals: dict[str, float] | None = None,
        trace: StructuredLogger | None = None,
    ):
        self.routing = routing
        self.computation = computation
        self.advisor = advisor
        self._facility = copy.deepcopy(dict(facility or {}))
        self.default_vitals = dict(default_vitals or DEFAULT_VITALS)
        self._registry = SlotRegistry()
        self._audit = AuditLog()
        self._generation = 0
        self._trace = trace or StructuredLogger(facility=self._facility.get("uuid", ""))
        self._handlers = {
            "admit": self._admit,
            "amend": self._amend,
            "lock": self._compute,
            "compute": self._compute,
            "forward": self._forward,
            "unlock": self._unlock,
        }

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None, advisor=None,
                    computation=None) -> TransitionEngine:
        """Engine wired from a loaded ward config; offline advisor unless given one."""
        config = config if config is not None else load_config()
        routing = load_routing_table(config)
        advisories = load_role_advisories(config)
        missing = sorted(r.value for r in routing.advised_roles() if r.value not in advisories)
        if missing:
            raise RoutingConfigError(
                f"advisory.roles has no entry for {', '.join(missing)}, "
                f"whose operations set advise: true"
            )
        if advisor is None:
            advisor = FallbackAdvisor(advisories)
        if computation is None:
            computation = SimulatedComputationProvider(
                scheme=get_config_value("computation.scheme", config, "CKKS-sim"),
                poly_modulus_degree=int(get_config_value(
                    "computation.poly_modulus_degree", config, 8192)),
            )
        return cls(
            routing=routing,
            computation=computation,
            advisor=advisor,
            facility=config.get("facility", {}),
            default_vitals=get_config_value("admission.default_vitals", config, DEFAULT_VITALS),
        )

    # ── Read-only surface ───────────────────────────────────────

    @property
    def trace_id(self) -> str:
        return self._trace.trace_id

    def slot(self, role: AgentRole | str) -> Slot:
        parsed = AgentRole.parse(role)
        if parsed is None:
            raise KeyError(role)
        return self._registry.get(parsed)

    def slots(self) -> dict[AgentRole, Slot]:
        return self._registry.snapshot()

    def entries(self) -> tuple[AuditEntry, ...]:
        return self._audit.entries()

    def verify_audit(self) -> tuple[bool, str]:
        return self._audit.verify_chain()

    def facility(self) -> dict[str, Any]:
        return copy.deepcopy(self._facility)

    def available_operations(self, role: AgentRole | str) -> list[dict[str, Any]]:
        parsed = AgentRole.parse(role)
        if parsed is None:
            return []
        return [op.to_dict() for op in self.routing.operations(parsed)]

    @property
    def is_complete(self) -> bool:
        """The Patient slot holds a revealed, invoiced Record."""
        record = self._registry.get(AgentRole.PATIENT).record
        return (
            record is not None
            and record.state == ConfidentialityState.REVEALED
            and record.total_charge is not None
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "facility": self.facility(),
            "slots": {role.value: slot.to_dict() for role, slot in self.slots().items()},
            "audit_log": [e.to_dict() for e in self.entries()],
            "complete": self.is_complete,
        }

    def reset(self) -> None:
        """Clear every slot and the audit log; start a new run."""
        previous = self._trace.trace_id
        self._generation += 1
        self._registry.clear()
        self._audit = AuditLog()
        self._trace = self._trace.renew()
        self._trace.on_run_reset(previous)

    # ── Entry point ─────────────────────────────────────────────

    async def submit(
        self,
        role: AgentRole | str,
        action: str,
        payload: Any = None,
        target: AgentRole | str | None = None,
    ) -> TransitionResult:
        """Validate and execute one action. Never raises for invalid input."""
        action_name = str(action).strip().lower()
        action_name = ACTION_ALIASES.get(action_name, action_name)
        issuing = AgentRole.parse(role)
        target_role = AgentRole.parse(target) if target is not None else None
        role_name = issuing.value if issuing else str(role)
        self._trace.on_action_received(
            role_name, action_name, target_role.value if target_role else target)

        if issuing is None or issuing not in self.routing:
            return self._ignore(role_name, action_name, UNKNOWN_ROLE)
        if target is not None and target_role is None:
            return self._ignore(role_name, action_name, ILLEGAL_TARGET)

        spec = self.routing.find(issuing, action_name, target_role)
        if spec is None:
            reason = ILLEGAL_TARGET if self.routing.knows_action(issuing, action_name) else UNKNOWN_ACTION
            return self._ignore(role_name, action_name, reason)

        return await self._run(spec, payload)

    async def _run(self, spec: OperationSpec, payload: Any = None) -> TransitionResult:
        slot = self._registry.get(spec.role)
        if slot.is_busy:
            return self._ignore(spec.role.value, spec.action, SLOT_BUSY)

        result = await self._handlers[spec.action](spec, slot, payload)
        if result.applied and spec.then is not None:
            chained = await self._run(spec.then)
            result = dataclasses.replace(result, chained=chained)
        return result

    # ── Handlers ────────────────────────────────────────────────

    async def _admit(self, spec: OperationSpec, slot: Slot, payload: Any) -> TransitionResult:
        if slot.record is not None:
            return self._ignore(spec.role.value, spec.action, SLOT_OCCUPIED)
        try:
            record = Record.create(build_payload(payload, self.default_vitals))
        except (InvalidPayload, TypeError):
            return self._ignore(spec.role.value, spec.action, INVALID_PAYLOAD)

        return self._commit(
            spec, record,
            writes=[(spec.role, record, spec.done_status or slot.status)],
            audit=[dict(details=spec.render_details() or "Record created.")],
        )

    async def _amend(self, spec: OperationSpec, slot: Slot, payload: Any) -> TransitionResult:
        reason = self._check_holding(spec, slot)
        if reason:
            return self._ignore(spec.role.value, spec.action, reason)
        if not isinstance(payload, dict) or not payload:
            return self._ignore(spec.role.value, spec.action, INVALID_PAYLOAD)
        try:
            amended = slot.record.payload.amend(payload)
        except InvalidPayload:
            return self._ignore(spec.role.value, spec.action, INVALID_PAYLOAD)

        record = slot.record.evolve(payload=amended).with_milestone(
            f"{spec.role.display_name}: amended {', '.join(sorted(payload))}")
        return self._commit(
            spec, record,
            writes=[(spec.role, record, spec.done_status or slot.status)],
            audit=[dict(details=spec.render_details(), metrics=amended.values())],
        )

    async def _compute(self, spec: OperationSpec, slot: Slot, payload: Any = None) -> TransitionResult:
        reason = self._check_holding(spec, slot)
        if reason:
            return self._ignore(spec.role.value, spec.action, reason)

        generation = self._mark_busy(spec, slot)
        record = slot.record
        advice = None
        try:
            if spec.advise:
                advice = await self._advise(spec.role, record)
                record = self._merge_advice(spec.role, record, advice)
            result = await self._transform(spec.operation, record)
            updated = self._accept(record, result, spec)
        except BaseException:
            self._restore(slot, generation)
            raise

        if generation != self._generation:
            return self._ignore(spec.role.value, spec.action, RUN_RESET)

        updated = updated.with_milestone(f"{spec.role.display_name}: {spec.label}")
        metrics = dict(result.metrics)
        if advice is not None:
            metrics["charge"] = advice.amount
            if advice.annotation is not None:
                metrics["severity"] = advice.annotation
            if advice.findings:
                metrics["biomarkers"] = json.dumps(advice.findings, sort_keys=True)

        return self._commit(
            spec, updated,
            writes=[(spec.role, updated, spec.done_status or "Done")],
            audit=[dict(
                details=result.description,
                metrics=metrics,
                formula=result.formula,
                derivation_steps=result.derivation_steps or None,
            )],
        )

    async def _forward(self, spec: OperationSpec, slot: Slot, payload: Any = None) -> TransitionResult:
        reason = self._check_holding(spec, slot) or self._check_target(spec)
        if reason:
            return self._ignore(spec.role.value, spec.action, reason)

        record = slot.record
        if spec.advise:
            generation = self._mark_busy(spec, slot)
            try:
                advice = await self._advise(spec.role, record)
            except BaseException:
                self._restore(slot, generation)
                raise
            if generation != self._generation:
                return self._ignore(spec.role.value, spec.action, RUN_RESET)
            reason = self._check_target(spec)
            if reason:
                self._restore(slot, generation)
                return self._ignore(spec.role.value, spec.action, reason)
            record = self._merge_advice(spec.role, record, advice)

        record = record.with_milestone(
            f"Forwarded by {spec.role.display_name} to {spec.target.display_name}")
        return self._commit(
            spec, record,
            # Source first: a Record is never held by two slots
            writes=[
                (spec.role, None, spec.done_status or "Sent"),
                (spec.target, record, spec.target_status or "Received"),
            ],
            audit=[dict(details=spec.render_details()
                        or f"Forwarding case to {spec.target.display_name}.")],
        )

    async def _unlock(self, spec: OperationSpec, slot: Slot, payload: Any = None) -> TransitionResult:
        reason = self._check_holding(spec, slot)
        if reason:
            return self._ignore(spec.role.value, spec.action, reason)

        record = slot.record.evolve(
            state=spec.result_state or ConfidentialityState.REVEALED,
        ).with_milestone(f"Revealed to {spec.role.display_name}")
        details = f"{spec.render_details()} Results: {json.dumps(record.payload.values())}.".strip()
        metrics = None
        if record.total_charge is not None:
            metrics = {"total_charge": record.total_charge}

        result = self._commit(
            spec, record,
            writes=[(spec.role, record, spec.done_status or "Complete")],
            audit=[dict(details=details, metrics=metrics)],
        )
        if record.total_charge is not None:
            self._trace.on_run_complete(record.id, record.total_charge)
        return result

    # ── Helpers ─────────────────────────────────────────────────

    def _check_holding(self, spec: OperationSpec, slot: Slot) -> str | None:
        if slot.record is None:
            return SLOT_EMPTY
        if not spec.accepts_state(slot.record.state):
            return WRONG_STATE
        return None

    def _check_target(self, spec: OperationSpec) -> str | None:
        target = self._registry.get(spec.target)
        if target.is_busy:
            return TARGET_BUSY
        if target.record is not None:
            return TARGET_OCCUPIED
        return None

    def _mark_busy(self, spec: OperationSpec, slot: Slot) -> int:
        status = spec.busy_status or spec.label
        if not status.endswith(IN_FLIGHT_MARKER):
            status += IN_FLIGHT_MARKER
        self._registry.set(spec.role, slot.record, status)
        return self._generation

    def _restore(self, slot: Slot, generation: int) -> None:
        if generation == self._generation:
            self._registry.set(slot.role, slot.record, slot.status)

    async def _advise(self, role: AgentRole, record: Record) -> Advice:
        start = time.monotonic()
        advice = await self.advisor.advise(
            role.value, record.payload.values(), {"severity": record.severity})
        self._trace.on_advisory_complete(
            role.value, advice.amount, advice.fallback, time.monotonic() - start)
        if advice.error:
            self._trace.on_advisory_fallback(role.value, advice.error)
        return advice

    def _merge_advice(self, role: AgentRole, record: Record, advice: Advice) -> Record:
        record = record.with_charge(self.routing.charge_label(role), advice.amount)
        if advice.annotation is not None:
            record = record.evolve(severity=advice.annotation)
        return record

    async def _transform(self, operation: str, record: Record) -> ComputationResult:
        result = self.computation.transform(operation, record)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _accept(self, original: Record, result: ComputationResult, spec: OperationSpec) -> Record:
        updated = result.record
        if (
            updated.id != original.id
            or updated.payload.kind != original.payload.kind
            or updated.provenance[:len(original.provenance)] != original.provenance
            or updated.charges != original.charges
            or updated.state.rank < original.state.rank
        ):
            raise ComputationContractError(
                f"{spec.operation} returned a Record that changes identity, shape, "
                f"provenance, charges or state order of {original.id}"
            )
        if spec.result_state and spec.result_state.rank > updated.state.rank:
            updated = updated.evolve(state=spec.result_state)
        return updated

    def _commit(
        self,
        spec: OperationSpec,
        record: Record,
        writes: list[tuple[AgentRole, Record | None, str]],
        audit: list[dict[str, Any]],
    ) -> TransitionResult:
        for role, held, status in writes:
            self._registry.set(role, held, status)
        entries = tuple(
            self._audit.append(
                source=spec.role.value,
                action=spec.audit_action,
                record_id=record.id,
                **fields,
            )
            for fields in audit
        )
        self._trace.on_transition_applied(
            spec.role.value, spec.action, spec.audit_action, record.id, record.state.value)
        return TransitionResult(
            applied=True,
            role=spec.role.value,
            action=spec.action,
            entries=entries,
            record_id=record.id,
        )

    def _ignore(self, role: str, action: str, reason: str) -> TransitionResult:
        self._trace.on_action_ignored(role, action, reason)
        return TransitionResult(applied=False, role=role, action=action, reason=reason)
