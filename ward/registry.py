"""
Secure Ward - Agent Slot Registry

Six named slots, one per agent role. The registry is the only shared
mutable state of a workflow run; the transition engine is its only
writer.

set() is a full replace of one slot. It refuses a Record whose id is
already held by a different slot, so a forward must clear its source
before filling its target.
"""

from __future__ import annotations

import threading

from ward.types import IDLE, AgentRole, Record, Slot


class SlotConflict(RuntimeError):
    """A Record would be held by two slots at once."""


class SlotRegistry:

    def __init__(self):
        self._lock = threading.Lock()
        self._slots: dict[AgentRole, Slot] = {role: Slot(role) for role in AgentRole}

    def get(self, role: AgentRole) -> Slot:
        with self._lock:
            return self._slots[role]

    def set(self, role: AgentRole, record: Record | None, status: str) -> Slot:
        with self._lock:
            if record is not None:
                for other, slot in self._slots.items():
                    if other != role and slot.record is not None and slot.record.id == record.id:
                        raise SlotConflict(
                            f"Record {record.id} is already held by {other.value}"
                        )
            slot = Slot(role=role, record=record, status=status)
            self._slots[role] = slot
            return slot

    def snapshot(self) -> dict[AgentRole, Slot]:
        with self._lock:
            return dict(self._slots)

    def holder_of(self, record_id: str) -> AgentRole | None:
        with self._lock:
            for role, slot in self._slots.items():
                if slot.record is not None and slot.record.id == record_id:
                    return role
        return None

    def clear(self) -> None:
        with self._lock:
            self._slots = {role: Slot(role, None, IDLE) for role in AgentRole}
