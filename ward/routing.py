"""
Secure Ward - Operation Table

Turns the `roles:` section of the ward config into immutable lookup
structures. The transition engine asks one question of this module:
"which operation, if any, does (role, action, target) name?" Everything
a role may do, and where it may send a Record, lives in the table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ward.types import AgentRole, ConfidentialityState


ACTIONS = ("admit", "amend", "lock", "unlock", "forward", "compute")


class RoutingConfigError(ValueError):
    """The operation table is malformed."""


@dataclass(frozen=True)
class OperationSpec:
    """One legal (role, action[, target]) entry of the table."""
    role: AgentRole
    action: str
    target: AgentRole | None = None
    label: str = ""
    description: str = ""
    requires: frozenset[ConfidentialityState] = frozenset()
    advise: bool = False
    operation: str | None = None
    result_state: ConfidentialityState | None = None
    audit_action: str = ""
    details: str = ""
    busy_status: str = ""
    done_status: str = ""
    target_status: str = ""
    then: OperationSpec | None = None

    def accepts_state(self, state: ConfidentialityState) -> bool:
        return not self.requires or state in self.requires

    def render_details(self) -> str:
        target = self.target.display_name if self.target else ""
        return self.details.format(target=target)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "action": self.action,
            "label": self.label,
            "description": self.description,
        }
        if self.target:
            data["target"] = self.target.value
        if self.operation:
            data["operation"] = self.operation
        if self.then:
            data["then"] = self.then.to_dict()
        return data


@dataclass(frozen=True)
class RoleSpec:
    role: AgentRole
    charge_label: str
    operations: tuple[OperationSpec, ...] = field(default_factory=tuple)


class RoutingTable:
    """Per-role legal-operation lookup."""

    def __init__(self, roles: dict[AgentRole, RoleSpec]):
        self._roles = roles

    def __contains__(self, role: AgentRole) -> bool:
        return role in self._roles

    def role(self, role: AgentRole) -> RoleSpec | None:
        return self._roles.get(role)

    def charge_label(self, role: AgentRole) -> str:
        spec = self._roles.get(role)
        return spec.charge_label if spec else role.display_name

    def operations(self, role: AgentRole) -> tuple[OperationSpec, ...]:
        spec = self._roles.get(role)
        return spec.operations if spec else ()

    def knows_action(self, role: AgentRole, action: str) -> bool:
        return any(op.action == action for op in self.operations(role))

    def find(self, role: AgentRole, action: str, target: AgentRole | None = None) -> OperationSpec | None:
        """
        Look up the operation named by (role, action, target).

        Forward entries must match the target exactly; for every other
        action the target is ignored.
        """
        for op in self.operations(role):
            if op.action != action:
                continue
            if action == "forward" and op.target != target:
                continue
            return op
        return None

    def legal_targets(self, role: AgentRole) -> list[AgentRole]:
        return [op.target for op in self.operations(role)
                if op.action == "forward" and op.target is not None]

    def advised_roles(self) -> set[AgentRole]:
        """Roles with at least one operation (or chained step) that asks for advice."""
        roles = set()
        for spec in self._roles.values():
            for op in spec.operations:
                step: OperationSpec | None = op
                while step is not None:
                    if step.advise:
                        roles.add(spec.role)
                    step = step.then
        return roles


# ═══════════════════════════════════════════════════════════════════
# Loading
# ═══════════════════════════════════════════════════════════════════

def _role(value: Any, where: str) -> AgentRole:
    role = AgentRole.parse(value)
    if role is None:
        raise RoutingConfigError(f"{where}: unknown role {value!r}")
    return role


def _state(value: Any, where: str) -> ConfidentialityState:
    try:
        return ConfidentialityState(str(value).upper())
    except ValueError:
        raise RoutingConfigError(f"{where}: unknown confidentiality state {value!r}") from None


def _operation(role: AgentRole, raw: dict[str, Any], where: str, chained: bool = False) -> OperationSpec:
    action = raw.get("action")
    if action not in ACTIONS:
        raise RoutingConfigError(f"{where}: unknown action {action!r}")
    if chained and action != "forward":
        raise RoutingConfigError(f"{where}: chained steps must be forwards, got {action!r}")

    target = raw.get("target")
    target_role = _role(target, where) if target is not None else None
    if action == "forward" and target_role is None:
        raise RoutingConfigError(f"{where}: forward needs a target")
    if target_role == role:
        raise RoutingConfigError(f"{where}: {role.value} cannot forward to itself")
    if action in ("lock", "compute") and not raw.get("operation"):
        raise RoutingConfigError(f"{where}: {action} needs an operation")

    then = None
    if raw.get("then"):
        then = _operation(role, raw["then"], f"{where}.then", chained=True)

    return OperationSpec(
        role=role,
        action=action,
        target=target_role,
        label=raw.get("label", action.title()),
        description=raw.get("description", ""),
        requires=frozenset(_state(s, where) for s in raw.get("requires", []) or []),
        advise=bool(raw.get("advise", False)),
        operation=raw.get("operation"),
        result_state=_state(raw["result_state"], where) if raw.get("result_state") else None,
        audit_action=raw.get("audit_action", action.upper()),
        details=raw.get("details", ""),
        busy_status=raw.get("busy_status", ""),
        done_status=raw.get("done_status", ""),
        target_status=raw.get("target_status", ""),
        then=then,
    )


def load_routing_table(config: dict[str, Any]) -> RoutingTable:
    """
    Build a RoutingTable from config["roles"].

    Raises RoutingConfigError on unknown roles, actions or states, on
    forwards without a target, and on targets that have no table entry.
    """
    raw_roles = config.get("roles") or {}
    if not raw_roles:
        raise RoutingConfigError("config has no roles table")

    roles: dict[AgentRole, RoleSpec] = {}
    for key, raw in raw_roles.items():
        role = _role(key, f"roles.{key}")
        ops = tuple(
            _operation(role, op, f"roles.{key}.operations[{i}]")
            for i, op in enumerate((raw or {}).get("operations", []) or [])
        )
        roles[role] = RoleSpec(
            role=role,
            charge_label=(raw or {}).get("charge_label", role.display_name),
            operations=ops,
        )

    for spec in roles.values():
        for op in spec.operations:
            step: OperationSpec | None = op
            while step is not None:
                if step.target is not None and step.target not in roles:
                    raise RoutingConfigError(
                        f"roles.{spec.role.value}: target {step.target.value} has no table entry"
                    )
                step = step.then

    return RoutingTable(roles)
