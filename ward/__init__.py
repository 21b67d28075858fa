"""
Secure Ward - Workflow Package

Light imports (no provider dependencies):
  - ward.types: Record, Vitals, Scalar, AgentRole, ConfidentialityState, Slot
  - ward.registry: SlotRegistry
  - ward.routing: RoutingTable, OperationSpec, load_routing_table

The transition engine is lazy-loaded: it pulls in the clinic providers,
which themselves import ward.types.

Usage:
    from ward import TransitionEngine

    engine = TransitionEngine.from_config()
    await engine.submit("PATIENT", "admit")
"""

from ward.types import (
    AgentRole, ConfidentialityState, Record, Vitals, Scalar, Slot,
    InvalidPayload, build_payload,
)
from ward.registry import SlotRegistry, SlotConflict
from ward.routing import (
    RoutingTable, RoleSpec, OperationSpec, RoutingConfigError, load_routing_table,
)


def __getattr__(name):
    """Lazy-load the transition engine symbols."""
    _transition_symbols = {
        "TransitionEngine", "TransitionResult", "ComputationContractError",
    }
    if name in _transition_symbols:
        import ward.transitions as _transitions
        return getattr(_transitions, name)

    raise AttributeError(f"module 'ward' has no attribute {name!r}")
