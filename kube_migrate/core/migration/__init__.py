"""Migration core: inspection, state machine, verification and recovery guidance."""

from .inspector import TopologyInspector  # noqa: F401
from .state_machine import MigrationStateMachine, PhaseFailure  # noqa: F401
from .verification import Verifier  # noqa: F401

__all__ = ["MigrationStateMachine", "PhaseFailure", "TopologyInspector", "Verifier"]
