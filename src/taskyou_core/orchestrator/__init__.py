from .retry import call_with_retry
from .service import OrchestratorService
from .state_machine import INPUT_TIMEOUT_REASON, TaskStateMachine, can_transition

__all__ = [
    "INPUT_TIMEOUT_REASON",
    "OrchestratorService",
    "TaskStateMachine",
    "call_with_retry",
    "can_transition",
]
