"""Core orchestration: the tool-calling loop and the job consumer."""

from csva.core.orchestrator import FALLBACK_RESPONSE, MAX_STEPS_RESPONSE, OrchestrationResult, Orchestrator
from csva.core.progress import ProgressChannel, ToolProgress
from csva.core.worker import TurnOutcome, TurnWorker, assistant_message_id

__all__ = [
    "FALLBACK_RESPONSE",
    "MAX_STEPS_RESPONSE",
    "OrchestrationResult",
    "Orchestrator",
    "ProgressChannel",
    "ToolProgress",
    "TurnOutcome",
    "TurnWorker",
    "assistant_message_id",
]
