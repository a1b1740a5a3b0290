from .cache import ResponseCache, fingerprint
from .coordinator import PendingGeneration, TurnCoordinator
from .state import ConversationLog, ConversationTurn, SessionPhase, Speaker
from .trigger import Debouncer, TriggerPolicy

__all__ = [
    "ConversationLog",
    "ConversationTurn",
    "Debouncer",
    "PendingGeneration",
    "ResponseCache",
    "SessionPhase",
    "Speaker",
    "TriggerPolicy",
    "TurnCoordinator",
    "fingerprint",
]
