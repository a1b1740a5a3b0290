from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional


class SessionPhase(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class Speaker(str, Enum):
    USER = "user"
    AGENT = "agent"


# Role tags the generation sources expect for history turns.
_HISTORY_ROLES = {Speaker.USER: "user", Speaker.AGENT: "assistant"}


@dataclass(frozen=True)
class ConversationTurn:
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {"speaker": self.speaker.value, "text": self.text, "timestamp": self.timestamp}


class ConversationLog:
    """
    Append-only, chronologically ordered record of the session's turns.
    Only ``clear()`` (session reset) ever removes anything.
    """

    def __init__(self) -> None:
        self._turns: List[ConversationTurn] = []

    def append(self, speaker: Speaker, text: str, timestamp: Optional[float] = None) -> ConversationTurn:
        turn = ConversationTurn(
            speaker=speaker,
            text=text,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        self._turns.append(turn)
        return turn

    def clear(self) -> None:
        self._turns.clear()

    def as_history(self) -> List[Dict[str, str]]:
        """Role-tagged history, oldest first, in the shape the generation sources take."""
        return [{"role": _HISTORY_ROLES[t.speaker], "content": t.text} for t in self._turns]

    def to_list(self) -> List[Dict[str, object]]:
        return [t.to_dict() for t in self._turns]

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, idx: int) -> ConversationTurn:
        return self._turns[idx]
