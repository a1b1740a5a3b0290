from __future__ import annotations

import hashlib
import json
from typing import Dict, List, Optional

from ..persona import PersonaContext


def fingerprint(utterance: str, persona: PersonaContext, history: List[Dict[str, str]]) -> str:
    """Deterministic cache key over utterance text, persona context and history."""
    payload = json.dumps(
        {"utterance": utterance, "persona": persona.as_dict(), "history": history},
        sort_keys=True,
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResponseCache:
    """
    Generated text per fingerprint, possibly partial. Entries grow as fragments
    arrive and live until ``clear()``.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def append(self, key: str, fragment: str) -> str:
        text = self._entries.get(key, "") + fragment
        self._entries[key] = text
        return text

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
