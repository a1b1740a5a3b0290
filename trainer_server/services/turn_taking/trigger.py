from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional


class TriggerPolicy:
    """
    One-shot gate deciding when an utterance has enough text to start a reply.

    Fires at most once between two ``reset()`` calls: the first time the
    cumulative transcript is longer than ``min_chars``.
    """

    def __init__(self, min_chars: int = 20):
        self.min_chars = min_chars
        self.triggered = False

    def should_trigger(self, text: str) -> bool:
        if self.triggered:
            return False
        if len((text or "").strip()) <= self.min_chars:
            return False
        self.triggered = True
        return True

    def claim(self) -> bool:
        """Take the trigger regardless of length (final transcript path)."""
        if self.triggered:
            return False
        self.triggered = True
        return True

    def reset(self) -> None:
        self.triggered = False


class Debouncer:
    """
    Single outstanding timer. Scheduling again before it fires replaces the
    previous call (last write wins), so one call at most per quiet period.
    """

    def __init__(self, delay_s: float = 0.35):
        self.delay_s = delay_s
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_s, self._fire, callback, args)

    def _fire(self, callback: Callable[..., Any], args: tuple) -> None:
        self._handle = None
        callback(*args)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True
