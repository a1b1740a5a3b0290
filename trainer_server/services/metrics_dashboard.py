from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from time import perf_counter
from typing import Deque, Dict, List, Optional

logger = logging.getLogger("trainer")


@dataclass
class TurnMetrics:
    turn_id: int
    prompt_chars: int
    start_ts: float  # perf_counter timestamp
    cache_hit: bool = False
    first_fragment_ms: Optional[float] = None
    generation_ms: Optional[float] = None
    fragments: int = 0
    outcome: str = "running"


class MetricsStore:
    """Per-turn generation latency, shared with the dashboard thread."""

    def __init__(self, max_turns: int = 25):
        self.max_turns = max_turns
        self._lock = threading.Lock()
        self._turns: Deque[TurnMetrics] = deque(maxlen=max_turns)
        self._inflight: Dict[int, TurnMetrics] = {}

    def start_turn(self, turn_id: int, prompt_chars: int, cache_hit: bool = False) -> None:
        with self._lock:
            self._inflight[turn_id] = TurnMetrics(
                turn_id=turn_id, prompt_chars=prompt_chars, start_ts=perf_counter(), cache_hit=cache_hit
            )

    def add_fragment(self, turn_id: int) -> None:
        with self._lock:
            tm = self._inflight.get(turn_id)
            if not tm:
                return
            tm.fragments += 1
            if tm.first_fragment_ms is None:
                tm.first_fragment_ms = (perf_counter() - tm.start_ts) * 1000

    def finish_turn(self, turn_id: int, outcome: str) -> Optional[TurnMetrics]:
        with self._lock:
            tm = self._inflight.pop(turn_id, None)
            if not tm:
                return None
            tm.generation_ms = (perf_counter() - tm.start_ts) * 1000
            tm.outcome = outcome
            self._turns.append(tm)
        logger.info(
            f"Turn {turn_id} {outcome}: first_fragment={_fmt(tm.first_fragment_ms)} "
            f"total={_fmt(tm.generation_ms)} fragments={tm.fragments}"
        )
        return tm

    def clear(self) -> None:
        with self._lock:
            self._turns.clear()
            self._inflight.clear()

    def snapshot(self) -> List[TurnMetrics]:
        with self._lock:
            turns = list(self._turns)
            inflight = list(self._inflight.values())
        # in-flight first, then most recent finished
        return inflight + list(reversed(turns))


def _fmt(v: Optional[float]) -> str:
    return "-" if v is None else f"{v:.0f}ms"


_STORE: Optional[MetricsStore] = None


def get_store() -> MetricsStore:
    global _STORE
    if _STORE is None:
        _STORE = MetricsStore(max_turns=int(os.getenv("METRICS_MAX_TURNS", "25")))
    return _STORE


def _render_rich_table(turns: List[TurnMetrics]):
    from rich.table import Table

    t = Table(title="Turn Coordinator Metrics (live)")
    t.add_column("turn", justify="right")
    t.add_column("prompt", justify="right")
    t.add_column("cache")
    t.add_column("trigger→frag1", justify="right")
    t.add_column("trigger→done", justify="right")
    t.add_column("fragments", justify="right")
    t.add_column("outcome")

    for tm in turns[:25]:
        t.add_row(
            str(tm.turn_id),
            f"{tm.prompt_chars}ch",
            "hit" if tm.cache_hit else "-",
            _fmt(tm.first_fragment_ms),
            _fmt(tm.generation_ms),
            str(tm.fragments),
            tm.outcome,
        )
    return t


def start_dashboard() -> None:
    """
    Starts a live-updating terminal table using Rich.
    Enabled by setting METRICS_DASHBOARD=1.
    """
    if os.getenv("METRICS_DASHBOARD", "0") != "1":
        return

    if getattr(start_dashboard, "_started", False):
        return
    setattr(start_dashboard, "_started", True)

    def run():
        from rich.console import Console
        from rich.live import Live

        console = Console()
        store = get_store()
        with Live(_render_rich_table(store.snapshot()), console=console, refresh_per_second=4, transient=False) as live:
            while True:
                time.sleep(0.25)
                live.update(_render_rich_table(store.snapshot()))

    th = threading.Thread(target=run, daemon=True, name="metrics_dashboard")
    th.start()
