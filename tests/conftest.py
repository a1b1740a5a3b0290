import asyncio
from typing import Callable, Iterable, List, Optional

import pytest

from trainer_server.services.errors import StreamError
from trainer_server.services.persona import persona_for_scenario
from trainer_server.services.stt import TranscriptEvent, TranscriptSubscription
from trainer_server.services.turn_taking import SessionPhase, TurnCoordinator


class FakeTranscriptionSource:
    """In-memory transcription source; tests push events by hand or via ``script``."""

    def __init__(self, script: Iterable[str] = (), start_error: Optional[Exception] = None):
        self.script = list(script)
        self.start_error = start_error
        self.sub: Optional[TranscriptSubscription] = None
        self.starts = 0
        self.stops = 0
        self.audio: List[bytes] = []
        self.last_text = ""

    async def start(self) -> TranscriptSubscription:
        self.starts += 1
        if self.start_error is not None:
            raise self.start_error
        self.sub = TranscriptSubscription()
        self.last_text = ""
        for text in self.script:
            self.push_partial(text)
        return self.sub

    def feed_audio(self, pcm16: bytes) -> None:
        self.audio.append(pcm16)

    def push_partial(self, text: str) -> None:
        self.last_text = text
        self.sub.push(TranscriptEvent(text=text, is_final=False))

    def push_final(self, text: str) -> None:
        self.last_text = text
        self.sub.push(TranscriptEvent(text=text, is_final=True))
        self.sub.close()

    def fail(self, message: str = "socket closed") -> None:
        self.sub.fail(StreamError(message))

    async def stop(self) -> None:
        self.stops += 1
        if self.sub is not None and not self.sub.closed:
            self.sub.push(TranscriptEvent(text=self.last_text, is_final=True))
            self.sub.close()


class FakeGenerationSource:
    """
    Yields ``fragments`` with ``delay`` seconds between them. Honours the
    cancel event unless ``ignore_cancel``; raises ``error`` before fragment
    number ``error_at``.
    """

    def __init__(
        self,
        fragments: Iterable[str] = ("Finally, ", "someone ", "listens."),
        delay: float = 0.0,
        error: Optional[Exception] = None,
        error_at: int = 0,
        ignore_cancel: bool = False,
    ):
        self.fragments = list(fragments)
        self.delay = delay
        self.error = error
        self.error_at = error_at
        self.ignore_cancel = ignore_cancel
        self.calls: List[dict] = []
        self.cancel_events: List[asyncio.Event] = []
        self.yielded = 0

    async def generate(self, prompt, history, persona, cancel_event):
        self.calls.append({"prompt": prompt, "history": list(history), "persona": persona})
        self.cancel_events.append(cancel_event)
        for i, fragment in enumerate(self.fragments):
            await asyncio.sleep(self.delay)
            if cancel_event.is_set() and not self.ignore_cancel:
                return
            if self.error is not None and i == self.error_at:
                raise self.error
            self.yielded += 1
            yield fragment
        if self.error is not None and self.error_at >= len(self.fragments):
            raise self.error


class FakeSpeechSink:
    def __init__(self, hold: bool = False, error: Optional[Exception] = None):
        self.spoken: List[str] = []
        self.finished: List[str] = []
        self.stops = 0
        self.error = error
        self.release = asyncio.Event()
        if not hold:
            self.release.set()

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        if self.error is not None:
            raise self.error
        await self.release.wait()
        self.finished.append(text)

    def stop(self) -> None:
        self.stops += 1


class EventRecorder:
    def __init__(self):
        self.events: List[tuple] = []

    def __call__(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def of(self, name: str) -> List[dict]:
        return [p for e, p in self.events if e == name]

    @property
    def phases(self) -> List[str]:
        return [p["phase"] for p in self.of("state")]


@pytest.fixture
def persona():
    return persona_for_scenario("retail-refund", intensity=1)


@pytest.fixture
def transcription():
    return FakeTranscriptionSource()


@pytest.fixture
def generation():
    return FakeGenerationSource()


@pytest.fixture
def speech():
    return FakeSpeechSink()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def make_coordinator(persona, transcription, generation, speech, recorder):
    def _make(**kwargs) -> TurnCoordinator:
        kwargs.setdefault("debounce_s", 0.02)
        kwargs.setdefault("final_wait_s", 0.5)
        kwargs.setdefault("trigger_on_final", True)
        coordinator = TurnCoordinator(
            kwargs.pop("transcription", transcription),
            kwargs.pop("generation", generation),
            kwargs.pop("speech", speech),
            kwargs.pop("persona", persona),
            **kwargs,
        )
        coordinator.add_listener(recorder)
        return coordinator

    return _make


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.002)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def phases():
    return {p.value for p in SessionPhase}
