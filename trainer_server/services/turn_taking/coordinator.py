"""
Turn coordinator: the one place that owns conversation state.

It consumes the live transcript, decides when to start a reply, debounces and
de-duplicates generation requests, streams reply fragments to listeners, and
hands the finished reply to speech output, while keeping the session in
exactly one of idle / listening / thinking / speaking.

Everything here runs on the event loop thread. Provider calls are awaited in
tasks owned by the coordinator, never inline in a command.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from time import perf_counter
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from dotenv import load_dotenv

from ..errors import AcquisitionError, GenerationError, PlaybackError, StreamError
from ..llm import GenerationSource
from ..metrics_dashboard import MetricsStore
from ..persona import INTENSITY_MAX, PersonaContext
from ..stt import TranscriptEvent, TranscriptionSource
from ..tts import SpeechOutputSink
from .cache import ResponseCache, fingerprint
from .state import ConversationLog, SessionPhase, Speaker
from .trigger import Debouncer, TriggerPolicy

load_dotenv()

TRIGGER_MIN_CHARS = int(os.getenv("TRIGGER_MIN_CHARS", "20"))
GENERATION_DEBOUNCE_MS = float(os.getenv("GENERATION_DEBOUNCE_MS", "350"))
TRIGGER_ON_FINAL = os.getenv("TRIGGER_ON_FINAL", "1") == "1"
FINAL_TRANSCRIPT_WAIT_S = float(os.getenv("FINAL_TRANSCRIPT_WAIT_S", "3.0"))

# Shown as the final transcript when the transcription connection drops.
STREAM_ERROR_TRANSCRIPT = "Transcription connection lost. Please retry."

logger = logging.getLogger("trainer")

Listener = Callable[[str, Dict[str, object]], None]


@dataclass
class PendingGeneration:
    turn_id: int
    prompt: str
    fingerprint: str
    history: List[Dict[str, str]]
    prompt_ts: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    buffer: List[str] = field(default_factory=list)
    task: Optional[asyncio.Task] = None

    @property
    def text(self) -> str:
        return "".join(self.buffer)


class TurnCoordinator:
    def __init__(
        self,
        transcription: TranscriptionSource,
        generation: GenerationSource,
        speech: SpeechOutputSink,
        persona: PersonaContext,
        *,
        trigger_min_chars: int = TRIGGER_MIN_CHARS,
        debounce_s: float = GENERATION_DEBOUNCE_MS / 1000.0,
        trigger_on_final: bool = TRIGGER_ON_FINAL,
        final_wait_s: float = FINAL_TRANSCRIPT_WAIT_S,
        metrics: Optional[MetricsStore] = None,
    ):
        self.transcription = transcription
        self.generation = generation
        self.speech = speech
        self.persona = persona
        self.base_intensity = persona.intensity
        self.trigger_on_final = trigger_on_final
        self.final_wait_s = final_wait_s
        self.metrics = metrics

        self.phase = SessionPhase.IDLE
        self.conversation = ConversationLog()
        self.cache = ResponseCache()
        self.trigger = TriggerPolicy(min_chars=trigger_min_chars)
        self.debouncer = Debouncer(delay_s=debounce_s)

        # Presentation-facing state
        self.partial_transcript = ""
        self.final_transcript = ""
        self.streaming_output = ""
        self.error: Optional[str] = None
        self.aborted = False

        self._pending: Optional[PendingGeneration] = None
        self._ready_reply: Optional[str] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._speech_task: Optional[asyncio.Task] = None
        self._orphans: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._turn_seq = 0
        self._epoch = 0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: str, **payload: object) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception(f"Listener failed handling '{event}'")

    def _emit_state(self) -> None:
        self._emit("state", **self.snapshot())

    def snapshot(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "conversation": self.conversation.to_list(),
            "partial_transcript": self.partial_transcript,
            "final_transcript": self.final_transcript,
            "streaming_output": self.streaming_output,
            "error": self.error,
            "aborted": self.aborted,
            "generating": self.generation_in_flight,
            "persona": self.persona.as_dict(),
            "intensity": self.persona.intensity,
        }

    @property
    def generation_in_flight(self) -> bool:
        return self._pending is not None or self.debouncer.pending

    def _set_phase(self, phase: SessionPhase) -> None:
        if phase is self.phase:
            return
        logger.info(f"Phase {self.phase.value} -> {phase.value}")
        self.phase = phase
        self._emit_state()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    async def start_recording(self) -> bool:
        if self.phase is not SessionPhase.IDLE:
            logger.info(f"Ignoring start while {self.phase.value}")
            return False

        self.error = None
        self.partial_transcript = ""
        self.final_transcript = ""
        self.streaming_output = ""
        self.aborted = False
        self._ready_reply = None
        self.trigger.reset()
        self._set_phase(SessionPhase.LISTENING)

        epoch = self._epoch
        try:
            stream = await self.transcription.start()
        except AcquisitionError as e:
            logger.warning(f"Transcription unavailable: {e}")
            if epoch == self._epoch:
                self.error = str(e) or "Microphone access denied or unavailable"
                self._set_phase(SessionPhase.IDLE)
                self._emit("error", message=self.error)
            return False

        if epoch != self._epoch or self.phase is not SessionPhase.LISTENING:
            # Reset landed while the source was starting up.
            await self.transcription.stop()
            return False

        self._listen_task = asyncio.create_task(self._consume_transcripts(stream))
        return True

    async def stop_recording(self) -> None:
        if self.phase is not SessionPhase.LISTENING:
            return
        epoch = self._epoch
        await self.transcription.stop()
        task = self._listen_task
        if task is not None and not task.done():
            # stop() flushes the final transcript through the subscription
            _, waiting = await asyncio.wait({task}, timeout=self.final_wait_s)
            if waiting:
                logger.warning("Final transcript did not arrive in time; ending utterance anyway")
                task.cancel()
        if epoch == self._epoch and self.phase is SessionPhase.LISTENING:
            self._finish_listening()

    async def _consume_transcripts(self, stream: AsyncIterator[TranscriptEvent]) -> None:
        try:
            async for event in stream:
                if event.is_final:
                    self._on_final(event.text)
                    break
                self._on_partial(event.text)
        except StreamError as e:
            self._on_stream_error(str(e))
        finally:
            if self._listen_task is asyncio.current_task():
                self._listen_task = None
        await self.transcription.stop()
        if self.phase is SessionPhase.LISTENING:
            self._finish_listening()

    def _on_partial(self, text: str) -> None:
        if self.phase is not SessionPhase.LISTENING:
            return
        self.partial_transcript = text
        self._emit("partial", text=text)
        if self.trigger.should_trigger(text):
            logger.info(f"Trigger: {len(text.strip())} chars > {self.trigger.min_chars}")
            self.request_reply(text)

    def _on_final(self, text: str) -> None:
        if self.phase is not SessionPhase.LISTENING:
            return
        self.final_transcript = text
        self.partial_transcript = ""
        self._emit("final", text=text)
        if self.trigger_on_final and text.strip() and self.trigger.claim():
            logger.info("Trigger: final transcript below length threshold")
            self.request_reply(text)

    def _on_stream_error(self, message: str) -> None:
        if self.phase is not SessionPhase.LISTENING:
            return
        # In-flight generation is left alone; the user may cancel it.
        logger.warning(f"Transcription stream error: {message}")
        self.error = message or STREAM_ERROR_TRANSCRIPT
        self.final_transcript = STREAM_ERROR_TRANSCRIPT
        self.partial_transcript = ""
        self._emit("final", text=STREAM_ERROR_TRANSCRIPT)
        self._emit("error", message=self.error)

    def _finish_listening(self) -> None:
        if self.generation_in_flight:
            self._set_phase(SessionPhase.THINKING)
        elif self._ready_reply is not None:
            reply, self._ready_reply = self._ready_reply, None
            self._begin_speaking(reply)
        else:
            self._set_phase(SessionPhase.IDLE)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def request_reply(self, text: str) -> None:
        """Schedule a reply to ``text`` after the debounce window (last call wins)."""
        self.aborted = False
        self.streaming_output = ""
        self.debouncer.schedule(self._issue_generation, text)
        self._emit_state()

    def _issue_generation(self, text: str) -> None:
        # At most one generation request is ever outstanding.
        self._retire_pending()
        history = self.conversation.as_history()
        key = fingerprint(text, self.persona, history)
        self._turn_seq += 1
        turn_id = self._turn_seq
        prompt_ts = time.time()

        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for turn {turn_id}; skipping generation call")
            if self.metrics:
                self.metrics.start_turn(turn_id, len(text), cache_hit=True)
                self.metrics.finish_turn(turn_id, "cached")
            self.streaming_output = cached
            self._complete_reply(text, cached, prompt_ts)
            return

        pending = PendingGeneration(
            turn_id=turn_id, prompt=text, fingerprint=key, history=history, prompt_ts=prompt_ts
        )
        self._pending = pending
        if self.metrics:
            self.metrics.start_turn(turn_id, len(text))
        logger.info(f"Generating turn {turn_id} for {len(text)} chars of transcript")
        pending.task = asyncio.create_task(self._run_generation(pending))
        self._emit_state()

    async def _run_generation(self, pending: PendingGeneration) -> None:
        started = perf_counter()
        try:
            fragments = self.generation.generate(
                pending.prompt, pending.history, self.persona, pending.cancel_event
            )
            try:
                async for fragment in fragments:
                    if self._pending is not pending:
                        logger.debug(f"Dropping fragment for discarded turn {pending.turn_id}")
                        break
                    self._on_fragment(pending, fragment)
            finally:
                aclose = getattr(fragments, "aclose", None)
                if aclose is not None:
                    await aclose()
        except asyncio.CancelledError:
            raise
        except GenerationError as e:
            self._on_generation_failed(pending, str(e))
            return
        except Exception as e:
            logger.exception(f"Generation source failed for turn {pending.turn_id}")
            self._on_generation_failed(pending, f"Reply generation failed: {e}")
            return
        finally:
            self._orphans.discard(asyncio.current_task())

        if self._pending is not pending:
            return
        elapsed = (perf_counter() - started) * 1000
        logger.info(f"Turn {pending.turn_id} generated in {elapsed:.1f} ms")
        reply = pending.text
        if not reply.strip():
            self._on_generation_failed(pending, "Reply generation returned no text")
            return
        if self.metrics:
            self.metrics.finish_turn(pending.turn_id, "completed")
        self._complete_reply(pending.prompt, reply, pending.prompt_ts)

    def _on_fragment(self, pending: PendingGeneration, fragment: str) -> None:
        if not fragment:
            return
        pending.buffer.append(fragment)
        self.cache.append(pending.fingerprint, fragment)
        self.streaming_output += fragment
        if self.metrics:
            self.metrics.add_fragment(pending.turn_id)
        self._emit("fragment", text=fragment)

    def _on_generation_failed(self, pending: PendingGeneration, message: str) -> None:
        if self._pending is not pending:
            return
        logger.warning(f"Turn {pending.turn_id} failed: {message}")
        self._pending = None
        if self.metrics:
            self.metrics.finish_turn(pending.turn_id, "failed")
        self.error = message
        self.streaming_output = ""
        self._emit("error", message=message)
        if self.phase is SessionPhase.THINKING:
            self._set_phase(SessionPhase.IDLE)
        else:
            self._emit_state()

    def _complete_reply(self, prompt: str, reply: str, prompt_ts: float) -> None:
        self._pending = None
        self.conversation.append(Speaker.USER, prompt, timestamp=prompt_ts)
        self.conversation.append(Speaker.AGENT, reply)
        self._emit("reply", text=reply)

        if self.phase is SessionPhase.LISTENING:
            # Generation ran underneath listening; speak once the user stops.
            self._ready_reply = reply
            self._emit_state()
        elif self.phase is SessionPhase.THINKING:
            self._begin_speaking(reply)
        else:
            self._emit_state()

    def _retire_pending(self) -> None:
        """Signal the running generation and stop tracking it."""
        pending, self._pending = self._pending, None
        if pending is None:
            return
        pending.cancel_event.set()
        if pending.task is not None and not pending.task.done():
            self._orphans.add(pending.task)
        if self.metrics:
            self.metrics.finish_turn(pending.turn_id, "canceled")
        logger.info(f"Turn {pending.turn_id} canceled after {len(pending.buffer)} fragments")

    def cancel_generation(self) -> bool:
        """
        Abandon the scheduled or running generation. Local state is updated
        immediately; the source is only signalled, not awaited.
        """
        if not self.generation_in_flight:
            return False
        self.debouncer.cancel()
        self._retire_pending()
        self.aborted = True
        self.streaming_output = ""
        if self.phase is SessionPhase.THINKING:
            self._set_phase(SessionPhase.IDLE)
        else:
            self._emit_state()
        return True

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------
    def _begin_speaking(self, text: str) -> None:
        self._set_phase(SessionPhase.SPEAKING)
        self._speech_task = asyncio.create_task(self._speak(text))

    async def _speak(self, text: str) -> None:
        try:
            await self.speech.speak(text)
        except asyncio.CancelledError:
            raise
        except PlaybackError as e:
            logger.warning(f"Speech playback failed on every path: {e}")
        except Exception:
            logger.exception("Speech output failed")
        if self._speech_task is asyncio.current_task():
            self._speech_task = None
            if self.phase is SessionPhase.SPEAKING:
                self._set_phase(SessionPhase.IDLE)

    def stop_speech(self) -> bool:
        if self.phase is not SessionPhase.SPEAKING:
            self.speech.stop()
            return False
        self._halt_speech()
        self._set_phase(SessionPhase.IDLE)
        return True

    def _halt_speech(self) -> None:
        self.speech.stop()
        task, self._speech_task = self._speech_task, None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Persona / session commands
    # ------------------------------------------------------------------
    def escalate(self) -> int:
        if self.persona.intensity < INTENSITY_MAX:
            self.persona = self.persona.with_intensity(self.persona.intensity + 1)
            logger.info(f"Persona intensity escalated to {self.persona.intensity}")
        self._emit_state()
        return self.persona.intensity

    def configure(self, persona: PersonaContext) -> bool:
        """
        Swap the persona. Only allowed while idle, and starts a new session:
        the conversation, cache and trigger belong to the previous persona.
        """
        if self.phase is not SessionPhase.IDLE:
            return False
        self.debouncer.cancel()
        self._retire_pending()
        self.conversation.clear()
        self.cache.clear()
        self.trigger.reset()
        self._ready_reply = None
        self.partial_transcript = ""
        self.final_transcript = ""
        self.streaming_output = ""
        self.error = None
        self.aborted = False
        self.persona = persona
        self.base_intensity = persona.intensity
        logger.info(f"Persona set to {persona.name}, {persona.role}")
        self._emit_state()
        return True

    def clear_error(self) -> None:
        self.error = None
        self._emit_state()

    async def reset(self) -> None:
        was_listening = self.phase is SessionPhase.LISTENING
        self._epoch += 1

        self.debouncer.cancel()
        self._retire_pending()
        self._halt_speech()
        listen_task, self._listen_task = self._listen_task, None
        if listen_task is not None and not listen_task.done():
            listen_task.cancel()

        self.conversation.clear()
        self.cache.clear()
        self.trigger.reset()
        self._ready_reply = None
        self.partial_transcript = ""
        self.final_transcript = ""
        self.streaming_output = ""
        self.error = None
        self.aborted = False
        self.persona = self.persona.with_intensity(self.base_intensity)
        self.phase = SessionPhase.IDLE
        logger.info("Session reset")
        self._emit("reset")
        self._emit_state()

        if was_listening:
            await self.transcription.stop()

    async def close(self) -> None:
        """Tear down everything; used when the client goes away."""
        await self.reset()
        for task in list(self._orphans):
            task.cancel()
        self._orphans.clear()
        self._listeners.clear()
