import asyncio
import base64
import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from time import perf_counter
from typing import AsyncIterator, Callable, Optional, Protocol, Union

import httpx
import numpy as np
import websockets
from dotenv import load_dotenv

from .audio_buffer import UtteranceAudioBuffer
from .errors import AcquisitionError, StreamError

# Load .env early so backend/model env vars are picked up.
load_dotenv()

STT_BACKEND = os.getenv("STT_BACKEND", "assemblyai").lower()
STT_SAMPLE_RATE = int(os.getenv("STT_SAMPLE_RATE", "16000"))

# AssemblyAI realtime
ASSEMBLYAI_API_KEY = os.getenv("ASSEMBLYAI_API_KEY")
ASSEMBLYAI_TOKEN_URL = "https://api.assemblyai.com/v2/realtime/token"
ASSEMBLYAI_WS_URL = "wss://api.assemblyai.com/v2/realtime/ws"
ASSEMBLYAI_TERMINATE_WAIT_S = float(os.getenv("ASSEMBLYAI_TERMINATE_WAIT_S", "2.0"))

# Local Whisper (transformers), re-run on the buffered utterance for partials
WHISPER_MODEL_ID = os.getenv("WHISPER_MODEL_ID", "openai/whisper-tiny")
STT_STREAM_INTERVAL_MS = int(os.getenv("STT_STREAM_INTERVAL_MS", "600"))
STT_MAX_UTTERANCE_S = float(os.getenv("STT_MAX_UTTERANCE_S", "30"))

# Whisper likes to "hear" these in silence.
IGNORED_USER_TEXTS = {"you", "You", "Thank you.", "Thanks for watching!"}

logger = logging.getLogger("trainer")

# Whisper inference is CPU/GPU bound; keep it off the event loop, one at a time.
stt_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stt")


@dataclass
class TranscriptEvent:
    text: str
    is_final: bool
    ts: float = field(default_factory=time.time)


class TranscriptionSource(Protocol):
    async def start(self) -> AsyncIterator[TranscriptEvent]:
        """Begin an utterance and return its event subscription."""
        ...

    def feed_audio(self, pcm16: bytes) -> None:
        ...

    async def stop(self) -> None:
        """End the utterance; flushes one final event and closes the subscription."""
        ...


_END = object()


class TranscriptSubscription:
    """
    Async iterator handed out by ``start()``. Events are queued from the moment
    it exists, so nothing is lost between subscribing and the first event.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Union[TranscriptEvent, StreamError, object]]" = asyncio.Queue()
        self.closed = False
        self._done = False

    def push(self, event: TranscriptEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def fail(self, error: StreamError) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(error)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)

    def __aiter__(self) -> "TranscriptSubscription":
        return self

    async def __anext__(self) -> TranscriptEvent:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._done = True
            raise StopAsyncIteration
        if isinstance(item, StreamError):
            self._done = True
            raise item
        return item


def _looks_like_garbage_text(t: str) -> bool:
    s = (t or "").strip()
    if not s:
        return True
    if s in IGNORED_USER_TEXTS:
        return True
    # Drop strings that are mostly punctuation / non-alnum noise.
    compact = "".join(ch for ch in s if not ch.isspace())
    if len(compact) >= 8:
        alnum = sum(1 for ch in compact if ch.isalnum())
        if (alnum / max(1, len(compact))) < 0.45:
            return True
    return False


# --- AssemblyAI realtime ---


class AssemblyAITranscriptionSource:
    """
    AssemblyAI realtime websocket. AssemblyAI finalizes sentence by sentence,
    so partial events are made cumulative (finished sentences + current partial)
    and the single final event is sent when the utterance is stopped.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        sample_rate: int = STT_SAMPLE_RATE,
        http_client: Optional[httpx.AsyncClient] = None,
        connect: Callable = websockets.connect,
    ):
        self.api_key = api_key or ASSEMBLYAI_API_KEY
        self.sample_rate = sample_rate
        self._http_client = http_client
        self._connect = connect
        self._ws = None
        self._sub: Optional[TranscriptSubscription] = None
        self._outbox: Optional["asyncio.Queue[Optional[bytes]]"] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._finals: list = []
        self._current_partial = ""
        self._stopping = False

    async def acquire_realtime_token(self) -> str:
        client = self._http_client or httpx.AsyncClient(timeout=10)
        try:
            r = await client.post(
                ASSEMBLYAI_TOKEN_URL,
                headers={"authorization": self.api_key},
                json={"expires_in": 3600},
            )
            r.raise_for_status()
            token = r.json().get("token")
        except (httpx.HTTPError, ValueError) as e:
            raise AcquisitionError(f"Failed to acquire AssemblyAI real-time token: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()
        if not token:
            raise AcquisitionError("AssemblyAI returned no real-time token")
        return token

    def _cumulative_text(self) -> str:
        parts = self._finals + ([self._current_partial] if self._current_partial else [])
        return " ".join(p.strip() for p in parts if p.strip())

    async def start(self) -> TranscriptSubscription:
        if not self.api_key:
            raise AcquisitionError("AssemblyAI API key required. Set ASSEMBLYAI_API_KEY in the .env file.")
        await self.stop()

        token = await self.acquire_realtime_token()
        url = f"{ASSEMBLYAI_WS_URL}?sample_rate={self.sample_rate}&token={token}"
        try:
            ws = await self._connect(url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise AcquisitionError(f"Could not connect to AssemblyAI realtime: {e}") from e

        self._ws = ws
        self._finals = []
        self._current_partial = ""
        self._stopping = False
        sub = TranscriptSubscription()
        self._sub = sub
        self._outbox = asyncio.Queue()
        self._recv_task = asyncio.create_task(self._receive_loop(ws, sub))
        self._send_task = asyncio.create_task(self._send_loop(ws, self._outbox))
        logger.info("AssemblyAI realtime session started")
        return sub

    def feed_audio(self, pcm16: bytes) -> None:
        if self._outbox is not None and not self._stopping and pcm16:
            self._outbox.put_nowait(pcm16)

    async def _send_loop(self, ws, outbox: "asyncio.Queue[Optional[bytes]]") -> None:
        while True:
            chunk = await outbox.get()
            if chunk is None:
                return
            try:
                await ws.send(json.dumps({"audio_data": base64.b64encode(chunk).decode("ascii")}))
            except websockets.exceptions.ConnectionClosed:
                # The receive loop reports the broken connection.
                return

    async def _receive_loop(self, ws, sub: TranscriptSubscription) -> None:
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(msg, dict):
                    continue
                message_type = msg.get("message_type")
                text = (msg.get("text") or "").strip()
                if message_type == "PartialTranscript":
                    self._current_partial = text
                    sub.push(TranscriptEvent(text=self._cumulative_text(), is_final=False))
                elif message_type == "FinalTranscript":
                    if text:
                        self._finals.append(text)
                    self._current_partial = ""
                    sub.push(TranscriptEvent(text=self._cumulative_text(), is_final=False))
                elif message_type == "SessionTerminated":
                    break
                elif msg.get("error"):
                    raise StreamError(f"ASR error: {msg['error']}")
        except websockets.exceptions.ConnectionClosedError as e:
            if not self._stopping:
                sub.fail(StreamError(f"ASR WebSocket error. Please retry. ({e})"))
                return
        except StreamError as e:
            sub.fail(e)
            return

        if not self._stopping:
            sub.fail(StreamError("ASR WebSocket closed unexpectedly. Please retry."))
            return
        sub.push(TranscriptEvent(text=self._cumulative_text(), is_final=True))
        sub.close()

    async def stop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        self._ws = None
        self._stopping = True

        if self._outbox is not None:
            self._outbox.put_nowait(None)
        if self._send_task is not None:
            try:
                await asyncio.wait_for(self._send_task, timeout=1.0)
            except asyncio.TimeoutError:
                pass
        try:
            await ws.send(json.dumps({"terminate_session": True}))
        except websockets.exceptions.ConnectionClosed:
            pass

        if self._recv_task is not None:
            try:
                await asyncio.wait_for(self._recv_task, timeout=ASSEMBLYAI_TERMINATE_WAIT_S)
            except asyncio.TimeoutError:
                logger.warning("AssemblyAI did not confirm session termination in time")
        try:
            await ws.close()
        except websockets.exceptions.WebSocketException:
            pass

        sub = self._sub
        if sub is not None and not sub.closed:
            sub.push(TranscriptEvent(text=self._cumulative_text(), is_final=True))
            sub.close()
        self._outbox = None
        self._recv_task = None
        self._send_task = None
        logger.info("AssemblyAI realtime session stopped")


# --- Local Whisper ---

_whisper_processor = None
_whisper_model = None
_whisper_device = "cpu"
_whisper_use_fp16 = False


def _get_whisper_model():
    global _whisper_processor, _whisper_model, _whisper_device, _whisper_use_fp16
    if _whisper_processor is None or _whisper_model is None:
        import torch
        from transformers import WhisperForConditionalGeneration, WhisperProcessor

        _whisper_device = "cuda" if torch.cuda.is_available() else "cpu"
        logger.info(f"Loading Whisper model: {WHISPER_MODEL_ID} on {_whisper_device}")
        _whisper_processor = WhisperProcessor.from_pretrained(WHISPER_MODEL_ID)
        model = WhisperForConditionalGeneration.from_pretrained(WHISPER_MODEL_ID).to(_whisper_device)
        if _whisper_device == "cuda":
            model = model.half()  # FP16 for faster inference on GPU
            _whisper_use_fp16 = True
        model.eval()
        _whisper_model = model
    return _whisper_processor, _whisper_model


def preload_whisper() -> None:
    _get_whisper_model()


def transcribe_whisper(audio_data: np.ndarray, sample_rate: int = 16000) -> str:
    import torch

    processor, model = _get_whisper_model()

    if audio_data.ndim > 1:
        audio_data = audio_data.reshape(-1)
    if len(audio_data) == 0:
        return ""
    if sample_rate != 16000:
        import librosa

        audio_data = librosa.resample(audio_data, orig_sr=sample_rate, target_sr=16000)

    processed = processor(audio_data, sampling_rate=16000, return_tensors="pt")
    inputs = {}
    for k, v in processed.items():
        v = v.to(_whisper_device)
        if _whisper_use_fp16 and v.dtype == torch.float32:
            v = v.half()
        inputs[k] = v

    with torch.no_grad():
        generated_ids = model.generate(
            **inputs,
            max_length=448,
            language="en",
            task="transcribe",
            num_beams=1,  # greedy decoding for speed
            do_sample=False,
        )
    return processor.batch_decode(generated_ids, skip_special_tokens=True)[0].strip()


class WhisperTranscriptionSource:
    """
    Local Whisper. Audio frames are buffered for the utterance and the whole
    buffer is re-transcribed every ``interval_ms`` to give cumulative partials.
    """

    def __init__(
        self,
        sample_rate: int = STT_SAMPLE_RATE,
        interval_ms: int = STT_STREAM_INTERVAL_MS,
        max_utterance_s: float = STT_MAX_UTTERANCE_S,
        transcribe: Optional[Callable[[np.ndarray, int], str]] = None,
        preload: Optional[Callable[[], None]] = None,
    ):
        self.sample_rate = sample_rate
        self.interval_s = interval_ms / 1000.0
        self.max_utterance_s = max_utterance_s
        self._transcribe = transcribe or transcribe_whisper
        self._preload = preload if preload is not None else (preload_whisper if transcribe is None else None)
        self._buffer = UtteranceAudioBuffer(max_seconds=max_utterance_s, sample_rate=sample_rate)
        self._sub: Optional[TranscriptSubscription] = None
        self._partial_task: Optional[asyncio.Task] = None
        self._running = False

    async def _run_transcribe(self, audio: np.ndarray) -> str:
        loop = asyncio.get_running_loop()
        start = perf_counter()
        text = await loop.run_in_executor(stt_executor, self._transcribe, audio, self.sample_rate)
        logger.debug(f"Whisper {len(audio) / self.sample_rate:.2f}s audio in {(perf_counter() - start) * 1000:.0f} ms")
        return (text or "").strip()

    async def start(self) -> TranscriptSubscription:
        await self.stop()
        if self._preload is not None:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(stt_executor, self._preload)
            except Exception as e:
                raise AcquisitionError(f"Whisper backend unavailable; install the 'local' extra. ({e})") from e

        self._buffer.clear()
        self._sub = TranscriptSubscription()
        self._running = True
        self._partial_task = asyncio.create_task(self._partial_loop(self._sub))
        return self._sub

    def feed_audio(self, pcm16: bytes) -> None:
        if self._running:
            self._buffer.push(pcm16)

    async def _partial_loop(self, sub: TranscriptSubscription) -> None:
        last_text = ""
        last_samples = 0
        while self._running:
            await asyncio.sleep(self.interval_s)
            if self._buffer.total_samples == last_samples:
                continue
            last_samples = self._buffer.total_samples
            try:
                text = await self._run_transcribe(self._buffer.as_float32())
            except Exception as e:
                logger.exception("Whisper partial transcription failed")
                self._running = False
                sub.fail(StreamError(f"Local transcription failed: {e}"))
                return
            if text != last_text and not _looks_like_garbage_text(text):
                last_text = text
                sub.push(TranscriptEvent(text=text, is_final=False))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        sub = self._sub
        task, self._partial_task = self._partial_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if sub is None or sub.closed:
            return

        text = ""
        if len(self._buffer):
            try:
                text = await self._run_transcribe(self._buffer.as_float32())
            except Exception as e:
                logger.exception("Whisper final transcription failed")
                sub.fail(StreamError(f"Local transcription failed: {e}"))
                return
        if _looks_like_garbage_text(text):
            text = ""
        sub.push(TranscriptEvent(text=text, is_final=True))
        sub.close()
        self._buffer.clear()


def create_transcription_source(backend: Optional[str] = None) -> TranscriptionSource:
    backend = (backend or STT_BACKEND).lower()
    if backend == "assemblyai":
        return AssemblyAITranscriptionSource()
    if backend == "whisper":
        return WhisperTranscriptionSource()
    raise ValueError(f"Unsupported STT backend: '{backend}'. Supported backends are: 'assemblyai', 'whisper'")


if __name__ == '__main__':
    # Transcribe a 16 kHz mono WAV with the local Whisper model.
    import wave

    try:
        with wave.open("test.wav", "rb") as wf:
            frames = wf.readframes(wf.getnframes())
            rate = wf.getframerate()
        buf = UtteranceAudioBuffer(sample_rate=rate)
        buf.push(frames)
        print(f"Transcription: {transcribe_whisper(buf.as_float32(), rate)}")
    except FileNotFoundError:
        print("Create a 'test.wav' file to test the STT module.")
