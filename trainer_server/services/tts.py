import asyncio
import contextlib
import io
import logging
import os
import tempfile
import warnings
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from time import perf_counter
from typing import Awaitable, Callable, Optional, Protocol

import httpx
import numpy as np
import pyttsx3
from dotenv import load_dotenv
from pydub import AudioSegment

from .errors import PlaybackError
from .sentence_splitter import group_for_speech

load_dotenv()

# Primary speech path: "elevenlabs" (cloud), "kokoro" (local) or "pyttsx3" (fallback only).
TTS_BACKEND = os.getenv("TTS_BACKEND", "elevenlabs").lower()
OUTPUT_SAMPLE_RATE = 16000
TTS_MAX_GROUP_CHARS = int(os.getenv("TTS_MAX_GROUP_CHARS", "180"))

ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "EXAVITQu4vr4xnSDxMaL")
ELEVENLABS_MODEL_ID = os.getenv("ELEVENLABS_MODEL_ID", "eleven_turbo_v2_5")
ELEVENLABS_TIMEOUT_S = float(os.getenv("ELEVENLABS_TIMEOUT_S", "20"))

DEFAULT_KOKORO_VOICE = os.getenv("KOKORO_VOICE", "af_bella")
KOKORO_MODEL_PATH = os.getenv(
    "KOKORO_MODEL_PATH",
    # repo_root/models/kokoro-v1_0.pth (repo_root is two levels above trainer_server/services)
    str(Path(__file__).resolve().parents[2] / "models" / "kokoro-v1_0.pth"),
)
KOKORO_SAMPLE_RATE = 24000

PYTTSX3_RATE = int(os.getenv("PYTTSX3_RATE", "170"))

logger = logging.getLogger("trainer")

# Local engines are not thread safe; synthesize one request at a time.
tts_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tts")

Deliver = Callable[[bytes], Awaitable[None]]
Synthesizer = Callable[[str], Awaitable[bytes]]


class SpeechOutputSink(Protocol):
    async def speak(self, text: str) -> None:
        """Complete once the whole reply has been delivered."""
        ...

    def stop(self) -> None:
        """Discard remaining speech immediately. Safe to call at any time."""
        ...


def _segment_to_wav_bytes(segment: AudioSegment) -> bytes:
    """16k mono WAV bytes for browser playback."""
    segment = segment.set_frame_rate(OUTPUT_SAMPLE_RATE).set_channels(1)
    buffer = io.BytesIO()
    segment.export(buffer, format="wav")
    return buffer.getvalue()


def _mp3_to_wav_bytes(mp3: bytes) -> bytes:
    return _segment_to_wav_bytes(AudioSegment.from_file(io.BytesIO(mp3), format="mp3"))


# --- ElevenLabs ---


async def synthesize_with_elevenlabs(text: str, client: Optional[httpx.AsyncClient] = None) -> bytes:
    if not ELEVENLABS_API_KEY:
        raise PlaybackError("ElevenLabs API key not found; set ELEVENLABS_API_KEY.")

    synth_start = perf_counter()
    own_client = client is None
    client = client or httpx.AsyncClient(timeout=ELEVENLABS_TIMEOUT_S)
    try:
        r = await client.post(
            f"https://api.elevenlabs.io/v1/text-to-speech/{ELEVENLABS_VOICE_ID}",
            headers={
                "Accept": "audio/mpeg",
                "Content-Type": "application/json",
                "xi-api-key": ELEVENLABS_API_KEY,
            },
            json={
                "text": text,
                "model_id": ELEVENLABS_MODEL_ID,
                "voice_settings": {
                    "stability": 0.5,
                    "similarity_boost": 0.5,
                    "style": 0.5,
                    "use_speaker_boost": True,
                },
            },
        )
        r.raise_for_status()
    except httpx.HTTPError as e:
        raise PlaybackError(f"ElevenLabs API error: {e}") from e
    finally:
        if own_client:
            await client.aclose()

    loop = asyncio.get_running_loop()
    try:
        wav = await loop.run_in_executor(tts_executor, _mp3_to_wav_bytes, r.content)
    except Exception as e:
        raise PlaybackError(f"Could not decode ElevenLabs audio: {e}") from e
    logger.info(f"ElevenLabs synthesis took {(perf_counter() - synth_start) * 1000:.1f} ms.")
    return wav


# --- Kokoro (local) ---

_kokoro_pipeline = None
_kokoro_model = None


def _load_kokoro():
    """
    Initialize Kokoro model + pipeline lazily. Requires the `kokoro` package and
    a model file; if the file is missing the package fetches from HuggingFace.
    """
    global _kokoro_pipeline, _kokoro_model
    if _kokoro_pipeline is not None:
        return _kokoro_pipeline

    import torch
    from kokoro import KModel, KPipeline

    device = os.getenv("KOKORO_DEVICE", "cuda" if torch.cuda.is_available() else "cpu")
    with warnings.catch_warnings(), contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        warnings.filterwarnings("ignore", message=".*repo_id.*")
        if os.path.exists(KOKORO_MODEL_PATH):
            model = KModel(model=KOKORO_MODEL_PATH)
        else:
            logger.info(f"Kokoro model not found at {KOKORO_MODEL_PATH}; downloading hexgrad/Kokoro-82M.")
            model = KModel(repo_id="hexgrad/Kokoro-82M")
        if device != "cpu":
            model = model.to(device)
        _kokoro_pipeline = KPipeline(lang_code="a", model=model, device=device)
    _kokoro_model = model
    logger.info(f"Kokoro TTS loaded on {device} with voice '{DEFAULT_KOKORO_VOICE}'.")
    return _kokoro_pipeline


def preload_tts() -> None:
    """Warm the local TTS so the first reply is faster."""
    if TTS_BACKEND != "kokoro":
        return
    try:
        _load_kokoro()
    except Exception as e:
        logger.warning(f"Failed to preload Kokoro TTS: {e}")


def _synthesize_with_kokoro(text: str) -> bytes:
    pipeline = _load_kokoro()
    audio_chunks = []
    # KPipeline yields Result objects; each has .audio
    for res in pipeline(text, voice=DEFAULT_KOKORO_VOICE, model=_kokoro_model):
        if res.audio is None:
            continue
        audio_chunks.append(res.audio.detach().cpu().numpy().astype(np.float32))
    if not audio_chunks:
        return b""
    pcm16 = (np.clip(np.concatenate(audio_chunks), -1.0, 1.0) * 32767).astype(np.int16)
    seg = AudioSegment(
        pcm16.tobytes(),
        frame_rate=getattr(pipeline.model, "sample_rate", KOKORO_SAMPLE_RATE) or KOKORO_SAMPLE_RATE,
        sample_width=2,
        channels=1,
    )
    return _segment_to_wav_bytes(seg)


async def synthesize_with_kokoro(text: str) -> bytes:
    loop = asyncio.get_running_loop()
    synth_start = perf_counter()
    try:
        audio = await loop.run_in_executor(tts_executor, _synthesize_with_kokoro, text)
    except Exception as e:
        raise PlaybackError(f"Kokoro synthesis failed: {e}") from e
    logger.info(f"Kokoro synthesis took {(perf_counter() - synth_start) * 1000:.1f} ms.")
    return audio


# --- pyttsx3 (always-available fallback) ---

_pyttsx3_engine = None


def _get_pyttsx3_engine():
    global _pyttsx3_engine
    if _pyttsx3_engine is None:
        # Linux: espeak, Windows: sapi5, macOS: nsss
        _pyttsx3_engine = pyttsx3.init()
        _pyttsx3_engine.setProperty("rate", PYTTSX3_RATE)
    return _pyttsx3_engine


def _synthesize_with_pyttsx3(text: str) -> bytes:
    engine = _get_pyttsx3_engine()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp:
            tmp_path = tmp.name
        engine.save_to_file(text, tmp_path)
        engine.runAndWait()
        if not os.path.exists(tmp_path) or os.path.getsize(tmp_path) == 0:
            return b""
        return _segment_to_wav_bytes(AudioSegment.from_file(tmp_path))
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


async def synthesize_with_pyttsx3(text: str) -> bytes:
    loop = asyncio.get_running_loop()
    synth_start = perf_counter()
    audio = await loop.run_in_executor(tts_executor, _synthesize_with_pyttsx3, text)
    logger.info(f"pyttsx3 synthesis took {(perf_counter() - synth_start) * 1000:.1f} ms.")
    return audio


PRIMARY_SYNTHESIZERS = {
    "elevenlabs": synthesize_with_elevenlabs,
    "kokoro": synthesize_with_kokoro,
    "pyttsx3": None,
}


class SpeechSink:
    """
    Synthesizes a reply group by group and hands WAV bytes to ``deliver``.
    A failed primary group falls back to pyttsx3, so a cloud/model outage
    degrades the voice instead of surfacing an error.
    """

    def __init__(
        self,
        deliver: Deliver,
        primary: Optional[Synthesizer] = None,
        fallback: Optional[Synthesizer] = None,
        backend_name: str = "custom",
        max_group_chars: int = TTS_MAX_GROUP_CHARS,
    ):
        self.deliver = deliver
        self.backend_name = backend_name
        self._primary = primary
        self._fallback = fallback or synthesize_with_pyttsx3
        self.max_group_chars = max_group_chars
        self._stop_event: Optional[asyncio.Event] = None

    async def speak(self, text: str) -> None:
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        total_start = perf_counter()
        for group in group_for_speech(text, max_chars=self.max_group_chars):
            if stop_event.is_set():
                return
            audio = await self._synthesize(group)
            if stop_event.is_set():
                return
            await self.deliver(audio)
        logger.info(f"TTS total (path={self.backend_name}) took {(perf_counter() - total_start) * 1000:.1f} ms.")

    async def _synthesize(self, text: str) -> bytes:
        if self._primary is not None:
            try:
                audio = await self._primary(text)
                if audio:
                    return audio
                logger.warning(f"{self.backend_name} produced no audio; falling back to pyttsx3")
            except PlaybackError as e:
                logger.warning(f"{self.backend_name} failed ({e}); falling back to pyttsx3")
        try:
            audio = await self._fallback(text)
        except Exception as e:
            raise PlaybackError(f"Fallback speech failed: {e}") from e
        if not audio:
            raise PlaybackError("Fallback speech produced no audio")
        return audio

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()


def create_speech_sink(deliver: Deliver, backend: Optional[str] = None) -> SpeechSink:
    backend = (backend or TTS_BACKEND).lower()
    if backend not in PRIMARY_SYNTHESIZERS:
        raise ValueError(
            f"Unsupported TTS backend: '{backend}'. Supported backends are: {', '.join(PRIMARY_SYNTHESIZERS)}"
        )
    return SpeechSink(deliver, primary=PRIMARY_SYNTHESIZERS[backend], backend_name=backend)


if __name__ == '__main__':
    # This is for testing the module directly
    text = "This is the third time I've called about this. I want it fixed today."
    chunks = []

    async def _collect(audio: bytes) -> None:
        chunks.append(audio)

    print(f"Synthesizing with {TTS_BACKEND}: '{text}'")
    asyncio.run(create_speech_sink(_collect).speak(text))
    if chunks:
        with open("tts_test.wav", "wb") as f:
            f.write(chunks[0])
        print(f"Saved first of {len(chunks)} chunk(s) to 'tts_test.wav'")
