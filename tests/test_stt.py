import asyncio
import base64
import json

import httpx
import numpy as np
import pytest
import websockets

from trainer_server.services import stt
from trainer_server.services.errors import AcquisitionError, StreamError
from trainer_server.services.stt import (
    AssemblyAITranscriptionSource,
    TranscriptEvent,
    TranscriptSubscription,
    WhisperTranscriptionSource,
    _looks_like_garbage_text,
    create_transcription_source,
)


class FakeRealtimeSocket:
    """Stands in for the AssemblyAI realtime websocket."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))
        if json.loads(data).get("terminate_session"):
            self.incoming.put_nowait(json.dumps({"message_type": "SessionTerminated"}))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True

    def receive(self, **msg):
        self.incoming.put_nowait(json.dumps(msg))


def _token_client(status=200, payload=None):
    payload = {"token": "tmp-token"} if payload is None else payload
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(status, json=payload)))


@pytest.fixture
def socket():
    return FakeRealtimeSocket()


@pytest.fixture
def assemblyai(socket):
    urls = []

    async def connect(url):
        urls.append(url)
        return socket

    source = AssemblyAITranscriptionSource(api_key="key", http_client=_token_client(), connect=connect)
    source.urls = urls
    return source


async def _next(sub, timeout=1.0):
    return await asyncio.wait_for(sub.__anext__(), timeout)


@pytest.mark.asyncio
async def test_subscription_delivers_events_then_ends():
    sub = TranscriptSubscription()
    sub.push(TranscriptEvent("hello", is_final=False))
    sub.push(TranscriptEvent("hello there", is_final=True))
    sub.close()
    sub.push(TranscriptEvent("late", is_final=False))

    events = [e async for e in sub]
    assert [(e.text, e.is_final) for e in events] == [("hello", False), ("hello there", True)]
    assert [e async for e in sub] == []


@pytest.mark.asyncio
async def test_subscription_raises_stream_error():
    sub = TranscriptSubscription()
    sub.push(TranscriptEvent("hel", is_final=False))
    sub.fail(StreamError("lost"))

    assert (await _next(sub)).text == "hel"
    with pytest.raises(StreamError, match="lost"):
        await _next(sub)


@pytest.mark.asyncio
async def test_assemblyai_partials_are_cumulative(assemblyai, socket):
    sub = await assemblyai.start()
    assert "token=tmp-token" in assemblyai.urls[0]
    assert "sample_rate=16000" in assemblyai.urls[0]

    socket.receive(message_type="SessionBegins")
    socket.receive(message_type="PartialTranscript", text="I need")
    socket.receive(message_type="FinalTranscript", text="I need my refund.")
    socket.receive(message_type="PartialTranscript", text="This is")

    assert (await _next(sub)).text == "I need"
    assert (await _next(sub)).text == "I need my refund."
    third = await _next(sub)
    assert third.text == "I need my refund. This is"
    assert third.is_final is False

    await assemblyai.stop()
    final = await _next(sub)
    assert final.is_final is True
    assert final.text == "I need my refund. This is"
    with pytest.raises(StopAsyncIteration):
        await _next(sub)
    assert socket.sent[-1] == {"terminate_session": True}
    assert socket.closed


@pytest.mark.asyncio
async def test_assemblyai_sends_base64_audio(assemblyai, socket):
    await assemblyai.start()
    assemblyai.feed_audio(b"\x01\x02\x03\x04")

    for _ in range(50):
        if socket.sent:
            break
        await asyncio.sleep(0.01)
    assert socket.sent[0] == {"audio_data": base64.b64encode(b"\x01\x02\x03\x04").decode("ascii")}
    await assemblyai.stop()


@pytest.mark.asyncio
async def test_assemblyai_connection_loss_is_stream_error(assemblyai, socket):
    sub = await assemblyai.start()
    socket.receive(message_type="PartialTranscript", text="I need my")
    socket.incoming.put_nowait(websockets.exceptions.ConnectionClosedError(None, None))

    assert (await _next(sub)).text == "I need my"
    with pytest.raises(StreamError, match="Please retry"):
        await _next(sub)
    await assemblyai.stop()


@pytest.mark.asyncio
async def test_assemblyai_error_message_is_stream_error(assemblyai, socket):
    sub = await assemblyai.start()
    socket.receive(error="Session expired")
    with pytest.raises(StreamError, match="Session expired"):
        await _next(sub)
    await assemblyai.stop()


@pytest.mark.asyncio
async def test_assemblyai_unexpected_close(assemblyai, socket):
    sub = await assemblyai.start()
    socket.incoming.put_nowait(None)
    with pytest.raises(StreamError, match="closed unexpectedly"):
        await _next(sub)
    await assemblyai.stop()


@pytest.mark.asyncio
async def test_assemblyai_skips_malformed_messages(assemblyai, socket):
    sub = await assemblyai.start()
    socket.incoming.put_nowait("not json")
    socket.incoming.put_nowait("[1, 2]")
    socket.receive(message_type="PartialTranscript", text="still here")
    assert (await _next(sub)).text == "still here"
    await assemblyai.stop()


@pytest.mark.asyncio
async def test_assemblyai_stop_is_idempotent(assemblyai, socket):
    await assemblyai.start()
    await assemblyai.stop()
    await assemblyai.stop()
    assert [m for m in socket.sent if m.get("terminate_session")] == [{"terminate_session": True}]


@pytest.mark.asyncio
async def test_assemblyai_requires_api_key(monkeypatch):
    monkeypatch.setattr(stt, "ASSEMBLYAI_API_KEY", None)
    with pytest.raises(AcquisitionError, match="ASSEMBLYAI_API_KEY"):
        await AssemblyAITranscriptionSource(api_key=None).start()


@pytest.mark.asyncio
async def test_assemblyai_token_failure():
    source = AssemblyAITranscriptionSource(api_key="key", http_client=_token_client(status=401, payload={}))
    with pytest.raises(AcquisitionError, match="token"):
        await source.start()


@pytest.mark.asyncio
async def test_assemblyai_connect_failure():
    async def connect(url):
        raise OSError("network unreachable")

    source = AssemblyAITranscriptionSource(api_key="key", http_client=_token_client(), connect=connect)
    with pytest.raises(AcquisitionError, match="network unreachable"):
        await source.start()


def _pcm(seconds=0.1, rate=16000):
    t = np.arange(int(seconds * rate)) / rate
    return (np.sin(2 * np.pi * 220 * t) * 8000).astype(np.int16).tobytes()


@pytest.mark.asyncio
async def test_whisper_source_partials_and_final():
    heard = []

    def transcribe(audio, sample_rate):
        heard.append(len(audio))
        return ["I need", "I need my refund", "I need my refund today"][min(len(heard) - 1, 2)]

    source = WhisperTranscriptionSource(interval_ms=10, transcribe=transcribe)
    sub = await source.start()
    source.feed_audio(_pcm())

    first = await _next(sub)
    assert first.text == "I need"
    assert first.is_final is False

    source.feed_audio(_pcm())
    second = await _next(sub)
    assert second.text == "I need my refund"

    await source.stop()
    events = [e async for e in sub]
    assert events[-1].is_final is True
    assert events[-1].text == "I need my refund today"
    # The last transcription saw the whole utterance.
    assert heard[-1] == 2 * len(_pcm()) // 2


@pytest.mark.asyncio
async def test_whisper_source_filters_silence_hallucinations():
    source = WhisperTranscriptionSource(interval_ms=10, transcribe=lambda audio, sr: "Thank you.")
    sub = await source.start()
    source.feed_audio(_pcm())
    await asyncio.sleep(0.05)
    await source.stop()

    events = [e async for e in sub]
    assert [(e.text, e.is_final) for e in events] == [("", True)]


@pytest.mark.asyncio
async def test_whisper_source_failure_is_stream_error():
    def transcribe(audio, sample_rate):
        raise RuntimeError("CUDA out of memory")

    source = WhisperTranscriptionSource(interval_ms=10, transcribe=transcribe)
    sub = await source.start()
    source.feed_audio(_pcm())
    with pytest.raises(StreamError, match="CUDA out of memory"):
        await _next(sub)
    await source.stop()


@pytest.mark.asyncio
async def test_whisper_preload_failure_is_acquisition_error():
    def preload():
        raise ImportError("No module named 'torch'")

    source = WhisperTranscriptionSource(transcribe=lambda a, sr: "", preload=preload)
    with pytest.raises(AcquisitionError, match="local"):
        await source.start()


def test_garbage_text_filter():
    assert _looks_like_garbage_text("")
    assert _looks_like_garbage_text("you")
    assert _looks_like_garbage_text("... ??? !!! ---")
    assert not _looks_like_garbage_text("I want a refund")


def test_create_transcription_source():
    assert isinstance(create_transcription_source("assemblyai"), AssemblyAITranscriptionSource)
    assert isinstance(create_transcription_source("whisper"), WhisperTranscriptionSource)
    with pytest.raises(ValueError):
        create_transcription_source("deepgram")
