import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .services import llm, stt, tts
from .services.metrics_dashboard import get_store, start_dashboard
from .services.persona import DEFAULT_SCENARIO_ID, list_scenarios, persona_for_scenario
from .services.turn_taking import SessionPhase, TurnCoordinator

load_dotenv()

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PRELOAD_MODELS = os.getenv("PRELOAD_MODELS", "1") == "1"

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("trainer")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load local models on startup to avoid first-request latency."""
    start_dashboard()
    if PRELOAD_MODELS:
        loop = asyncio.get_running_loop()
        if stt.STT_BACKEND == "whisper":
            try:
                await loop.run_in_executor(stt.stt_executor, stt.preload_whisper)
            except Exception as e:
                logger.warning(f"STT preload failed: {e}")
        await loop.run_in_executor(tts.tts_executor, tts.preload_tts)
    yield


app = FastAPI(lifespan=lifespan)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "stt_backend": stt.STT_BACKEND,
        "llm_provider": llm.LLM_PROVIDER,
        "tts_backend": tts.TTS_BACKEND,
    }


@app.get("/scenarios")
async def scenarios():
    return {"default": DEFAULT_SCENARIO_ID, "scenarios": list_scenarios()}


def build_coordinator(websocket: WebSocket, scenario_id: str = DEFAULT_SCENARIO_ID) -> TurnCoordinator:
    """One set of providers per connection, injected into a fresh coordinator."""

    async def deliver(audio: bytes) -> None:
        await websocket.send_bytes(audio)

    return TurnCoordinator(
        transcription=stt.create_transcription_source(),
        generation=llm.create_generation_source(),
        speech=tts.create_speech_sink(deliver),
        persona=persona_for_scenario(scenario_id),
        metrics=get_store(),
    )


class ClientSession:
    """
    Commands for one websocket connection. Start and stop wait on the
    transcription provider, so they run as tasks (one after another) and the
    receive loop keeps reading cancel / reset while they are in flight.
    """

    def __init__(self, coordinator: TurnCoordinator):
        self.coordinator = coordinator
        self.recording_task: Optional[asyncio.Task] = None

    def _run_recording(self, action: Callable[[], Awaitable[object]]) -> asyncio.Task:
        previous = self.recording_task

        async def run() -> None:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            try:
                await action()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Recording command failed")

        self.recording_task = asyncio.create_task(run())
        return self.recording_task

    async def dispatch(self, obj: Dict[str, object]) -> Optional[str]:
        """Run one client command. Returns an error message for the client, if any."""
        coordinator = self.coordinator
        t = obj.get("type")
        if t == "start":
            self._run_recording(coordinator.start_recording)
        elif t == "stop":
            self._run_recording(coordinator.stop_recording)
        elif t == "cancel":
            coordinator.cancel_generation()
        elif t == "reset":
            await coordinator.reset()
        elif t == "stop_speech":
            coordinator.stop_speech()
        elif t == "escalate":
            coordinator.escalate()
        elif t == "clear_error":
            coordinator.clear_error()
        elif t == "configure":
            scenario_id = str(obj.get("scenario_id") or "")
            try:
                persona = persona_for_scenario(scenario_id)
            except ValueError as e:
                return str(e)
            if not coordinator.configure(persona):
                return f"Cannot change scenario while {coordinator.phase.value}"
        else:
            return f"Unknown command: {t}"
        return None

    async def close(self) -> None:
        task, self.recording_task = self.recording_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.coordinator.close()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("Client connected")

    try:
        coordinator = build_coordinator(websocket)
    except ValueError as e:
        logger.error(f"Could not build providers: {e}")
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close()
        return

    outbox: "asyncio.Queue[dict]" = asyncio.Queue()

    def on_event(event: str, payload: Dict[str, object]) -> None:
        outbox.put_nowait({"type": event, **payload})

    async def sender() -> None:
        while True:
            message = await outbox.get()
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.info(f"Stopped sending events: {e}")
                return

    session = ClientSession(coordinator)
    coordinator.add_listener(on_event)
    sender_task = asyncio.create_task(sender())
    on_event("state", coordinator.snapshot())

    try:
        while True:
            try:
                message = await websocket.receive()
            except RuntimeError:
                # Starlette raises RuntimeError if receive() is called after disconnect was observed.
                break
            if message.get("type") == "websocket.disconnect":
                break

            chunk = message.get("bytes")
            if chunk:
                if coordinator.phase is SessionPhase.LISTENING:
                    coordinator.transcription.feed_audio(chunk)
                continue

            text_payload = message.get("text")
            if text_payload is None:
                continue
            try:
                obj = json.loads(text_payload)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring malformed command: {text_payload[:80]!r}")
                continue
            if not isinstance(obj, dict):
                continue
            error = await session.dispatch(obj)
            if error:
                on_event("error", {"message": error})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Websocket session failed")
    finally:
        logger.info("Client disconnected")
        await session.close()
        sender_task.cancel()
        try:
            await sender_task
        except asyncio.CancelledError:
            pass


def run() -> None:
    import uvicorn

    logger.info("Starting server. Make sure you have an .env file with your provider API keys.")
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
