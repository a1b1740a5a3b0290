import argparse
import asyncio
import json
import wave
from pathlib import Path
from typing import Optional

import websockets

# Audio settings
RATE = 16000
FRAME_MS = 20
FRAME_BYTES = RATE * FRAME_MS // 1000 * 2  # PCM16 mono

COMMANDS = {
    "start": "start",
    "stop": "stop",
    "cancel": "cancel",
    "reset": "reset",
    "hush": "stop_speech",
    "escalate": "escalate",
    "clear": "clear_error",
}

HELP = (
    "Commands: start, stop, cancel, reset, hush (stop speech), escalate, clear (error), "
    "scenario <id>, quit"
)


def _read_wav_frames(path: Path) -> list:
    with wave.open(str(path), "rb") as wf:
        if wf.getframerate() != RATE or wf.getnchannels() != 1 or wf.getsampwidth() != 2:
            raise ValueError(f"{path} must be 16 kHz mono 16-bit PCM")
        pcm = wf.readframes(wf.getnframes())
    return [pcm[i:i + FRAME_BYTES] for i in range(0, len(pcm), FRAME_BYTES)]


async def stream_wav(websocket, frames: list) -> None:
    """Play the WAV file into the server in real time, as if it were a microphone."""
    for frame in frames:
        await websocket.send(frame)
        await asyncio.sleep(FRAME_MS / 1000)


async def receive_events(websocket, audio_dir: Path) -> None:
    audio_count = 0
    async for message in websocket:
        if isinstance(message, bytes):
            audio_count += 1
            out = audio_dir / f"reply_{audio_count:03d}.wav"
            out.write_bytes(message)
            print(f"[audio] saved {out}")
            continue
        try:
            event = json.loads(message)
        except json.JSONDecodeError:
            continue
        t = event.get("type")
        if t == "partial":
            print(f"[you...] {event.get('text', '')}")
        elif t == "final":
            print(f"[you] {event.get('text', '')}")
        elif t == "fragment":
            print(event.get("text", ""), end="", flush=True)
        elif t == "reply":
            print(f"\n[agent] {event.get('text', '')}")
        elif t == "error":
            print(f"[error] {event.get('message', '')}")
        elif t == "state":
            print(f"[state] {event.get('phase')} (intensity {event.get('intensity')})")
        elif t == "reset":
            print("[reset] conversation cleared")


async def main(uri: str, wav: Optional[Path], audio_dir: Path) -> None:
    frames = _read_wav_frames(wav) if wav else []
    audio_dir.mkdir(parents=True, exist_ok=True)

    async with websockets.connect(uri) as websocket:
        print("Connected to server.")
        print(HELP)
        receiver = asyncio.create_task(receive_events(websocket, audio_dir))
        streamer: Optional[asyncio.Task] = None
        try:
            while True:
                line = (await asyncio.to_thread(input, "> ")).strip()
                if not line:
                    continue
                if line in ("quit", "exit"):
                    break
                cmd, _, arg = line.partition(" ")
                if cmd == "scenario":
                    await websocket.send(json.dumps({"type": "configure", "scenario_id": arg.strip()}))
                    continue
                if cmd not in COMMANDS:
                    print(HELP)
                    continue
                await websocket.send(json.dumps({"type": COMMANDS[cmd]}))
                if cmd == "start" and frames:
                    streamer = asyncio.create_task(stream_wav(websocket, frames))
                elif cmd in ("stop", "reset") and streamer is not None:
                    streamer.cancel()
                    streamer = None
        except (websockets.exceptions.ConnectionClosed, EOFError):
            print("Connection to server closed.")
        finally:
            if streamer is not None:
                streamer.cancel()
            receiver.cancel()


def cli() -> None:
    parser = argparse.ArgumentParser(description="Terminal client for the difficult-customer trainer.")
    parser.add_argument("--uri", default="ws://localhost:8000/ws")
    parser.add_argument("--wav", type=Path, help="16 kHz mono WAV streamed as microphone audio after 'start'")
    parser.add_argument("--audio-dir", type=Path, default=Path("replies"), help="where received speech is saved")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.uri, args.wav, args.audio_dir))
    except KeyboardInterrupt:
        print("Client stopped by user.")


if __name__ == "__main__":
    cli()
