"""
Stream a WAV file into a running relay and print what comes back.

    python -m apps.relay.stream_wav ws://localhost:3000/?sessionId=demo Recording.wav

The file is downmixed to mono, resampled to 16 kHz and sent as float32
little-endian frames of 100 ms, paced in real time.  After the last frame the
end signal (an empty binary frame) is sent and replies are printed until the
analysis (or an error) arrives.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time

import numpy as np
import scipy.signal
import soundfile as sf
import websockets

TARGET_SR = 16000
FRAME_MS = 100


def prepare_audio(data: np.ndarray, sr: int) -> bytes:
    """Mono, 16 kHz, float32 little-endian PCM in [-1, 1]."""
    data = np.asarray(data, dtype=np.float64)
    if data.ndim > 1:
        data = np.mean(data, axis=1)

    if sr != TARGET_SR:
        number_of_samples = round(len(data) * float(TARGET_SR) / sr)
        data = scipy.signal.resample(data, number_of_samples)

    data = np.clip(data, -1.0, 1.0)
    return data.astype("<f4").tobytes()


def iter_frames(pcm: bytes, frame_ms: int = FRAME_MS):
    frame_bytes = TARGET_SR * frame_ms // 1000 * 4
    for i in range(0, len(pcm), frame_bytes):
        yield pcm[i:i + frame_bytes]


async def stream(url: str, path: str, realtime: bool = True) -> None:
    data, sr = sf.read(path)
    print("Original SR:", sr, "channels:", 1 if data.ndim == 1 else data.shape[1])
    pcm = prepare_audio(data, sr)
    print(f"Streaming {len(pcm) / 4 / TARGET_SR:.1f}s of audio")

    async with websockets.connect(url) as ws:
        done = asyncio.Event()
        start_time = time.perf_counter()

        async def receiver():
            async for message in ws:
                msg = json.loads(message)
                elapsed_ms = (time.perf_counter() - start_time) * 1000
                kind = msg.get("type")
                if kind == "transcript":
                    marker = "FINAL" if msg.get("isFinal") else "partial"
                    print(f"[{elapsed_ms:8.0f}ms] {marker}: {msg.get('text')}")
                elif kind == "analysis":
                    print(json.dumps(msg.get("data"), indent=2, ensure_ascii=False))
                    print(f"WORDS={len(msg.get('words') or [])}")
                    done.set()
                elif kind == "error":
                    print(f"[{elapsed_ms:8.0f}ms] ERROR: {msg.get('message')}")
                else:
                    print("RAW_EVENT:", msg)
            done.set()

        receiver_task = asyncio.create_task(receiver())

        for frame in iter_frames(pcm):
            await ws.send(frame)
            if realtime:
                await asyncio.sleep(FRAME_MS / 1000)

        await ws.send(b"")
        await done.wait()
        receiver_task.cancel()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("url", help="relay websocket URL, e.g. ws://localhost:3000/?sessionId=demo")
    parser.add_argument("wav", help="audio file readable by soundfile")
    parser.add_argument("--fast", action="store_true", help="send frames without real-time pacing")
    args = parser.parse_args()
    asyncio.run(stream(args.url, args.wav, realtime=not args.fast))


if __name__ == "__main__":
    main()
