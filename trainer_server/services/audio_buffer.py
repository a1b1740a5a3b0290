from __future__ import annotations

from collections import deque
from typing import Deque

import numpy as np


def pcm16_to_float32(pcm16: bytes) -> np.ndarray:
    if len(pcm16) % 2:
        pcm16 = pcm16[:-1]
    x = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32)
    return (x / 32768.0).clip(-1.0, 1.0)


class UtteranceAudioBuffer:
    """
    Holds the PCM16 mono audio of the utterance being recorded, capped at the
    last ``max_seconds`` (Whisper only looks at 30 s windows anyway).
    """

    def __init__(self, max_seconds: float = 30.0, sample_rate: int = 16000):
        self.sample_rate = sample_rate
        self.max_samples = int(max_seconds * sample_rate)
        self._chunks: Deque[bytes] = deque()
        self._samples_in_buf = 0
        self.total_samples = 0
        # Odd trailing byte of the last push, held until its pair arrives
        self._carry = b""

    def push(self, pcm16: bytes) -> None:
        if self._carry:
            pcm16 = self._carry + pcm16
            self._carry = b""
        if len(pcm16) % 2:
            pcm16, self._carry = pcm16[:-1], pcm16[-1:]
        if not pcm16:
            return
        self._chunks.append(pcm16)
        n = len(pcm16) // 2
        self._samples_in_buf += n
        self.total_samples += n
        while self._samples_in_buf > self.max_samples and len(self._chunks) > 1:
            old = self._chunks.popleft()
            self._samples_in_buf -= len(old) // 2

    def clear(self) -> None:
        self._chunks.clear()
        self._samples_in_buf = 0
        self.total_samples = 0
        self._carry = b""

    @property
    def duration_s(self) -> float:
        return self._samples_in_buf / float(self.sample_rate)

    def __len__(self) -> int:
        return self._samples_in_buf

    def as_float32(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros(0, dtype=np.float32)
        return pcm16_to_float32(b"".join(self._chunks))
