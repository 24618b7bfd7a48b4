"""Microphone capture for the cloud backend (16 kHz mono PCM16 blocks)."""

from __future__ import annotations

import logging
import threading
import time
from queue import Full, Queue
from typing import Any, Optional, Union

from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

DeviceSpec = Optional[Union[int, str]]

# Input level is RMS energy scaled into 0..1 and smoothed between blocks.
LEVEL_GAIN = 8.5
LEVEL_SMOOTHING = 0.84


class SoundDeviceRecorder:
    """Pushes fixed-size PCM16 blocks from a sounddevice input stream into a queue.

    The audio callback runs on the PortAudio thread and never blocks: when
    the consumer falls behind, blocks are counted in ``dropped_chunks``
    instead of stalling the stream.  ``stop`` always leaves a ``None``
    sentinel in the queue so a reader can tell the stream ended.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        block_ms: int = 500,
        device: DeviceSpec = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_ms = block_ms
        self.device = device
        self.dropped_chunks = 0
        self.overflows = 0
        self._stream: Any = None
        self._queue: Queue[AudioFrame | None] | None = None
        self._capturing = False
        self._level = 0.0
        self._captured_samples = 0
        self._lock = threading.Lock()

    @property
    def capturing(self) -> bool:
        return self._capturing

    @property
    def input_level(self) -> float:
        """Smoothed microphone energy of the latest blocks, 0.0 to 1.0."""
        return self._level

    @property
    def captured_ms(self) -> int:
        return int(self._captured_samples * 1000 / self.sample_rate) if self.sample_rate else 0

    def check_input_device(self) -> None:
        """Raise RuntimeError when no usable microphone is available."""
        if sd is None:
            raise RuntimeError("sounddevice is not installed")
        try:
            info = sd.query_devices(self.device, kind="input")
        except Exception as exc:
            raise RuntimeError(f"No microphone available: {exc}") from exc
        if not info or int(info.get("max_input_channels", 0)) < self.channels:
            raise RuntimeError("No microphone available")

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._capturing:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._queue = audio_queue
            self._reset_counters()
            self._stream = self._open_stream()
            self._stream.start()
            self._capturing = True
        logger.debug(
            "Capture started: %d Hz, %d ch, %d ms blocks, device=%s",
            self.sample_rate,
            self.channels,
            self.block_ms,
            self.device,
        )

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
            was_capturing = self._capturing
            self._capturing = False
            if stream is not None:
                try:
                    stream.stop()
                finally:
                    stream.close()
            self._put_sentinel()
        if was_capturing:
            logger.debug("Capture stopped after %d ms", self.captured_ms)
        if self.dropped_chunks or self.overflows:
            logger.warning(
                "Capture lost audio: %d blocks dropped, %d input overflows",
                self.dropped_chunks,
                self.overflows,
            )

    def _open_stream(self) -> Any:
        return sd.InputStream(
            samplerate=self.sample_rate,
            channels=self.channels,
            dtype="int16",
            blocksize=int(self.sample_rate * self.block_ms / 1000),
            device=self.device,
            callback=self._on_audio,
        )

    def _reset_counters(self) -> None:
        self.dropped_chunks = 0
        self.overflows = 0
        self._captured_samples = 0
        self._level = 0.0

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            self.overflows += 1
        if not self._capturing or self._queue is None or np is None:
            return
        samples = np.asarray(indata, dtype=np.int16)
        self._captured_samples += frames
        self._update_level(samples)
        frame = AudioFrame(
            pcm16_bytes=samples.tobytes(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            self._queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1

    def _update_level(self, samples: Any) -> None:
        if not samples.size:
            return
        normalized = samples.astype(np.float32) / 32768.0
        rms = float(np.sqrt(np.mean(np.square(normalized))))
        energy = min(1.0, rms * LEVEL_GAIN)
        self._level = self._level * LEVEL_SMOOTHING + energy * (1.0 - LEVEL_SMOOTHING)

    def _put_sentinel(self) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(None)
        except Full:
            logger.debug("Audio queue full; end-of-stream marker not queued")
