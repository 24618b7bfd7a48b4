"""Tests for SoundDeviceRecorder."""

from __future__ import annotations

from queue import Queue
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from models import AudioFrame
from recorder import SoundDeviceRecorder


# ---------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------

def _block(n_samples: int = 1600, amplitude: int = 0) -> np.ndarray:
    """Shape of what sounddevice hands the callback for a mono int16 stream."""
    return np.full((n_samples, 1), amplitude, dtype=np.int16)


def _started(mock_sd: MagicMock, queue: Queue | None = None, **kwargs) -> tuple[SoundDeviceRecorder, Queue]:  # noqa: ANN003
    mock_sd.InputStream.return_value = MagicMock()
    recorder = SoundDeviceRecorder(**kwargs)
    q: Queue[AudioFrame | None] = queue if queue is not None else Queue()
    recorder.start(q)
    return recorder, q


# ---------------------------------------------------------------
# Stream lifecycle
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_start_opens_stream_with_half_second_blocks(mock_sd: MagicMock) -> None:
    recorder, _ = _started(mock_sd, device="USB Mic")

    kwargs = mock_sd.InputStream.call_args.kwargs
    assert kwargs["samplerate"] == 16000
    assert kwargs["channels"] == 1
    assert kwargs["dtype"] == "int16"
    assert kwargs["blocksize"] == 8000
    assert kwargs["device"] == "USB Mic"
    mock_sd.InputStream.return_value.start.assert_called_once()
    assert recorder.capturing is True
    recorder.stop()


@patch("recorder.sd")
def test_stop_closes_stream_and_queues_sentinel(mock_sd: MagicMock) -> None:
    recorder, q = _started(mock_sd)
    stream = mock_sd.InputStream.return_value

    recorder.stop()

    stream.stop.assert_called_once()
    stream.close.assert_called_once()
    assert recorder.capturing is False
    assert q.get_nowait() is None


@patch("recorder.sd")
def test_start_and_stop_are_idempotent(mock_sd: MagicMock) -> None:
    recorder, q = _started(mock_sd)
    recorder.start(q)
    assert mock_sd.InputStream.call_count == 1

    recorder.stop()
    recorder.stop()
    assert mock_sd.InputStream.return_value.close.call_count == 1
    # Every stop leaves an end-of-stream marker for the reader.
    assert q.get_nowait() is None
    assert q.get_nowait() is None


@patch("recorder.sd")
def test_stream_is_closed_even_when_stop_fails(mock_sd: MagicMock) -> None:
    recorder, _ = _started(mock_sd)
    stream = mock_sd.InputStream.return_value
    stream.stop.side_effect = RuntimeError("PortAudio error")

    with pytest.raises(RuntimeError):
        recorder.stop()
    stream.close.assert_called_once()
    assert recorder.capturing is False


def test_start_raises_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    import recorder as rec_mod
    monkeypatch.setattr(rec_mod, "sd", None)

    with pytest.raises(RuntimeError, match="sounddevice is not installed"):
        SoundDeviceRecorder().start(Queue())


# ---------------------------------------------------------------
# Audio callback
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_callback_pushes_pcm_frames(mock_sd: MagicMock) -> None:
    recorder, q = _started(mock_sd, block_ms=100)

    recorder._on_audio(_block(1600), frames=1600, time_info=None, status=None)

    frame = q.get_nowait()
    assert isinstance(frame, AudioFrame)
    assert frame.sample_rate == 16000
    assert frame.channels == 1
    assert len(frame.pcm16_bytes) == 1600 * 2
    assert recorder.captured_ms == 100
    recorder.stop()


@patch("recorder.sd")
def test_full_queue_drops_blocks_and_restart_resets(mock_sd: MagicMock) -> None:
    recorder, _ = _started(mock_sd, queue=Queue(maxsize=1))

    recorder._on_audio(_block(), frames=1600, time_info=None, status=None)
    recorder._on_audio(_block(), frames=1600, time_info=None, status="input overflow")
    assert recorder.dropped_chunks == 1
    assert recorder.overflows == 1
    recorder.stop()

    recorder.start(Queue())
    assert recorder.dropped_chunks == 0
    assert recorder.overflows == 0
    assert recorder.captured_ms == 0
    recorder.stop()


@patch("recorder.sd")
def test_callback_after_stop_is_ignored(mock_sd: MagicMock) -> None:
    recorder, q = _started(mock_sd)
    recorder.stop()
    assert q.get_nowait() is None

    recorder._on_audio(_block(), frames=1600, time_info=None, status=None)
    assert q.empty()


@patch("recorder.sd")
def test_input_level_tracks_signal_energy(mock_sd: MagicMock) -> None:
    recorder, _ = _started(mock_sd)

    recorder._on_audio(_block(amplitude=0), frames=1600, time_info=None, status=None)
    assert recorder.input_level == 0.0

    for _ in range(40):
        recorder._on_audio(_block(amplitude=16000), frames=1600, time_info=None, status=None)
    assert 0.9 < recorder.input_level <= 1.0

    for _ in range(40):
        recorder._on_audio(_block(amplitude=0), frames=1600, time_info=None, status=None)
    assert recorder.input_level < 0.01
    recorder.stop()


# ---------------------------------------------------------------
# Input device probe
# ---------------------------------------------------------------

@patch("recorder.sd")
def test_check_input_device_accepts_microphone(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = {"name": "Built-in Microphone", "max_input_channels": 2}

    SoundDeviceRecorder(device=3).check_input_device()

    mock_sd.query_devices.assert_called_once_with(3, kind="input")


@patch("recorder.sd")
def test_check_input_device_raises_without_input(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.side_effect = ValueError("No input device matching")

    with pytest.raises(RuntimeError, match="No microphone available"):
        SoundDeviceRecorder().check_input_device()


@patch("recorder.sd")
def test_check_input_device_rejects_output_only_device(mock_sd: MagicMock) -> None:
    mock_sd.query_devices.return_value = {"name": "HDMI", "max_input_channels": 0}

    with pytest.raises(RuntimeError, match="No microphone available"):
        SoundDeviceRecorder().check_input_device()


def test_check_input_device_without_sounddevice(monkeypatch) -> None:  # noqa: ANN001
    import recorder as rec_mod
    monkeypatch.setattr(rec_mod, "sd", None)

    with pytest.raises(RuntimeError, match="sounddevice is not installed"):
        SoundDeviceRecorder().check_input_device()
