import asyncio
import logging
import os
from collections.abc import AsyncIterator

import janus
import numpy as np
import sounddevice as sd

from parley.domain.errors import DeviceUnavailable

logger = logging.getLogger(__name__)

CAPTURE_QUEUE_FRAMES = 100


def find_device(name: str, kind: str = "input") -> int | None:
    """Index of the first PortAudio device whose name contains `name`, or None."""
    channels_key = "max_input_channels" if kind == "input" else "max_output_channels"
    for index, device in enumerate(sd.query_devices()):
        if name.lower() in device["name"].lower() and device[channels_key] > 0:
            return index
    return None


def resolve_device(device: str | int | None, kind: str = "input") -> int | None:
    if device is None or device == "":
        return None
    if isinstance(device, int):
        return device
    if device.isdigit():
        return int(device)
    index = find_device(device, kind)
    if index is not None:
        logger.info("Resolved %s device '%s' -> %d", kind, device, index)
        return index
    # PipeWire can still route a node PortAudio does not list
    os.environ["PIPEWIRE_NODE"] = device
    logger.info("Device '%s' not in PortAudio, routing through PIPEWIRE_NODE", device)
    return None


class SounddeviceCapture:
    """Microphone as 16-bit mono PCM frames, bridged from the PortAudio thread via janus."""

    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 16000,
        frame_duration_ms: int = 32,
        gain: float = 1.0,
    ) -> None:
        self._device = device
        self._sample_rate = sample_rate
        self._frame_duration_ms = frame_duration_ms
        self._frame_size = int(sample_rate * frame_duration_ms / 1000)
        self._gain = gain
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[bytes] | None = None

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def active(self) -> bool:
        return self._stream is not None

    async def start(self) -> None:
        if self.active:
            return
        queue: janus.Queue[bytes] = janus.Queue(maxsize=CAPTURE_QUEUE_FRAMES)
        device = resolve_device(self._device, "input")
        try:
            stream = sd.InputStream(
                device=device,
                samplerate=self._sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self._frame_size,
                callback=self._make_callback(queue),
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            queue.close()
            raise DeviceUnavailable("microphone", str(exc)) from exc

        self._queue = queue
        self._stream = stream
        logger.info(
            "Audio capture started (device=%s, rate=%d, frame=%dms, gain=%.1fx)",
            device, self._sample_rate, self._frame_duration_ms, self._gain,
        )

    async def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
        queue, self._queue = self._queue, None
        if queue is not None:
            queue.close()
            await queue.wait_closed()

    async def read_frames(self) -> AsyncIterator[bytes]:
        queue = self._queue
        if queue is None:
            return
        while self._queue is queue:
            try:
                yield await asyncio.wait_for(queue.async_q.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except (janus.AsyncQueueShutDown, RuntimeError):
                break

    def _make_callback(self, queue: janus.Queue[bytes]):
        gain = self._gain

        def on_audio(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            samples = np.clip(indata[:, 0] * gain, -1.0, 1.0)
            try:
                queue.sync_q.put_nowait((samples * 32767).astype(np.int16).tobytes())
            except (janus.SyncQueueFull, janus.SyncQueueShutDown):
                pass

        return on_audio


class SounddevicePlayback:
    """Blocking PortAudio writes pushed to a worker thread; odd trailing bytes carry over."""

    def __init__(self, sample_rate: int = 24000, device: str | int | None = None) -> None:
        self._sample_rate = sample_rate
        self._device = device or None
        self._stream: sd.OutputStream | None = None
        self._carry = b""

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    async def start(self) -> None:
        if self._stream is not None:
            return
        try:
            stream = sd.OutputStream(
                device=resolve_device(self._device, "output"),
                samplerate=self._sample_rate,
                channels=1,
                dtype="int16",
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailable("speaker", str(exc)) from exc
        self._stream = stream

    async def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
        self._carry = b""

    async def play_chunk(self, audio_data: bytes) -> None:
        stream = self._stream
        if stream is None:
            return
        data = self._carry + audio_data
        whole = len(data) - len(data) % 2
        self._carry = data[whole:]
        if whole:
            samples = np.frombuffer(data[:whole], dtype=np.int16).reshape(-1, 1)
            await asyncio.to_thread(self._write, stream, samples)

    async def drain(self) -> None:
        if self._stream is not None:
            await asyncio.sleep(self._stream.latency)

    async def cancel(self) -> None:
        self._carry = b""
        if self._stream is not None:
            self._stream.abort()
            self._stream.start()

    def _write(self, stream: sd.OutputStream, samples: np.ndarray) -> None:
        try:
            stream.write(samples)
        except sd.PortAudioError:
            logger.debug("Playback write interrupted")
