import asyncio
from collections.abc import AsyncIterator

import numpy as np
import pytest

from parley.adapters.memory_store import InMemoryConversationStore
from parley.domain.context_window import ContextWindowBuilder
from parley.domain.errors import DeviceUnavailable
from parley.domain.interruption import InterruptionDetector
from parley.domain.wake_word import WakePhraseDetector
from parley.ports.speech_sink import PlaybackEvent, PlaybackEventKind
from parley.ports.transcript_source import CaptureMode, TranscriptEvent

SAMPLE_RATE = 24000


def generate_sine_wave(
    frequency: float = 440.0,
    duration_ms: int = 32,
    amplitude: float = 0.8,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(num_samples) / sample_rate
    signal = np.sin(2 * np.pi * frequency * t) * amplitude
    return (signal * 32767).astype(np.int16).tobytes()


class FakeTranscriptSource:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[TranscriptEvent] = asyncio.Queue()
        self._started = False
        self.mode: CaptureMode | None = None
        self.start_calls: list[CaptureMode] = []
        self.stop_calls = 0
        self.fail_modes: set[CaptureMode] = set()

    @property
    def active(self) -> bool:
        return self._started

    async def start(self, mode: CaptureMode) -> None:
        self.start_calls.append(mode)
        if mode in self.fail_modes:
            raise DeviceUnavailable("microphone", "no input device")
        self._started = True
        self.mode = mode

    async def stop(self) -> None:
        self.stop_calls += 1
        self._started = False
        self.mode = None

    async def transcripts(self) -> AsyncIterator[TranscriptEvent]:
        while True:
            yield await self._queue.get()

    def emit(self, text: str, is_final: bool = False, timestamp: float | None = None) -> None:
        if timestamp is None:
            self._queue.put_nowait(TranscriptEvent(text=text, is_final=is_final))
        else:
            self._queue.put_nowait(TranscriptEvent(text=text, is_final=is_final, timestamp=timestamp))


class FakeSpeechSink:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[PlaybackEvent] = asyncio.Queue()
        self._utterance_id = 0
        self.spoken: list[str] = []
        self.stop_calls = 0
        self.fail_speak = False

    async def speak(self, text: str) -> int:
        if self.fail_speak:
            raise DeviceUnavailable("speaker", "no output device")
        self._utterance_id += 1
        self.spoken.append(text)
        return self._utterance_id

    async def stop(self) -> None:
        self.stop_calls += 1

    async def events(self) -> AsyncIterator[PlaybackEvent]:
        while True:
            yield await self._queue.get()

    def emit_started(self, utterance_id: int, timestamp: float) -> None:
        self._queue.put_nowait(
            PlaybackEvent(kind=PlaybackEventKind.STARTED, utterance_id=utterance_id, timestamp=timestamp)
        )

    def emit_finished(self, utterance_id: int) -> None:
        self._queue.put_nowait(
            PlaybackEvent(kind=PlaybackEventKind.FINISHED_NATURALLY, utterance_id=utterance_id)
        )


class FakeCompletion:
    def __init__(self, replies: list[str] | None = None) -> None:
        self._replies = list(replies or ["Hello there!"])
        self.prompts: list[str] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if len(self._replies) > 1:
            return self._replies.pop(0)
        return self._replies[0]


class FakeSynthesizer:
    def __init__(self, chunks: list[bytes] | None = None) -> None:
        self._chunks = chunks if chunks is not None else [generate_sine_wave(duration_ms=100)] * 3
        self._cancelled = False
        self.voices: list[str] = []
        self.release: asyncio.Event | None = None

    async def synthesize(self, text: str, voice: str = "en-US-GuyNeural") -> AsyncIterator[bytes]:
        self._cancelled = False
        self.voices.append(voice)
        for index, chunk in enumerate(self._chunks):
            if self._cancelled:
                break
            yield chunk
            if index == 0 and self.release is not None:
                await self.release.wait()
            await asyncio.sleep(0)

    async def cancel(self) -> None:
        self._cancelled = True


class FakePlayback:
    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._started = False
        self._cancelled = False
        self.drained = 0

    @property
    def played_chunks(self) -> list[bytes]:
        return self._chunks

    async def start(self) -> None:
        self._started = True
        self._cancelled = False

    async def stop(self) -> None:
        self._started = False

    async def play_chunk(self, audio_data: bytes) -> None:
        if not self._cancelled:
            self._chunks.append(audio_data)

    async def drain(self) -> None:
        self.drained += 1

    async def cancel(self) -> None:
        self._cancelled = True
        self._chunks.clear()


@pytest.fixture
def fake_source():
    return FakeTranscriptSource()


@pytest.fixture
def fake_sink():
    return FakeSpeechSink()


@pytest.fixture
def fake_completion():
    return FakeCompletion()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def fake_playback():
    return FakePlayback()


@pytest.fixture
def memory_store():
    return InMemoryConversationStore()


@pytest.fixture
def wake_detector():
    return WakePhraseDetector()


@pytest.fixture
def interruption_detector():
    return InterruptionDetector()


@pytest.fixture
def context_builder():
    return ContextWindowBuilder()
