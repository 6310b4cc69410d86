import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Protocol

from parley.domain.conversation import contains_bengali
from parley.ports.speech_sink import PlaybackEvent, PlaybackEventKind
from parley.ports.synthesizer import SynthesizerPort

logger = logging.getLogger(__name__)


class PlaybackPort(Protocol):
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    async def play_chunk(self, audio_data: bytes) -> None: ...
    async def drain(self) -> None: ...
    async def cancel(self) -> None: ...


class PlaybackSpeechSink:
    """Speech sink built from a synthesizer and an audio output.

    "started" is emitted when the first audio chunk reaches the output and
    "finished" only when the whole utterance played out. stop() cancels the
    utterance; it and anything older never report a natural finish.
    """

    def __init__(
        self,
        synthesizer: SynthesizerPort,
        playback: PlaybackPort,
        voice: str,
        bengali_voice: str = "",
    ) -> None:
        self._synthesizer = synthesizer
        self._playback = playback
        self._voice = voice
        self._bengali_voice = bengali_voice
        self._events: asyncio.Queue[PlaybackEvent] = asyncio.Queue()
        self._utterance_id = 0
        self._task: asyncio.Task | None = None
        self._last_stopped_id = 0

    @property
    def speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    async def speak(self, text: str) -> int:
        await self.stop()
        await self._playback.start()
        self._utterance_id += 1
        utterance_id = self._utterance_id
        voice = self._voice_for(text)
        self._task = asyncio.create_task(self._play_utterance(utterance_id, text, voice))
        logger.info("Speaking utterance %d with voice %s: %s", utterance_id, voice, text[:50])
        return utterance_id

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        if task.done():
            return
        self._last_stopped_id = self._utterance_id
        await self._synthesizer.cancel()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await self._playback.cancel()
        logger.info("Stopped utterance %d", self._utterance_id)

    async def close(self) -> None:
        await self.stop()
        await self._playback.stop()

    async def events(self) -> AsyncIterator[PlaybackEvent]:
        while True:
            event = await self._events.get()
            if event.kind == PlaybackEventKind.FINISHED_NATURALLY and event.utterance_id <= self._last_stopped_id:
                continue
            yield event

    async def _play_utterance(self, utterance_id: int, text: str, voice: str) -> None:
        started = False
        try:
            async for chunk in self._synthesizer.synthesize(text, voice):
                if not started:
                    started = True
                    self._emit(PlaybackEventKind.STARTED, utterance_id)
                await self._playback.play_chunk(chunk)
            await self._playback.drain()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Speech synthesis failed for utterance %d", utterance_id)

        if not started:
            logger.warning("Utterance %d produced no audio", utterance_id)
        self._emit(PlaybackEventKind.FINISHED_NATURALLY, utterance_id)

    def _emit(self, kind: PlaybackEventKind, utterance_id: int) -> None:
        self._events.put_nowait(PlaybackEvent(kind=kind, utterance_id=utterance_id))

    def _voice_for(self, text: str) -> str:
        if self._bengali_voice and contains_bengali(text):
            return self._bengali_voice
        return self._voice
