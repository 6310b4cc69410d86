import asyncio
import logging
from collections.abc import AsyncIterator
from time import time

from deepgram import AsyncDeepgramClient
from deepgram.extensions.types.sockets.listen_v1_results_event import ListenV1ResultsEvent
from deepgram.listen.v1.socket_client import EventType

from parley.adapters.sounddevice_audio import SounddeviceCapture
from parley.domain.errors import DeviceUnavailable
from parley.ports.transcript_source import CaptureMode, TranscriptEvent

logger = logging.getLogger(__name__)

ENDPOINTING_MS = {
    CaptureMode.NORMAL: "300",
    CaptureMode.BARGE_IN: "200",
}


class DeepgramTranscriptSource:
    """Microphone -> Deepgram streaming STT, exposed as session-cumulative transcripts.

    Deepgram reports one segment at a time; each emitted event carries every
    finalized segment of the current capture session plus the live segment,
    so the text always reads as "everything recognized so far".
    """

    def __init__(
        self,
        api_key: str,
        capture: SounddeviceCapture,
        model: str = "nova-2",
        language: str = "en-US",
    ) -> None:
        self._api_key = api_key
        self._capture = capture
        self._model = model
        self._language = language
        self._socket = None
        self._context_manager = None
        self._listener_task: asyncio.Task | None = None
        self._audio_task: asyncio.Task | None = None
        self._transcript_queue: asyncio.Queue[TranscriptEvent] = asyncio.Queue()
        self._committed_segments: list[str] = []
        self._mode: CaptureMode | None = None

    @property
    def active(self) -> bool:
        return self._mode is not None

    async def start(self, mode: CaptureMode) -> None:
        if self.active:
            await self.stop()

        await self._capture.start()
        try:
            client = AsyncDeepgramClient(api_key=self._api_key)
            self._context_manager = client.listen.v1.connect(
                model=self._model,
                language=self._language,
                encoding="linear16",
                sample_rate=str(self._capture.sample_rate),
                channels="1",
                interim_results="true",
                endpointing=ENDPOINTING_MS[mode],
                smart_format="true",
            )
            self._socket = await self._context_manager.__aenter__()
        except Exception as exc:
            self._context_manager = None
            await self._capture.stop()
            raise DeviceUnavailable("transcriber", str(exc)) from exc

        self._socket.on(EventType.MESSAGE, self._on_message)
        self._socket.on(EventType.ERROR, self._on_error)
        self._listener_task = asyncio.create_task(self._socket.start_listening())
        self._audio_task = asyncio.create_task(self._forward_audio())
        self._committed_segments = []
        self._mode = mode
        logger.info("Transcript source started (%s)", mode.value)

    async def stop(self) -> None:
        if not self.active:
            return
        self._mode = None

        for task in (self._audio_task, self._listener_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._audio_task = None
        self._listener_task = None

        if self._context_manager:
            try:
                await self._context_manager.__aexit__(None, None, None)
            except Exception:
                logger.debug("Deepgram socket close failed", exc_info=True)
        self._context_manager = None
        self._socket = None
        await self._capture.stop()
        self._committed_segments = []
        logger.info("Transcript source stopped")

    async def transcripts(self) -> AsyncIterator[TranscriptEvent]:
        while True:
            event = await self._transcript_queue.get()
            yield event

    async def _forward_audio(self) -> None:
        async for frame in self._capture.read_frames():
            if self._socket is None:
                break
            try:
                await self._socket._send(frame)
            except Exception:
                logger.warning("Failed to send audio to Deepgram")

    async def _on_message(self, message) -> None:
        if not self.active or not isinstance(message, ListenV1ResultsEvent):
            return
        try:
            segment = message.channel.alternatives[0].transcript
        except (IndexError, AttributeError):
            return
        if not segment:
            return

        is_final = bool(message.is_final or message.speech_final)
        if is_final:
            self._committed_segments.append(segment)
            text = " ".join(self._committed_segments)
        else:
            text = " ".join([*self._committed_segments, segment])

        await self._transcript_queue.put(
            TranscriptEvent(text=text, is_final=is_final, timestamp=time())
        )

    async def _on_error(self, error) -> None:
        logger.error("Deepgram error: %s", error)
