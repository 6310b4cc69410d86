import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace

from parley.domain.errors import DeviceUnavailable, EmptyCommand, ParleyError, RequestInFlight
from parley.domain.events import (
    BargeInCaptureDue,
    DomainEvent,
    ListenRequested,
    PlaybackFinished,
    PlaybackStarted,
    ReplyReady,
    ResetRequested,
    SendRequested,
    StopRequested,
    TranscriptReceived,
)
from parley.domain.interruption import InterruptionDetector
from parley.domain.state import Mode, validate_transition
from parley.domain.wake_word import WakePhraseDetector
from parley.ports.speech_sink import PlaybackEventKind, SpeechSinkPort
from parley.ports.transcript_source import CaptureMode, TranscriptSourcePort

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str], Awaitable[object]]


@dataclass
class TurnState:
    mode: Mode = Mode.IDLE
    transcript: str = ""
    wake_acquired: bool = False
    wake_variant: str | None = None
    capture_active: bool = False
    capture_mode: CaptureMode | None = None
    playback_active: bool = False
    utterance_id: int = 0
    interrupted: bool = False
    last_error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.name
        data["capture_mode"] = self.capture_mode.value if self.capture_mode else None
        return data


class TurnTakingEngine:
    """Single owner of capture/playback arbitration.

    Every external happening (transcripts, playback start/finish, user
    actions, delayed timers) becomes a DomainEvent on one queue, and run()
    applies them one at a time through dispatch(). Nothing else mutates
    TurnState.
    """

    def __init__(
        self,
        transcript_source: TranscriptSourcePort,
        speech_sink: SpeechSinkPort,
        interruption_detector: InterruptionDetector,
        wake_detector: WakePhraseDetector,
        barge_in_start_delay_seconds: float = 0.1,
        relisten_delay_seconds: float = 0.3,
        auto_submit_interruptions: bool = False,
    ) -> None:
        self._source = transcript_source
        self._sink = speech_sink
        self._detector = interruption_detector
        self._wake = wake_detector
        self._barge_in_start_delay = barge_in_start_delay_seconds
        self._relisten_delay = relisten_delay_seconds
        self._auto_submit_interruptions = auto_submit_interruptions

        self._state = TurnState()
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue()
        self._command_handler: CommandHandler | None = None
        self._interrupt_listeners: list[Callable[[str], None]] = []
        self._error_listeners: list[Callable[[ParleyError], None]] = []
        self._delayed_tasks: set[asyncio.Task] = set()
        self._submit_task: asyncio.Task | None = None
        self._pump_tasks: list[asyncio.Task] = []
        self._submit_after_interrupt = False
        self._running = False

        self._handlers: dict[type, Callable[[DomainEvent], Awaitable[None]]] = {
            ListenRequested: self._on_listen_requested,
            TranscriptReceived: self._on_transcript,
            SendRequested: self._on_send_requested,
            ReplyReady: self._on_reply_ready,
            PlaybackStarted: self._on_playback_started,
            BargeInCaptureDue: self._on_barge_in_capture_due,
            PlaybackFinished: self._on_playback_finished,
            StopRequested: self._on_stop_requested,
            ResetRequested: self._on_reset_requested,
        }

    @property
    def mode(self) -> Mode:
        return self._state.mode

    @property
    def transcript(self) -> str:
        return self._state.transcript

    @property
    def wake_acquired(self) -> bool:
        return self._state.wake_acquired

    @property
    def last_error(self) -> str | None:
        return self._state.last_error

    @property
    def running(self) -> bool:
        return self._running

    @property
    def submit_task(self) -> asyncio.Task | None:
        return self._submit_task

    @property
    def resources_consistent(self) -> bool:
        both_active = self._state.capture_active and self._state.playback_active
        return not both_active or self._state.mode == Mode.LISTENING_DURING_PLAYBACK

    def snapshot(self) -> TurnState:
        return replace(self._state)

    def set_command_handler(self, handler: CommandHandler) -> None:
        self._command_handler = handler

    def add_interrupt_listener(self, listener: Callable[[str], None]) -> None:
        self._interrupt_listeners.append(listener)

    def add_error_listener(self, listener: Callable[[ParleyError], None]) -> None:
        self._error_listeners.append(listener)

    def post(self, event: DomainEvent) -> None:
        self._queue.put_nowait(event)

    def start_listening(self) -> None:
        self.post(ListenRequested())

    def send(self) -> None:
        self.post(SendRequested())

    def stop_speaking(self) -> None:
        self.post(StopRequested())

    def reply_ready(self, text: str) -> None:
        self.post(ReplyReady(text=text))

    def reset(self) -> None:
        self.post(ResetRequested())

    async def run(self) -> None:
        self._running = True
        logger.info("Turn-taking engine started")
        self._pump_tasks = [
            asyncio.create_task(self._pump_transcripts()),
            asyncio.create_task(self._pump_playback_events()),
        ]
        try:
            while True:
                event = await self._queue.get()
                try:
                    await self.dispatch(event)
                except Exception:
                    logger.exception("Error handling %s", type(event).__name__)
        except asyncio.CancelledError:
            logger.info("Turn-taking engine cancelled")
        finally:
            self._running = False
            await self._stop_pumps()
            await self.shutdown()

    async def _stop_pumps(self) -> None:
        tasks, self._pump_tasks = self._pump_tasks, []
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error("Event pump %s failed", task.get_name(), exc_info=result)

    async def shutdown(self) -> None:
        self._cancel_delayed()
        await self._stop_playback()
        await self._stop_capture()

    async def dispatch(self, event: DomainEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("No handler for %s", type(event).__name__)
            return
        await handler(event)
        if not self.resources_consistent:
            logger.error(
                "Capture and playback both active in %s", self._state.mode.name
            )

    async def process_pending(self) -> int:
        processed = 0
        while not self._queue.empty():
            await self.dispatch(self._queue.get_nowait())
            processed += 1
        return processed

    async def _pump_transcripts(self) -> None:
        async for event in self._source.transcripts():
            self.post(
                TranscriptReceived(
                    timestamp=event.timestamp,
                    text=event.text,
                    is_final=event.is_final,
                )
            )

    async def _pump_playback_events(self) -> None:
        async for event in self._sink.events():
            if event.kind == PlaybackEventKind.STARTED:
                self.post(PlaybackStarted(timestamp=event.timestamp, utterance_id=event.utterance_id))
            elif event.kind == PlaybackEventKind.FINISHED_NATURALLY:
                self.post(PlaybackFinished(timestamp=event.timestamp, utterance_id=event.utterance_id))

    def _transition_to(self, target: Mode) -> None:
        validate_transition(self._state.mode, target)
        if target != self._state.mode:
            logger.info("Mode: %s -> %s", self._state.mode.name, target.name)
        self._state.mode = target

    async def _on_listen_requested(self, event: DomainEvent) -> None:
        if self._state.mode != Mode.IDLE:
            logger.debug("Listen request ignored in %s", self._state.mode.name)
            return
        if not await self._start_capture(CaptureMode.NORMAL):
            return
        self._clear_transcript()
        self._state.last_error = None
        self._transition_to(Mode.LISTENING)

    async def _on_transcript(self, event: TranscriptReceived) -> None:
        if not self._state.capture_active:
            return
        if not event.text.strip():
            return

        self._state.transcript = event.text
        if event.is_final:
            logger.info("Transcript: %s", event.text)
        else:
            logger.debug("Transcript (interim): %s", event.text)

        mode = self._state.mode
        if mode == Mode.LISTENING:
            if not self._state.wake_acquired:
                variant = self._wake.detect(event.text)
                if variant:
                    self._state.wake_acquired = True
                    self._state.wake_variant = variant
                    logger.info("Wake phrase detected: '%s' in '%s'", variant, event.text)
        elif mode == Mode.LISTENING_DURING_PLAYBACK:
            if self._state.playback_active:
                interrupt_text = self._detector.evaluate(
                    event.text,
                    event.is_final,
                    event.timestamp,
                    visible_text=self._state.transcript,
                )
                if interrupt_text:
                    await self._handle_interrupt(interrupt_text)
                return
            if self._submit_after_interrupt and event.is_final:
                self._submit_after_interrupt = False
                await self._on_send_requested(event)

    async def _handle_interrupt(self, text: str) -> None:
        logger.info("Barge-in: stopping playback, capture continues ('%s')", text[:50])
        await self._stop_playback()
        self._state.interrupted = True
        self._submit_after_interrupt = self._auto_submit_interruptions
        for listener in self._interrupt_listeners:
            listener(text)

    async def _on_send_requested(self, event: DomainEvent) -> None:
        mode = self._state.mode
        if mode not in (Mode.LISTENING, Mode.LISTENING_DURING_PLAYBACK):
            logger.debug("Send ignored in %s", mode.name)
            return
        if self._submit_task is not None and not self._submit_task.done():
            self._report(RequestInFlight())
            return

        command = self._wake.extract_command(self._state.transcript)
        if not command:
            self._report(EmptyCommand())
            return

        await self._stop_playback()
        await self._stop_capture()
        self._clear_transcript()
        self._transition_to(Mode.IDLE)
        logger.info("Command: %s", command)
        self._launch_submit(command)

    def _launch_submit(self, command: str) -> None:
        if self._command_handler is None:
            logger.warning("No command handler attached, dropping command")
            return
        self._submit_task = asyncio.create_task(self._run_submit(command))

    async def _run_submit(self, command: str) -> None:
        try:
            await self._command_handler(command)
        except ParleyError as exc:
            self._notify_error(exc)
        except Exception:
            logger.exception("Command handler failed")

    async def _on_reply_ready(self, event: ReplyReady) -> None:
        await self._stop_capture()
        await self._stop_playback()
        self._clear_transcript()

        try:
            utterance_id = await self._sink.speak(event.text)
        except DeviceUnavailable as exc:
            self._report(exc)
            self._transition_to(Mode.IDLE)
            if await self._start_capture(CaptureMode.NORMAL):
                self._transition_to(Mode.LISTENING)
            return

        self._state.utterance_id = utterance_id
        self._state.playback_active = True
        self._state.interrupted = False
        self._submit_after_interrupt = False
        self._transition_to(Mode.SPEAKING)
        logger.info("Speaking reply (%d chars)", len(event.text))

    async def _on_playback_started(self, event: PlaybackStarted) -> None:
        if not self._is_current_utterance(event.utterance_id) or self._state.mode != Mode.SPEAKING:
            return
        self._transition_to(Mode.LISTENING_DURING_PLAYBACK)
        self._detector.arm(event.timestamp)
        self._schedule(self._barge_in_start_delay, BargeInCaptureDue(utterance_id=event.utterance_id))

    async def _on_barge_in_capture_due(self, event: BargeInCaptureDue) -> None:
        if (
            not self._is_current_utterance(event.utterance_id)
            or self._state.mode != Mode.LISTENING_DURING_PLAYBACK
        ):
            return
        if not await self._start_capture(CaptureMode.BARGE_IN):
            self._detector.disarm()
            self._transition_to(Mode.SPEAKING)

    async def _on_playback_finished(self, event: PlaybackFinished) -> None:
        if not self._is_current_utterance(event.utterance_id):
            logger.debug("Ignoring finish for utterance %d", event.utterance_id)
            return
        self._state.playback_active = False
        self._detector.disarm()
        await self._stop_capture()
        self._clear_transcript()
        self._transition_to(Mode.IDLE)
        self._schedule(self._relisten_delay, ListenRequested())

    async def _on_stop_requested(self, event: DomainEvent) -> None:
        if self._state.mode not in (Mode.SPEAKING, Mode.LISTENING_DURING_PLAYBACK):
            logger.debug("Stop ignored in %s", self._state.mode.name)
            return
        await self._stop_playback()
        await self._stop_capture()
        self._clear_transcript()
        self._transition_to(Mode.IDLE)
        self._schedule(self._relisten_delay, ListenRequested())

    async def _on_reset_requested(self, event: DomainEvent) -> None:
        self._cancel_delayed()
        await self._stop_playback()
        await self._stop_capture()
        self._detector.reset()
        self._clear_transcript()
        self._state.last_error = None
        self._transition_to(Mode.IDLE)
        logger.info("Engine reset")

    def _is_current_utterance(self, utterance_id: int) -> bool:
        return self._state.playback_active and utterance_id == self._state.utterance_id

    async def _start_capture(self, mode: CaptureMode) -> bool:
        await self._stop_capture()
        try:
            await self._source.start(mode)
        except DeviceUnavailable as exc:
            self._report(exc)
            return False
        self._state.capture_active = True
        self._state.capture_mode = mode
        return True

    async def _stop_capture(self) -> None:
        if not self._state.capture_active:
            return
        await self._source.stop()
        self._state.capture_active = False
        self._state.capture_mode = None

    async def _stop_playback(self) -> None:
        if not self._state.playback_active:
            return
        await self._sink.stop()
        self._state.playback_active = False
        self._detector.disarm()

    def _clear_transcript(self) -> None:
        self._state.transcript = ""
        self._state.wake_acquired = False
        self._state.wake_variant = None
        self._state.interrupted = False
        self._submit_after_interrupt = False

    def _schedule(self, delay: float, event: DomainEvent) -> None:
        task = asyncio.create_task(self._post_later(delay, event))
        self._delayed_tasks.add(task)
        task.add_done_callback(self._delayed_tasks.discard)

    async def _post_later(self, delay: float, event: DomainEvent) -> None:
        await asyncio.sleep(delay)
        self.post(event)

    def _cancel_delayed(self) -> None:
        for task in list(self._delayed_tasks):
            task.cancel()
        self._delayed_tasks.clear()

    def _report(self, exc: ParleyError) -> None:
        logger.warning("%s", exc)
        self._notify_error(exc)

    def _notify_error(self, exc: ParleyError) -> None:
        self._state.last_error = str(exc)
        for listener in self._error_listeners:
            listener(exc)
