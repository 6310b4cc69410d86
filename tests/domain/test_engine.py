import asyncio

import pytest

from parley.domain.engine import TurnTakingEngine
from parley.domain.errors import BackendUnreachable, DeviceUnavailable, EmptyCommand, RequestInFlight
from parley.domain.events import (
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
from parley.domain.state import Mode
from parley.domain.wake_word import WakePhraseDetector
from parley.ports.transcript_source import CaptureMode
from tests.conftest import FakeSpeechSink, FakeTranscriptSource

TTS_STARTED_AT = 100.0


def make_engine(source, sink, **kwargs) -> TurnTakingEngine:
    kwargs.setdefault("barge_in_start_delay_seconds", 0.0)
    kwargs.setdefault("relisten_delay_seconds", 0.0)
    return TurnTakingEngine(
        transcript_source=source,
        speech_sink=sink,
        interruption_detector=InterruptionDetector(),
        wake_detector=WakePhraseDetector(),
        **kwargs,
    )


async def settle(engine: TurnTakingEngine) -> None:
    for _ in range(3):
        for _ in range(5):
            await asyncio.sleep(0)
        await engine.process_pending()


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class EngineHarness:
    def setup_method(self):
        self.source = FakeTranscriptSource()
        self.sink = FakeSpeechSink()
        self.commands: list[str] = []
        self.interrupts: list[str] = []
        self.errors: list[Exception] = []

    def build(self, **kwargs) -> TurnTakingEngine:
        engine = make_engine(self.source, self.sink, **kwargs)

        async def handler(command: str) -> None:
            self.commands.append(command)

        engine.set_command_handler(handler)
        engine.add_interrupt_listener(self.interrupts.append)
        engine.add_error_listener(self.errors.append)
        return engine

    async def speaking(self, engine: TurnTakingEngine, text: str = "It is noon.") -> None:
        await engine.dispatch(ReplyReady(text=text))

    async def listening_during_playback(self, engine: TurnTakingEngine) -> None:
        await self.speaking(engine)
        await engine.dispatch(PlaybackStarted(timestamp=TTS_STARTED_AT, utterance_id=1))
        await settle(engine)


class TestListening(EngineHarness):
    @pytest.mark.asyncio
    async def test_listen_from_idle_starts_normal_capture(self):
        engine = self.build()
        await engine.dispatch(ListenRequested())
        assert engine.mode == Mode.LISTENING
        assert self.source.mode == CaptureMode.NORMAL

    @pytest.mark.asyncio
    async def test_listen_without_microphone_stays_idle(self):
        self.source.fail_modes.add(CaptureMode.NORMAL)
        engine = self.build()
        await engine.dispatch(ListenRequested())
        assert engine.mode == Mode.IDLE
        assert isinstance(self.errors[0], DeviceUnavailable)
        assert engine.last_error == "microphone unavailable: no input device"

    @pytest.mark.asyncio
    async def test_listen_ignored_while_speaking(self):
        engine = self.build()
        await self.speaking(engine)
        await engine.dispatch(ListenRequested())
        assert engine.mode == Mode.SPEAKING
        assert not self.source.active

    @pytest.mark.asyncio
    async def test_wake_phrase_detected_in_transcript(self):
        engine = self.build()
        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="hello what", is_final=False))
        assert engine.wake_acquired
        assert engine.transcript == "hello what"

    @pytest.mark.asyncio
    async def test_transcript_ignored_when_capture_inactive(self):
        engine = self.build()
        await engine.dispatch(TranscriptReceived(text="hello there", is_final=True))
        assert engine.transcript == ""
        assert not engine.wake_acquired


class TestSend(EngineHarness):
    @pytest.mark.asyncio
    async def test_send_submits_text_after_wake_phrase(self):
        engine = self.build()
        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="Hello what time is it", is_final=True))
        await engine.dispatch(SendRequested())
        await engine.submit_task

        assert self.commands == ["what time is it"]
        assert engine.mode == Mode.IDLE
        assert not self.source.active
        assert engine.transcript == ""

    @pytest.mark.asyncio
    async def test_send_without_wake_phrase_submits_whole_transcript(self):
        engine = self.build()
        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="turn on the lights", is_final=False))
        await engine.dispatch(SendRequested())
        await engine.submit_task
        assert self.commands == ["turn on the lights"]

    @pytest.mark.asyncio
    async def test_send_with_only_wake_phrase_reports_empty_command(self):
        engine = self.build()
        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="hello", is_final=True))
        await engine.dispatch(SendRequested())

        assert engine.submit_task is None
        assert isinstance(self.errors[0], EmptyCommand)
        assert engine.mode == Mode.LISTENING

    @pytest.mark.asyncio
    async def test_send_ignored_when_idle(self):
        engine = self.build()
        await engine.dispatch(SendRequested())
        assert engine.submit_task is None
        assert self.errors == []

    @pytest.mark.asyncio
    async def test_backend_failure_reaches_error_listeners(self):
        engine = self.build()

        async def failing(command: str) -> None:
            raise BackendUnreachable("worker down")

        engine.set_command_handler(failing)
        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="hello tell me a joke", is_final=True))
        await engine.dispatch(SendRequested())
        await engine.submit_task

        assert isinstance(self.errors[0], BackendUnreachable)
        assert engine.last_error == "worker down"
        assert engine.mode == Mode.IDLE

    @pytest.mark.asyncio
    async def test_send_while_request_in_flight_keeps_listening(self):
        engine = self.build()
        release = asyncio.Event()

        async def slow(command: str) -> None:
            self.commands.append(command)
            await release.wait()

        engine.set_command_handler(slow)
        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="hello what time is it", is_final=True))
        await engine.dispatch(SendRequested())
        first = engine.submit_task

        await engine.dispatch(ListenRequested())
        await engine.dispatch(TranscriptReceived(text="hello and the date", is_final=True))
        await engine.dispatch(SendRequested())

        assert engine.submit_task is first
        assert isinstance(self.errors[0], RequestInFlight)
        assert engine.mode == Mode.LISTENING
        assert self.source.active
        assert engine.transcript == "hello and the date"

        release.set()
        await first
        await engine.dispatch(SendRequested())
        await engine.submit_task
        assert self.commands == ["what time is it", "and the date"]


class TestSpeaking(EngineHarness):
    @pytest.mark.asyncio
    async def test_reply_stops_capture_and_speaks(self):
        engine = self.build()
        await engine.dispatch(ListenRequested())
        await self.speaking(engine, "Here you go.")

        assert engine.mode == Mode.SPEAKING
        assert self.sink.spoken == ["Here you go."]
        assert not self.source.active
        assert engine.resources_consistent

    @pytest.mark.asyncio
    async def test_speaker_failure_falls_back_to_listening(self):
        self.sink.fail_speak = True
        engine = self.build()
        await engine.dispatch(ListenRequested())
        await self.speaking(engine)

        assert engine.mode == Mode.LISTENING
        assert self.source.mode == CaptureMode.NORMAL
        assert isinstance(self.errors[0], DeviceUnavailable)

    @pytest.mark.asyncio
    async def test_playback_start_arms_barge_in_capture(self):
        engine = self.build()
        await self.listening_during_playback(engine)

        state = engine.snapshot()
        assert state.mode == Mode.LISTENING_DURING_PLAYBACK
        assert state.capture_active and state.playback_active
        assert state.capture_mode == CaptureMode.BARGE_IN
        assert engine.resources_consistent

    @pytest.mark.asyncio
    async def test_stale_playback_start_ignored(self):
        engine = self.build()
        await self.speaking(engine)
        await engine.dispatch(PlaybackStarted(timestamp=TTS_STARTED_AT, utterance_id=7))
        assert engine.mode == Mode.SPEAKING

    @pytest.mark.asyncio
    async def test_barge_in_capture_failure_keeps_speaking(self):
        self.source.fail_modes.add(CaptureMode.BARGE_IN)
        engine = self.build()
        await self.listening_during_playback(engine)

        assert engine.mode == Mode.SPEAKING
        assert not self.source.active
        assert isinstance(self.errors[0], DeviceUnavailable)

    @pytest.mark.asyncio
    async def test_natural_finish_returns_to_listening(self):
        engine = self.build()
        await self.listening_during_playback(engine)

        await engine.dispatch(PlaybackFinished(utterance_id=1))
        assert engine.mode == Mode.IDLE
        assert not self.source.active

        await settle(engine)
        assert engine.mode == Mode.LISTENING
        assert self.source.mode == CaptureMode.NORMAL

    @pytest.mark.asyncio
    async def test_finish_for_other_utterance_ignored(self):
        engine = self.build()
        await self.listening_during_playback(engine)
        await engine.dispatch(PlaybackFinished(utterance_id=99))
        assert engine.mode == Mode.LISTENING_DURING_PLAYBACK

    @pytest.mark.asyncio
    async def test_snapshot_serializes_mode_names(self):
        engine = self.build()
        await self.listening_during_playback(engine)
        data = engine.snapshot().to_dict()
        assert data["mode"] == "LISTENING_DURING_PLAYBACK"
        assert data["capture_mode"] == "barge-in"
        assert data["utterance_id"] == 1


class TestInterruption(EngineHarness):
    @pytest.mark.asyncio
    async def test_clear_interruption_stops_playback_once(self):
        engine = self.build()
        await self.listening_during_playback(engine)

        await engine.dispatch(
            TranscriptReceived(timestamp=TTS_STARTED_AT + 3.0, text="please stop now", is_final=True)
        )

        assert self.interrupts == ["please stop now"]
        assert self.sink.stop_calls == 1
        state = engine.snapshot()
        assert state.interrupted
        assert not state.playback_active
        assert state.capture_active
        assert state.mode == Mode.LISTENING_DURING_PLAYBACK

    @pytest.mark.asyncio
    async def test_filler_word_does_not_interrupt(self):
        engine = self.build()
        await self.listening_during_playback(engine)

        await engine.dispatch(TranscriptReceived(timestamp=TTS_STARTED_AT + 3.0, text="the", is_final=True))

        assert self.interrupts == []
        assert self.sink.stop_calls == 0
        assert engine.snapshot().playback_active

    @pytest.mark.asyncio
    async def test_speech_during_grace_period_does_not_interrupt(self):
        engine = self.build()
        await self.listening_during_playback(engine)

        await engine.dispatch(
            TranscriptReceived(timestamp=TTS_STARTED_AT + 0.5, text="please stop now", is_final=True)
        )
        assert self.interrupts == []

    @pytest.mark.asyncio
    async def test_manual_send_after_interruption(self):
        engine = self.build()
        await self.listening_during_playback(engine)
        await engine.dispatch(
            TranscriptReceived(timestamp=TTS_STARTED_AT + 3.0, text="please stop now", is_final=True)
        )
        await engine.dispatch(
            TranscriptReceived(timestamp=TTS_STARTED_AT + 4.0, text="please stop now what about Rome", is_final=True)
        )
        assert self.commands == []

        await engine.dispatch(SendRequested())
        await engine.submit_task
        assert self.commands == ["please stop now what about Rome"]
        assert engine.mode == Mode.IDLE
        assert not self.source.active

    @pytest.mark.asyncio
    async def test_auto_submit_after_interruption(self):
        engine = self.build(auto_submit_interruptions=True)
        await self.listening_during_playback(engine)
        await engine.dispatch(
            TranscriptReceived(timestamp=TTS_STARTED_AT + 3.0, text="please stop now", is_final=True)
        )
        await engine.dispatch(
            TranscriptReceived(timestamp=TTS_STARTED_AT + 4.0, text="please stop now tell me more", is_final=True)
        )
        await engine.submit_task
        assert self.commands == ["please stop now tell me more"]


class TestStopAndReset(EngineHarness):
    @pytest.mark.asyncio
    async def test_stop_while_speaking_relistens(self):
        engine = self.build()
        await self.speaking(engine)

        await engine.dispatch(StopRequested())
        assert engine.mode == Mode.IDLE
        assert self.sink.stop_calls == 1

        await settle(engine)
        assert engine.mode == Mode.LISTENING

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        engine = self.build()
        await self.listening_during_playback(engine)

        await engine.dispatch(StopRequested())
        await engine.dispatch(StopRequested())

        assert self.sink.stop_calls == 1
        assert engine.mode == Mode.IDLE
        assert not self.source.active

    @pytest.mark.asyncio
    async def test_stop_ignored_when_idle(self):
        engine = self.build()
        await engine.dispatch(StopRequested())
        assert self.sink.stop_calls == 0
        assert engine.mode == Mode.IDLE

    @pytest.mark.asyncio
    async def test_reset_cancels_pending_relisten(self):
        engine = self.build()
        await self.speaking(engine)
        await engine.dispatch(StopRequested())
        await engine.dispatch(ResetRequested())

        await settle(engine)
        assert engine.mode == Mode.IDLE
        assert not self.source.active

    @pytest.mark.asyncio
    async def test_reset_releases_everything(self):
        engine = self.build()
        await self.listening_during_playback(engine)
        await engine.dispatch(ResetRequested())

        state = engine.snapshot()
        assert state.mode == Mode.IDLE
        assert not state.capture_active
        assert not state.playback_active
        assert state.transcript == ""


class TestRunLoop(EngineHarness):
    @pytest.mark.asyncio
    async def test_full_turn_through_event_queue(self):
        engine = self.build()
        task = asyncio.create_task(engine.run())
        try:
            engine.start_listening()
            await wait_until(lambda: engine.mode == Mode.LISTENING)

            self.source.emit("hello open the pod bay doors", is_final=True)
            await wait_until(lambda: engine.wake_acquired)

            engine.send()
            await wait_until(lambda: self.commands == ["open the pod bay doors"])

            engine.reply_ready("I can do that.")
            await wait_until(lambda: engine.mode == Mode.SPEAKING)

            self.sink.emit_started(1, timestamp=TTS_STARTED_AT)
            await wait_until(lambda: engine.snapshot().capture_mode == CaptureMode.BARGE_IN)

            self.sink.emit_finished(1)
            await wait_until(lambda: engine.snapshot().capture_mode == CaptureMode.NORMAL)
            assert engine.mode == Mode.LISTENING
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert not engine.running
        assert not self.source.active

    @pytest.mark.asyncio
    async def test_failed_transcript_pump_is_logged_on_shutdown(self, caplog):
        async def broken_transcripts():
            raise DeviceUnavailable("transcriber", "socket dropped")
            yield

        self.source.transcripts = broken_transcripts
        engine = self.build()
        task = asyncio.create_task(engine.run())
        await wait_until(lambda: engine.running)
        for _ in range(5):
            await asyncio.sleep(0)

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert not engine.running
        assert any("Event pump" in record.getMessage() for record in caplog.records)
