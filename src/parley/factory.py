import logging
from dataclasses import dataclass

from parley.adapters.memory_store import InMemoryConversationStore
from parley.adapters.playback_sink import PlaybackSpeechSink
from parley.adapters.sounddevice_audio import SounddeviceCapture, SounddevicePlayback
from parley.adapters.sqlite_store import SqliteConversationStore
from parley.adapters.unix_control import UnixSocketControlServer
from parley.config import ParleyConfig
from parley.domain.context_window import ContextWindowBuilder, ContextWindowPolicy
from parley.domain.conversation import Session
from parley.domain.engine import TurnTakingEngine
from parley.domain.interruption import InterruptionDetector, InterruptionPolicy
from parley.domain.orchestrator import ConversationOrchestrator
from parley.domain.wake_word import WakePhraseDetector
from parley.ports.completion import CompletionPort
from parley.ports.control import ControlPort
from parley.ports.storage import ConversationStorePort
from parley.ports.synthesizer import SynthesizerPort
from parley.ports.transcript_source import TranscriptSourcePort

logger = logging.getLogger(__name__)


@dataclass
class Assistant:
    engine: TurnTakingEngine
    orchestrator: ConversationOrchestrator
    speech_sink: PlaybackSpeechSink
    store: ConversationStorePort
    control: ControlPort


def create_interruption_policy(config: ParleyConfig) -> InterruptionPolicy:
    return InterruptionPolicy(
        grace_seconds=config.interrupt_grace_seconds,
        debounce_seconds=config.interrupt_debounce_seconds,
        min_words=config.interrupt_min_words,
        final_min_chars=config.interrupt_final_min_chars,
        partial_min_chars=config.interrupt_partial_min_chars,
        filler_words=frozenset(w.lower() for w in config.interrupt_filler_words),
    )


def create_context_policy(config: ParleyConfig) -> ContextWindowPolicy:
    return ContextWindowPolicy(
        budget_chars=config.context_budget_chars,
        turn_overhead_chars=config.context_turn_overhead_chars,
        recent_turns=config.context_recent_turns,
        medium_turns=config.context_medium_turns,
        medium_stride=config.context_medium_stride,
        older_stride=config.context_older_stride,
        oldest_stride=config.context_oldest_stride,
    )


def create_store(config: ParleyConfig) -> ConversationStorePort:
    if config.ephemeral:
        return InMemoryConversationStore(max_turns_per_thread=config.max_turns_per_thread)
    return SqliteConversationStore(config.db_path, max_turns_per_thread=config.max_turns_per_thread)


def create_transcript_source(config: ParleyConfig) -> TranscriptSourcePort:
    from parley.adapters.deepgram_source import DeepgramTranscriptSource

    capture = SounddeviceCapture(
        device=config.capture_device or None,
        sample_rate=config.sample_rate,
        frame_duration_ms=config.frame_duration_ms,
        gain=config.capture_gain,
    )
    return DeepgramTranscriptSource(
        api_key=config.read_secret(config.deepgram_api_key_file),
        capture=capture,
        model=config.stt_model,
        language=config.stt_language,
    )


def create_synthesizer(config: ParleyConfig) -> SynthesizerPort:
    if config.tts_engine == "openai":
        from parley.adapters.openai_tts import OpenAITtsSynthesizer

        return OpenAITtsSynthesizer(api_key=config.read_secret(config.openai_api_key_file))

    from parley.adapters.edge_tts_synthesizer import EdgeTtsSynthesizer

    return EdgeTtsSynthesizer(sample_rate=config.playback_sample_rate)


def create_speech_sink(config: ParleyConfig) -> PlaybackSpeechSink:
    playback = SounddevicePlayback(
        sample_rate=config.playback_sample_rate,
        device=config.playback_device or None,
    )
    if config.tts_engine == "openai":
        voice, bengali_voice = config.openai_tts_voice, ""
    else:
        voice, bengali_voice = config.tts_voice, config.tts_voice_bengali
    return PlaybackSpeechSink(
        synthesizer=create_synthesizer(config),
        playback=playback,
        voice=voice,
        bengali_voice=bengali_voice,
    )


def create_completion(config: ParleyConfig) -> CompletionPort:
    if config.completion_engine == "cli":
        from parley.adapters.cli_completion import CliCompletion

        return CliCompletion(command=config.completion_cli_command)

    if config.completion_engine == "anthropic":
        from parley.adapters.anthropic_completion import AnthropicCompletion

        return AnthropicCompletion(
            api_key=config.read_secret(config.anthropic_api_key_file),
            model=config.anthropic_model,
            system_prompt=config.system_prompt,
        )

    from parley.adapters.worker_completion import WorkerCompletion

    return WorkerCompletion(
        worker_url=config.worker_url,
        model=config.worker_model,
        timeout_seconds=config.worker_timeout_seconds,
    )


def create_assistant(config: ParleyConfig) -> Assistant:
    store = create_store(config)
    speech_sink = create_speech_sink(config)

    engine = TurnTakingEngine(
        transcript_source=create_transcript_source(config),
        speech_sink=speech_sink,
        interruption_detector=InterruptionDetector(create_interruption_policy(config)),
        wake_detector=WakePhraseDetector(config.wake_phrase_variants),
        barge_in_start_delay_seconds=config.barge_in_start_delay_seconds,
        relisten_delay_seconds=config.relisten_delay_seconds,
        auto_submit_interruptions=config.auto_submit_interruptions,
    )
    orchestrator = ConversationOrchestrator(
        store=store,
        completion=create_completion(config),
        context_builder=ContextWindowBuilder(create_context_policy(config)),
        session=Session(user_id=config.user_id),
        engine=engine,
    )
    engine.set_command_handler(orchestrator.submit)
    logger.info(
        "Assistant assembled (completion=%s, tts=%s, store=%s)",
        config.completion_engine, config.tts_engine, "memory" if config.ephemeral else config.db_path,
    )

    return Assistant(
        engine=engine,
        orchestrator=orchestrator,
        speech_sink=speech_sink,
        store=store,
        control=UnixSocketControlServer(socket_path=config.socket_path),
    )
