from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class ParleyConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_")

    user_id: str = "local"
    db_path: str = "~/.local/share/parley/parley.db"
    ephemeral: bool = False
    max_turns_per_thread: int | None = None

    wake_phrase_variants: list[str] = ["hello", "hallo", "halo"]

    interrupt_grace_seconds: float = 2.0
    interrupt_debounce_seconds: float = 1.0
    interrupt_min_words: int = 2
    interrupt_final_min_chars: int = 8
    interrupt_partial_min_chars: int = 12
    interrupt_filler_words: list[str] = [
        "uh", "um", "ah", "eh", "oh", "hmm", "huh",
        "the", "a", "an", "is", "are", "was", "were",
    ]
    auto_submit_interruptions: bool = False

    context_budget_chars: int = 10_000
    context_turn_overhead_chars: int = 50
    context_recent_turns: int = 10
    context_medium_turns: int = 10
    context_medium_stride: int = 2
    context_older_stride: int = 4
    context_oldest_stride: int = 8

    barge_in_start_delay_seconds: float = 0.1
    relisten_delay_seconds: float = 0.3
    auto_listen_on_start: bool = True

    stt_model: str = "nova-2"
    stt_language: str = "en-US"
    deepgram_api_key_file: str = ""
    capture_device: str = ""
    capture_gain: float = 1.0
    sample_rate: int = 16000
    frame_duration_ms: int = 32

    tts_engine: Literal["edge-tts", "openai"] = "edge-tts"
    tts_voice: str = "en-US-GuyNeural"
    tts_voice_bengali: str = "bn-BD-NabanitaNeural"
    openai_tts_voice: str = "onyx"
    openai_api_key_file: str = ""
    playback_device: str = ""
    playback_sample_rate: int = 24000

    completion_engine: Literal["worker", "anthropic", "cli"] = "worker"
    worker_url: str = "http://localhost:8787/"
    worker_model: str = "gpt-4o-mini"
    worker_timeout_seconds: float = 60.0
    anthropic_api_key_file: str = ""
    anthropic_model: str = "claude-sonnet-4-5"
    completion_cli_command: str = "claude -p"

    system_prompt: str = (
        "This is a voice conversation via microphone and text-to-speech. "
        "Respond concisely in plain sentences. "
        "Match the spoken language. "
        "Never include markdown, code blocks, URLs, or any formatting."
    )

    socket_path: str = "/tmp/parley.sock"
    log_file: str = ""

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""
