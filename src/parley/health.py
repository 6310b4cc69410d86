import logging
import shutil
from dataclasses import dataclass

import httpx
import sounddevice as sd

from parley.adapters.sounddevice_audio import find_device
from parley.config import ParleyConfig

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = {"audio_input", "audio_output", "api_keys"}


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(config: ParleyConfig) -> list[HealthCheckResult]:
    results = [
        _check_audio_input(config),
        _check_audio_output(config),
        _check_ffmpeg(config),
        _check_api_keys(config),
        _check_worker_reachable(config),
    ]

    passed = sum(1 for r in results if r.passed)
    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_audio_input(config: ParleyConfig) -> HealthCheckResult:
    return _check_audio_device("audio_input", config.capture_device, "input")


def _check_audio_output(config: ParleyConfig) -> HealthCheckResult:
    return _check_audio_device("audio_output", config.playback_device, "output")


def _check_audio_device(name: str, device: str, kind: str) -> HealthCheckResult:
    try:
        if device:
            index = find_device(device, kind)
            if index is not None:
                return HealthCheckResult(name=name, passed=True, detail=f"Device '{device}' found (index {index})")
        default = sd.query_devices(kind=kind)
        return HealthCheckResult(name=name, passed=True, detail=f"Default {kind}: {default['name']}")
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"No {kind} device: {exc}")


def _check_ffmpeg(config: ParleyConfig) -> HealthCheckResult:
    name = "ffmpeg"
    if config.tts_engine != "edge-tts":
        return HealthCheckResult(name=name, passed=True, detail=f"Skipped (tts={config.tts_engine})")
    path = shutil.which("ffmpeg")
    if path is None:
        return HealthCheckResult(name=name, passed=False, detail="ffmpeg not on PATH, edge-tts audio cannot be decoded")
    return HealthCheckResult(name=name, passed=True, detail=path)


def _check_api_keys(config: ParleyConfig) -> HealthCheckResult:
    name = "api_keys"
    missing = []

    if not config.read_secret(config.deepgram_api_key_file):
        missing.append(f"deepgram ({config.deepgram_api_key_file or 'not configured'})")

    if config.tts_engine == "openai" and not config.read_secret(config.openai_api_key_file):
        missing.append(f"openai ({config.openai_api_key_file or 'not configured'})")

    if config.completion_engine == "anthropic" and not config.read_secret(config.anthropic_api_key_file):
        missing.append(f"anthropic ({config.anthropic_api_key_file or 'not configured'})")

    if missing:
        return HealthCheckResult(name=name, passed=False, detail=f"Missing: {', '.join(missing)}")

    return HealthCheckResult(name=name, passed=True, detail="All API keys loaded")


def _check_worker_reachable(config: ParleyConfig) -> HealthCheckResult:
    name = "worker"
    if config.completion_engine != "worker":
        return HealthCheckResult(name=name, passed=True, detail=f"Skipped (engine={config.completion_engine})")
    try:
        response = httpx.get(
            config.worker_url,
            headers={"User-Agent": "parley/healthcheck"},
            timeout=3.0,
        )
        return HealthCheckResult(name=name, passed=True, detail=f"Reachable ({response.status_code})")
    except httpx.HTTPError as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"Unreachable: {exc}")
