import logging
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

DEFAULT_FILLER_WORDS = frozenset(
    {"uh", "um", "ah", "eh", "oh", "hmm", "huh", "the", "a", "an", "is", "are", "was", "were"}
)


@dataclass(frozen=True)
class InterruptionPolicy:
    grace_seconds: float = 2.0
    debounce_seconds: float = 1.0
    min_words: int = 2
    final_min_chars: int = 8
    partial_min_chars: int = 12
    filler_words: frozenset[str] = DEFAULT_FILLER_WORDS

    def min_chars(self, is_final: bool) -> int:
        return self.final_min_chars if is_final else self.partial_min_chars


class Rejection(Enum):
    NOT_ARMED = auto()
    GRACE_PERIOD = auto()
    DEBOUNCE = auto()
    NOISE = auto()
    LOW_CONFIDENCE = auto()
    NOT_VISIBLE = auto()


class InterruptionDetector:
    """Decides whether a transcript heard during playback is the user barging in.

    Checks run in a fixed order and the first failing one rejects the event
    without a signal. Rejections are not errors.
    """

    def __init__(self, policy: InterruptionPolicy | None = None) -> None:
        self._policy = policy or InterruptionPolicy()
        self._tts_started_at: float | None = None
        self._last_interrupt_at: float | None = None
        self._last_rejection: Rejection | None = None

    @property
    def policy(self) -> InterruptionPolicy:
        return self._policy

    @property
    def armed(self) -> bool:
        return self._tts_started_at is not None

    @property
    def last_interrupt_at(self) -> float | None:
        return self._last_interrupt_at

    @property
    def last_rejection(self) -> Rejection | None:
        return self._last_rejection

    def arm(self, tts_started_at: float) -> None:
        self._tts_started_at = tts_started_at

    def disarm(self) -> None:
        self._tts_started_at = None

    def reset(self) -> None:
        self._tts_started_at = None
        self._last_interrupt_at = None
        self._last_rejection = None

    def evaluate(
        self,
        text: str,
        is_final: bool,
        now: float,
        visible_text: str,
    ) -> str | None:
        """Return the trimmed interrupt text when the event qualifies, else None."""
        rejection = self._check(text, is_final, now, visible_text)
        self._last_rejection = rejection
        if rejection is not None:
            logger.debug(
                "Interruption rejected (%s): '%s' final=%s",
                rejection.name, text.strip()[:40], is_final,
            )
            return None

        self._last_interrupt_at = now
        trimmed = text.strip()
        logger.info("Interrupt accepted: '%s' (final=%s)", trimmed[:50], is_final)
        return trimmed

    def _check(self, text: str, is_final: bool, now: float, visible_text: str) -> Rejection | None:
        policy = self._policy
        if self._tts_started_at is None:
            return Rejection.NOT_ARMED

        if now - self._tts_started_at < policy.grace_seconds:
            return Rejection.GRACE_PERIOD

        if (
            self._last_interrupt_at is not None
            and now - self._last_interrupt_at < policy.debounce_seconds
        ):
            return Rejection.DEBOUNCE

        trimmed = text.strip()
        words = trimmed.lower().split()
        if len(words) == 1 and words[0] in policy.filler_words:
            return Rejection.NOISE

        min_chars = policy.min_chars(is_final)
        if len(words) < policy.min_words or len(trimmed) < min_chars:
            return Rejection.LOW_CONFIDENCE

        visible = visible_text.strip()
        if not visible or len(visible) < min_chars:
            return Rejection.NOT_VISIBLE

        return None
