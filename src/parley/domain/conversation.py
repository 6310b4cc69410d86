from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

BENGALI_BLOCK_START = 0x0980
BENGALI_BLOCK_END = 0x09FF


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    thread_id: str
    index: int
    user_message: str
    assistant_reply: str
    created_at: datetime = field(default_factory=utc_now)
    language: str | None = None

    @property
    def cost_chars(self) -> int:
        return len(self.user_message) + len(self.assistant_reply)


@dataclass(frozen=True)
class Thread:
    id: str
    user_id: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    last_message_at: datetime = field(default_factory=utc_now)

    def deactivated(self) -> "Thread":
        return replace(self, is_active=False)

    def touched(self, when: datetime) -> "Thread":
        return replace(self, last_message_at=when)


@dataclass(frozen=True)
class Session:
    """Who is talking. Passed explicitly to the orchestrator instead of a global current user."""

    user_id: str


def contains_bengali(text: str) -> bool:
    return any(BENGALI_BLOCK_START <= ord(ch) <= BENGALI_BLOCK_END for ch in text)


def detect_language(*texts: str) -> str:
    return "bn" if any(contains_bengali(t) for t in texts) else "en"
