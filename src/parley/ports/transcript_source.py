from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Protocol, AsyncIterator


class CaptureMode(Enum):
    NORMAL = "normal"
    BARGE_IN = "barge-in"


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    timestamp: float = field(default_factory=time)


class TranscriptSourcePort(Protocol):
    async def start(self, mode: CaptureMode) -> None: ...
    async def stop(self) -> None: ...
    def transcripts(self) -> AsyncIterator[TranscriptEvent]: ...
