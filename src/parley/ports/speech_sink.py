from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Protocol, AsyncIterator


class PlaybackEventKind(Enum):
    STARTED = "started"
    FINISHED_NATURALLY = "finished"


@dataclass(frozen=True)
class PlaybackEvent:
    kind: PlaybackEventKind
    utterance_id: int
    timestamp: float = field(default_factory=time)


class SpeechSinkPort(Protocol):
    async def speak(self, text: str) -> int: ...
    async def stop(self) -> None: ...
    def events(self) -> AsyncIterator[PlaybackEvent]: ...
