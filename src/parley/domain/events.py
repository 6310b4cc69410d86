from dataclasses import dataclass, field
from time import time


@dataclass(frozen=True)
class DomainEvent:
    timestamp: float = field(default_factory=time)


@dataclass(frozen=True)
class ListenRequested(DomainEvent):
    pass


@dataclass(frozen=True)
class TranscriptReceived(DomainEvent):
    text: str = ""
    is_final: bool = False


@dataclass(frozen=True)
class SendRequested(DomainEvent):
    pass


@dataclass(frozen=True)
class ReplyReady(DomainEvent):
    text: str = ""


@dataclass(frozen=True)
class PlaybackStarted(DomainEvent):
    utterance_id: int = 0


@dataclass(frozen=True)
class PlaybackFinished(DomainEvent):
    utterance_id: int = 0


@dataclass(frozen=True)
class BargeInCaptureDue(DomainEvent):
    utterance_id: int = 0


@dataclass(frozen=True)
class StopRequested(DomainEvent):
    pass


@dataclass(frozen=True)
class ResetRequested(DomainEvent):
    pass
