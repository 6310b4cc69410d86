from enum import Enum, auto


class Mode(Enum):
    IDLE = auto()
    LISTENING = auto()
    SPEAKING = auto()
    LISTENING_DURING_PLAYBACK = auto()


VALID_TRANSITIONS: dict[Mode, set[Mode]] = {
    Mode.IDLE: {Mode.LISTENING, Mode.SPEAKING},
    Mode.LISTENING: {Mode.IDLE, Mode.SPEAKING},
    Mode.SPEAKING: {Mode.LISTENING_DURING_PLAYBACK, Mode.LISTENING, Mode.IDLE},
    Mode.LISTENING_DURING_PLAYBACK: {Mode.SPEAKING, Mode.LISTENING, Mode.IDLE},
}


class InvalidTransitionError(Exception):
    pass


def validate_transition(current: Mode, target: Mode) -> None:
    if current == target:
        return
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")
