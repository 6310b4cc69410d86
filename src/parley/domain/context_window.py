import logging
from collections.abc import Sequence
from dataclasses import dataclass

from parley.domain.conversation import Turn

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_CHARS = 10_000

HISTORY_HEADER = "## Conversation History\n\nHere is the conversation history for context:"
HISTORY_FOOTER = "---"
CURRENT_REQUEST_HEADER = "## Current Request"
CONTINUITY_INSTRUCTION = (
    "Please provide a helpful, contextual response based on the conversation history above. "
    "If the user is continuing a previous topic, reference it naturally. "
    "Keep your response concise but complete."
)


@dataclass(frozen=True)
class ContextWindowPolicy:
    budget_chars: int = DEFAULT_BUDGET_CHARS
    turn_overhead_chars: int = 50
    recent_turns: int = 10
    medium_turns: int = 10
    medium_stride: int = 2
    older_stride: int = 4
    oldest_stride: int = 8


@dataclass(frozen=True)
class ContextSelection:
    turns: tuple[Turn, ...]
    total_chars: int
    history_size: int


class _Accumulator:
    def __init__(self, start_chars: int, budget: int, overhead: int) -> None:
        self.total = start_chars
        self.budget = budget
        self.overhead = overhead
        self.positions: set[int] = set()

    @property
    def has_room(self) -> bool:
        return self.total < self.budget

    def scan(self, history: Sequence[Turn], positions: range) -> int:
        """First-fit walk; the first turn that would overflow ends the scan."""
        added = 0
        for position in positions:
            if position in self.positions:
                continue
            turn = history[position]
            cost = turn.cost_chars + self.overhead
            if self.total + cost > self.budget:
                break
            self.positions.add(position)
            self.total += cost
            added += 1
        return added


class ContextWindowBuilder:
    """Selects a recency-biased, budget-bounded subset of prior turns for a new request.

    Tiers are counted back from the newest turn: the most recent turns are
    taken densely, the next band at half density and everything older at
    quarter density, topped up with an eighth-density pass when budget is left.
    Within each tier turns are scanned newest first; the result is re-sorted
    into chronological order before rendering.
    """

    def __init__(self, policy: ContextWindowPolicy | None = None) -> None:
        self._policy = policy or ContextWindowPolicy()

    @property
    def policy(self) -> ContextWindowPolicy:
        return self._policy

    def build(
        self,
        new_message: str,
        history: Sequence[Turn],
        budget: int | None = None,
    ) -> str:
        if not history:
            return new_message
        selection = self.select(new_message, history, budget)
        if not selection.turns:
            logger.debug("No prior turns fit the budget, sending bare message")
            return new_message

        logger.info(
            "Built context with %d of %d prior turns (~%d tokens)",
            len(selection.turns), selection.history_size, selection.total_chars // 4,
        )
        return render_prompt(new_message, selection.turns)

    def select(
        self,
        new_message: str,
        history: Sequence[Turn],
        budget: int | None = None,
    ) -> ContextSelection:
        policy = self._policy
        limit = policy.budget_chars if budget is None else budget
        n = len(history)
        acc = _Accumulator(len(new_message), limit, policy.turn_overhead_chars)

        recent_count = min(policy.recent_turns, n)
        medium_count = min(policy.medium_turns, n - recent_count)
        recent_start = n - recent_count
        medium_start = recent_start - medium_count

        acc.scan(history, range(n - 1, recent_start - 1, -1))

        if acc.has_room and medium_count:
            acc.scan(history, range(recent_start - 1, medium_start - 1, -policy.medium_stride))

        if acc.has_room and medium_start > 0:
            older_end = medium_start - 1
            acc.scan(history, range(older_end, -1, -policy.older_stride))
            if acc.has_room:
                offset = policy.older_stride // 2
                acc.scan(history, range(older_end - offset, -1, -policy.oldest_stride))

        chosen = tuple(history[p] for p in sorted(acc.positions))
        return ContextSelection(turns=chosen, total_chars=acc.total, history_size=n)


def render_turn_block(number: int, turn: Turn) -> str:
    return f"### Turn {number}\n**User:** {turn.user_message}\n**Assistant:** {turn.assistant_reply}"


def render_prompt(new_message: str, turns: Sequence[Turn]) -> str:
    blocks = [render_turn_block(number, turn) for number, turn in enumerate(turns, start=1)]
    sections = [
        HISTORY_HEADER,
        *blocks,
        HISTORY_FOOTER,
        CURRENT_REQUEST_HEADER,
        f"**User:** {new_message}",
        f"**Assistant:** {CONTINUITY_INSTRUCTION}",
    ]
    return "\n\n".join(sections)
