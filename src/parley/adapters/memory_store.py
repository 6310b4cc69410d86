import uuid

from parley.domain.conversation import Thread, Turn, utc_now


class InMemoryConversationStore:
    def __init__(self, max_turns_per_thread: int | None = None) -> None:
        self._max_turns = max_turns_per_thread
        self._threads: dict[str, Thread] = {}
        self._turns: dict[str, list[Turn]] = {}

    def active_thread(self, user_id: str) -> Thread:
        for thread in self._threads.values():
            if thread.user_id == user_id and thread.is_active:
                return thread
        return self._insert_thread(user_id)

    def create_thread(self, user_id: str) -> Thread:
        for thread_id, thread in list(self._threads.items()):
            if thread.user_id == user_id and thread.is_active:
                self._threads[thread_id] = thread.deactivated()
        return self._insert_thread(user_id)

    def append_turn(
        self,
        thread_id: str,
        user_message: str,
        assistant_reply: str,
        language: str | None = None,
    ) -> Turn:
        if thread_id not in self._threads:
            raise KeyError(f"Unknown thread: {thread_id}")
        turns = self._turns[thread_id]
        turn = Turn(
            thread_id=thread_id,
            index=turns[-1].index + 1 if turns else 0,
            user_message=user_message,
            assistant_reply=assistant_reply,
            language=language,
        )
        turns.append(turn)
        self._threads[thread_id] = self._threads[thread_id].touched(turn.created_at)
        return turn

    def list_turns(self, thread_id: str) -> list[Turn]:
        turns = self._turns.get(thread_id, [])
        if self._max_turns is not None:
            turns = turns[-self._max_turns :]
        return list(turns)

    def list_threads(self, user_id: str) -> list[Thread]:
        threads = [t for t in self._threads.values() if t.user_id == user_id]
        return sorted(threads, key=lambda t: t.last_message_at, reverse=True)

    def _insert_thread(self, user_id: str) -> Thread:
        now = utc_now()
        thread = Thread(
            id=uuid.uuid4().hex,
            user_id=user_id,
            is_active=True,
            created_at=now,
            last_message_at=now,
        )
        self._threads[thread.id] = thread
        self._turns[thread.id] = []
        return thread
