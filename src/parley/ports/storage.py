from typing import Protocol

from parley.domain.conversation import Thread, Turn


class ConversationStorePort(Protocol):
    def active_thread(self, user_id: str) -> Thread: ...
    def create_thread(self, user_id: str) -> Thread: ...
    def append_turn(
        self,
        thread_id: str,
        user_message: str,
        assistant_reply: str,
        language: str | None = None,
    ) -> Turn: ...
    def list_turns(self, thread_id: str) -> list[Turn]: ...
    def list_threads(self, user_id: str) -> list[Thread]: ...
