import logging

from parley.domain.context_window import ContextWindowBuilder
from parley.domain.conversation import Session, Thread, Turn, detect_language
from parley.domain.engine import TurnTakingEngine
from parley.domain.errors import BackendDecodeFailure, BackendError, EmptyCommand, RequestInFlight
from parley.ports.completion import CompletionPort
from parley.ports.storage import ConversationStorePort

logger = logging.getLogger(__name__)


class ConversationOrchestrator:
    """Sends commands to the backend with bounded history and records successful turns."""

    def __init__(
        self,
        store: ConversationStorePort,
        completion: CompletionPort,
        context_builder: ContextWindowBuilder,
        session: Session,
        engine: TurnTakingEngine | None = None,
    ) -> None:
        self._store = store
        self._completion = completion
        self._context_builder = context_builder
        self._session = session
        self._engine = engine
        self._generation = 0
        self._in_flight: set[str] = set()

    @property
    def session(self) -> Session:
        return self._session

    def active_thread(self) -> Thread:
        return self._store.active_thread(self._session.user_id)

    def active_turns(self) -> list[Turn]:
        return self._store.list_turns(self.active_thread().id)

    def is_in_flight(self, thread_id: str) -> bool:
        return thread_id in self._in_flight

    async def submit(self, command: str) -> Turn | None:
        """Returns the persisted turn, or None when a thread switch superseded the reply."""
        command = command.strip()
        if not command:
            raise EmptyCommand()

        thread = self._store.active_thread(self._session.user_id)
        if thread.id in self._in_flight:
            raise RequestInFlight(thread.id)

        generation = self._generation
        self._in_flight.add(thread.id)
        try:
            history = self._store.list_turns(thread.id)
            prompt = self._context_builder.build(command, history)
            logger.info("Submitting command to backend (%d chars prompt)", len(prompt))

            try:
                reply = await self._completion.complete(prompt)
            except BackendError as exc:
                logger.error("Backend request failed: %s", exc)
                raise

            if not reply.strip():
                logger.error("Backend returned an empty reply")
                raise BackendDecodeFailure("Backend returned an empty reply")

            if generation != self._generation:
                logger.warning("Discarding reply for superseded thread %s", thread.id)
                return None

            turn = self._store.append_turn(
                thread.id,
                command,
                reply,
                language=detect_language(command, reply),
            )
            logger.info("Reply received (%d chars), turn %d saved", len(reply), turn.index)
        finally:
            self._in_flight.discard(thread.id)

        if self._engine is not None:
            self._engine.reply_ready(reply)
        return turn

    def new_thread(self) -> Thread:
        self._generation += 1
        thread = self._store.create_thread(self._session.user_id)
        if self._engine is not None:
            self._engine.reset()
        logger.info("Started new thread %s", thread.id)
        return thread
