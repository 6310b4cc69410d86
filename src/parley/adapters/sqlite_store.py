import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

from parley.domain.conversation import Thread, Turn, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    last_message_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS threads_user_active ON threads(user_id, is_active);

CREATE TABLE IF NOT EXISTS turns (
    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
    turn_index INTEGER NOT NULL,
    user_message TEXT NOT NULL,
    assistant_reply TEXT NOT NULL,
    language TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (thread_id, turn_index)
);
"""


class SqliteConversationStore:
    """Durable thread/turn log. Turns are append-only; one active thread per user."""

    def __init__(self, db_path: str | Path, max_turns_per_thread: int | None = None) -> None:
        self._db_path = str(db_path)
        self._max_turns = max_turns_per_thread
        if self._db_path != ":memory:":
            Path(self._db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            self._db_path = str(Path(self._db_path).expanduser())
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        if self._db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.info("Conversation store opened at %s", self._db_path)

    def close(self) -> None:
        self._conn.close()

    def active_thread(self, user_id: str) -> Thread:
        row = self._conn.execute(
            "SELECT * FROM threads WHERE user_id = ? AND is_active = 1 "
            "ORDER BY last_message_at DESC LIMIT 1",
            (user_id,),
        ).fetchone()
        if row is not None:
            return _thread_from_row(row)
        with self._conn:
            return self._insert_thread(user_id)

    def create_thread(self, user_id: str) -> Thread:
        with self._conn:
            self._conn.execute(
                "UPDATE threads SET is_active = 0 WHERE user_id = ? AND is_active = 1",
                (user_id,),
            )
            thread = self._insert_thread(user_id)
        logger.info("Created thread %s for user %s", thread.id, user_id)
        return thread

    def append_turn(
        self,
        thread_id: str,
        user_message: str,
        assistant_reply: str,
        language: str | None = None,
    ) -> Turn:
        created_at = utc_now()
        with self._conn:
            exists = self._conn.execute(
                "SELECT 1 FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
            if exists is None:
                raise KeyError(f"Unknown thread: {thread_id}")
            row = self._conn.execute(
                "SELECT COALESCE(MAX(turn_index), -1) + 1 AS next_index FROM turns WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            index = row["next_index"]
            self._conn.execute(
                "INSERT INTO turns (thread_id, turn_index, user_message, assistant_reply, language, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (thread_id, index, user_message, assistant_reply, language, created_at.isoformat()),
            )
            self._conn.execute(
                "UPDATE threads SET last_message_at = ? WHERE id = ?",
                (created_at.isoformat(), thread_id),
            )
        logger.debug("Saved turn %d to thread %s", index, thread_id)
        return Turn(
            thread_id=thread_id,
            index=index,
            user_message=user_message,
            assistant_reply=assistant_reply,
            created_at=created_at,
            language=language,
        )

    def list_turns(self, thread_id: str) -> list[Turn]:
        if self._max_turns is None:
            rows = self._conn.execute(
                "SELECT * FROM turns WHERE thread_id = ? ORDER BY turn_index ASC",
                (thread_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM (SELECT * FROM turns WHERE thread_id = ? "
                "ORDER BY turn_index DESC LIMIT ?) ORDER BY turn_index ASC",
                (thread_id, self._max_turns),
            ).fetchall()
        return [_turn_from_row(row) for row in rows]

    def list_threads(self, user_id: str) -> list[Thread]:
        rows = self._conn.execute(
            "SELECT * FROM threads WHERE user_id = ? ORDER BY last_message_at DESC",
            (user_id,),
        ).fetchall()
        return [_thread_from_row(row) for row in rows]

    def _insert_thread(self, user_id: str) -> Thread:
        now = utc_now().isoformat()
        self._conn.execute(
            "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
            (user_id, now),
        )
        thread_id = uuid.uuid4().hex
        self._conn.execute(
            "INSERT INTO threads (id, user_id, is_active, created_at, last_message_at) "
            "VALUES (?, ?, 1, ?, ?)",
            (thread_id, user_id, now, now),
        )
        return Thread(
            id=thread_id,
            user_id=user_id,
            is_active=True,
            created_at=datetime.fromisoformat(now),
            last_message_at=datetime.fromisoformat(now),
        )


def _thread_from_row(row: sqlite3.Row) -> Thread:
    return Thread(
        id=row["id"],
        user_id=row["user_id"],
        is_active=bool(row["is_active"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        last_message_at=datetime.fromisoformat(row["last_message_at"]),
    )


def _turn_from_row(row: sqlite3.Row) -> Turn:
    return Turn(
        thread_id=row["thread_id"],
        index=row["turn_index"],
        user_message=row["user_message"],
        assistant_reply=row["assistant_reply"],
        created_at=datetime.fromisoformat(row["created_at"]),
        language=row["language"],
    )
