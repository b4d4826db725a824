"""
Session Store
Per-user persisted slot for the pending action, the agent context and the
rolling context buffer. Read once at turn start, written at defined points.
"""

import copy
import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from config import DB_PATH
from nutrilog.db import in_thread, now_iso
from nutrilog.models import ContextBuffer, PendingAction, Session

logger = logging.getLogger(__name__)


class SessionStore:
    """Interface the orchestrator uses for all session state"""

    async def get_session(self, user_id: str, session_id: str) -> Session:
        raise NotImplementedError

    async def save_pending_action(self, user_id: str, action: PendingAction) -> None:
        raise NotImplementedError

    async def clear_pending_action(self, user_id: str) -> None:
        raise NotImplementedError

    async def update_context(self, user_id: str, patch: dict) -> None:
        raise NotImplementedError

    async def update_buffer(self, user_id: str, buffer: ContextBuffer) -> None:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    """Dict-backed store for development and tests"""

    def __init__(self):
        self._rows: dict[str, dict] = {}

    def _row(self, user_id: str) -> dict:
        return self._rows.setdefault(user_id, {
            "session_id": "default",
            "pending_action": None,
            "context": {},
            "buffer": {},
        })

    async def get_session(self, user_id: str, session_id: str) -> Session:
        row = self._row(user_id)
        row["session_id"] = session_id
        return Session(
            user_id=user_id,
            session_id=session_id,
            pending_action=PendingAction.from_dict(copy.deepcopy(row["pending_action"])),
            context=copy.deepcopy(row["context"]),
            buffer=ContextBuffer.from_dict(row["buffer"]),
        )

    async def save_pending_action(self, user_id: str, action: PendingAction) -> None:
        # Overwrites: one pending action per user
        self._row(user_id)["pending_action"] = copy.deepcopy(action.to_dict())

    async def clear_pending_action(self, user_id: str) -> None:
        self._row(user_id)["pending_action"] = None

    async def update_context(self, user_id: str, patch: dict) -> None:
        self._row(user_id)["context"].update(copy.deepcopy(patch))

    async def update_buffer(self, user_id: str, buffer: ContextBuffer) -> None:
        self._row(user_id)["buffer"] = buffer.to_dict()

    def peek_pending_action(self, user_id: str) -> Optional[PendingAction]:
        row = self._rows.get(user_id)
        if not row:
            return None
        return PendingAction.from_dict(copy.deepcopy(row["pending_action"]))


class SQLiteSessionStore(SessionStore):
    """Sessions persisted in one SQLite row per user"""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or DB_PATH)
        self.init_db()

    def get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        conn = self.get_conn()
        cur = conn.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS user_sessions (
            user_id TEXT PRIMARY KEY,
            session_id TEXT,
            pending_action TEXT,
            agent_context TEXT,
            buffer TEXT,
            updated_at TEXT
        )
        """)

        conn.commit()
        conn.close()

    def _ensure_row(self, cur, user_id: str, session_id: str = "default"):
        cur.execute("""
        INSERT OR IGNORE INTO user_sessions
        (user_id, session_id, pending_action, agent_context, buffer, updated_at)
        VALUES (?, ?, NULL, '{}', '{}', ?)
        """, (user_id, session_id, now_iso()))

    def _set(self, user_id: str, column: str, value: Optional[str]):
        conn = self.get_conn()
        cur = conn.cursor()
        self._ensure_row(cur, user_id)
        cur.execute(
            f"UPDATE user_sessions SET {column} = ?, updated_at = ? WHERE user_id = ?",
            (value, now_iso(), user_id),
        )
        conn.commit()
        conn.close()

    @in_thread
    def get_session(self, user_id: str, session_id: str) -> Session:
        conn = self.get_conn()
        cur = conn.cursor()
        self._ensure_row(cur, user_id, session_id)
        cur.execute("UPDATE user_sessions SET session_id = ? WHERE user_id = ?", (session_id, user_id))
        cur.execute("SELECT * FROM user_sessions WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
        conn.commit()
        conn.close()

        return Session(
            user_id=user_id,
            session_id=session_id,
            pending_action=PendingAction.from_dict(_loads(row["pending_action"], None)),
            context=_loads(row["agent_context"], {}),
            buffer=ContextBuffer.from_dict(_loads(row["buffer"], {})),
        )

    @in_thread
    def save_pending_action(self, user_id: str, action: PendingAction) -> None:
        self._set(user_id, "pending_action", json.dumps(action.to_dict()))

    @in_thread
    def clear_pending_action(self, user_id: str) -> None:
        self._set(user_id, "pending_action", None)

    @in_thread
    def update_context(self, user_id: str, patch: dict) -> None:
        conn = self.get_conn()
        cur = conn.cursor()
        self._ensure_row(cur, user_id)
        cur.execute("SELECT agent_context FROM user_sessions WHERE user_id = ?", (user_id,))
        context = _loads(cur.fetchone()["agent_context"], {})
        context.update(patch)
        cur.execute(
            "UPDATE user_sessions SET agent_context = ?, updated_at = ? WHERE user_id = ?",
            (json.dumps(context), now_iso(), user_id),
        )
        conn.commit()
        conn.close()

    @in_thread
    def update_buffer(self, user_id: str, buffer: ContextBuffer) -> None:
        self._set(user_id, "buffer", json.dumps(buffer.to_dict()))


def _loads(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable session column")
        return default
