"""SQLite implementation of the dialogue repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

from .models import OverlayState, Scenario, Session, StateType, Step, User
from .repository import DialogueRepository, apply_sliding_window

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS scenarios (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        trigger_keywords TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        problem_keys TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS steps (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        scenario_id INTEGER NOT NULL REFERENCES scenarios(id) ON DELETE CASCADE,
        step_key TEXT NOT NULL,
        message TEXT NOT NULL,
        is_final INTEGER NOT NULL DEFAULT 0,
        next_step_key TEXT,
        state_type TEXT NOT NULL DEFAULT 'intermediate'
            CHECK (state_type IN ('start', 'intermediate', 'final')),
        label TEXT,
        parent_step_key TEXT,
        UNIQUE (scenario_id, step_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_sessions (
        user_id INTEGER PRIMARY KEY,
        scenario_id INTEGER,
        current_step_key TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id INTEGER PRIMARY KEY,
        message_count INTEGER NOT NULL DEFAULT 0,
        fsm_state TEXT NOT NULL DEFAULT 'idle',
        email TEXT,
        consent_granted INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        user_id INTEGER PRIMARY KEY,
        message_timestamps TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        message_text TEXT,
        direction TEXT NOT NULL CHECK (direction IN ('incoming', 'outgoing')),
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at)",
)


def _now() -> str:
    return datetime.utcnow().isoformat()


class SQLiteDialogueRepository(DialogueRepository):
    """Persist dialogue state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        """Run ``work`` inside one locked transaction."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                result = work(cur)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
            return result

    @staticmethod
    def _scenario(row: sqlite3.Row) -> Scenario:
        return Scenario(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            trigger_keywords=json.loads(row["trigger_keywords"]),
            description=row["description"],
            problem_keys=json.loads(row["problem_keys"]),
        )

    @staticmethod
    def _step(row: sqlite3.Row) -> Step:
        return Step(
            id=row["id"],
            scenario_id=row["scenario_id"],
            step_key=row["step_key"],
            message=row["message"],
            is_final=bool(row["is_final"]),
            next_step_key=row["next_step_key"],
            state_type=StateType(row["state_type"]),
            label=row["label"],
            parent_step_key=row["parent_step_key"],
        )

    @staticmethod
    def _user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            message_count=row["message_count"],
            fsm_state=OverlayState(row["fsm_state"]),
            email=row["email"],
            consent_granted=bool(row["consent_granted"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Scenario catalog
    async def get_scenario(self, scenario_id: int) -> Scenario | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM scenarios WHERE id = ?", scenario_id
        )
        return self._scenario(row) if row else None

    async def get_scenario_by_trigger_keyword(self, text: str) -> Scenario | None:
        # SQLite lower() only folds ASCII, so matching happens in Python.
        for scenario in await self.list_scenarios():
            if scenario.matches(text):
                return scenario
        return None

    async def list_scenarios(self) -> list[Scenario]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM scenarios ORDER BY id"
        )
        return [self._scenario(r) for r in rows]

    async def get_step(self, scenario_id: int, step_key: str) -> Step | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM steps WHERE scenario_id = ? AND step_key = ?",
            scenario_id,
            step_key,
        )
        return self._step(row) if row else None

    async def list_steps(self, scenario_id: int) -> list[Step]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM steps WHERE scenario_id = ? ORDER BY id",
            scenario_id,
        )
        return [self._step(r) for r in rows]

    async def replace_scenario(self, scenario: Scenario, steps: Sequence[Step]) -> Scenario:
        def work(cur: sqlite3.Cursor) -> int:
            cur.execute("SELECT id FROM scenarios WHERE name = ?", (scenario.name,))
            row = cur.fetchone()
            values = (
                scenario.display_name,
                json.dumps(scenario.trigger_keywords, ensure_ascii=False),
                scenario.description,
                json.dumps(scenario.problem_keys, ensure_ascii=False),
            )
            if row:
                scenario_id = row["id"]
                cur.execute(
                    "UPDATE scenarios SET display_name = ?, trigger_keywords = ?, "
                    "description = ?, problem_keys = ? WHERE id = ?",
                    (*values, scenario_id),
                )
                cur.execute("DELETE FROM steps WHERE scenario_id = ?", (scenario_id,))
            else:
                cur.execute(
                    "INSERT INTO scenarios (name, display_name, trigger_keywords, "
                    "description, problem_keys) VALUES (?, ?, ?, ?, ?)",
                    (scenario.name, *values),
                )
                scenario_id = cur.lastrowid
            for step in steps:
                cur.execute(
                    """
                    INSERT INTO steps (scenario_id, step_key, message, is_final,
                        next_step_key, state_type, label, parent_step_key)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        scenario_id,
                        step.step_key,
                        step.message,
                        int(step.is_final),
                        step.next_step_key,
                        step.state_type.value,
                        step.label,
                        step.parent_step_key,
                    ),
                )
            return scenario_id

        scenario_id = await asyncio.to_thread(self._transaction, work)
        return scenario.model_copy(update={"id": scenario_id})

    # ------------------------------------------------------------------
    # Sessions
    async def get_session(self, user_id: int) -> Session | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT user_id, scenario_id, current_step_key, updated_at "
            "FROM user_sessions WHERE user_id = ?",
            user_id,
        )
        if not row:
            return None
        return Session(
            user_id=row["user_id"],
            scenario_id=row["scenario_id"],
            current_step_key=row["current_step_key"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def put_session(
        self, user_id: int, scenario_id: int | None, step_key: str | None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO user_sessions (user_id, scenario_id, current_step_key, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (user_id) DO UPDATE SET
                scenario_id = excluded.scenario_id,
                current_step_key = excluded.current_step_key,
                updated_at = excluded.updated_at
            """,
            user_id,
            scenario_id,
            step_key,
            _now(),
        )

    async def delete_session(self, user_id: int) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM user_sessions WHERE user_id = ?", user_id
        )

    # ------------------------------------------------------------------
    # Users / overlay
    async def get_user(self, user_id: int) -> User | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM users WHERE user_id = ?", user_id
        )
        return self._user(row) if row else None

    def _ensure_user(self, cur: sqlite3.Cursor, user_id: int) -> None:
        now = _now()
        cur.execute(
            "INSERT INTO users (user_id, created_at, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT (user_id) DO NOTHING",
            (user_id, now, now),
        )

    async def get_or_create_user(self, user_id: int) -> User:
        def work(cur: sqlite3.Cursor) -> sqlite3.Row:
            self._ensure_user(cur, user_id)
            cur.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
            return cur.fetchone()

        row = await asyncio.to_thread(self._transaction, work)
        return self._user(row)

    async def _update_user(self, user_id: int, assignments: str, *params: Any) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            self._ensure_user(cur, user_id)
            cur.execute(
                f"UPDATE users SET {assignments}, updated_at = ? WHERE user_id = ?",
                (*params, _now(), user_id),
            )

        await asyncio.to_thread(self._transaction, work)

    async def increment_message_count(self, user_id: int) -> int:
        def work(cur: sqlite3.Cursor) -> int:
            self._ensure_user(cur, user_id)
            cur.execute(
                "UPDATE users SET message_count = message_count + 1, updated_at = ? "
                "WHERE user_id = ?",
                (_now(), user_id),
            )
            cur.execute("SELECT message_count FROM users WHERE user_id = ?", (user_id,))
            return cur.fetchone()["message_count"]

        return await asyncio.to_thread(self._transaction, work)

    async def reset_message_count(self, user_id: int) -> None:
        await self._update_user(user_id, "message_count = 0")

    async def set_overlay_state(self, user_id: int, state: OverlayState) -> None:
        await self._update_user(user_id, "fsm_state = ?", state.value)

    async def set_email(self, user_id: int, email: str | None, consent: bool) -> None:
        await self._update_user(
            user_id, "email = ?, consent_granted = ?", email, int(consent)
        )

    # ------------------------------------------------------------------
    # Rate limiting
    async def check_and_record_rate(
        self, user_id: int, max_per_minute: int, now: int | None = None
    ) -> bool:
        now = int(time.time()) if now is None else now

        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                "SELECT message_timestamps FROM rate_limits WHERE user_id = ?",
                (user_id,),
            )
            row = cur.fetchone()
            timestamps = json.loads(row["message_timestamps"]) if row else []
            admitted, kept = apply_sliding_window(timestamps, now, max_per_minute)
            cur.execute(
                """
                INSERT INTO rate_limits (user_id, message_timestamps, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    message_timestamps = excluded.message_timestamps,
                    updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(kept), _now()),
            )
            return admitted

        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Message log and statistics
    async def log_message(self, user_id: int, text: str, direction: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO messages (user_id, message_text, direction, created_at) "
            "VALUES (?, ?, ?, ?)",
            user_id,
            text,
            direction,
            _now(),
        )

    async def count_active_users(self, since: datetime) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(DISTINCT user_id) AS n FROM messages WHERE created_at >= ?",
            since.isoformat(),
        )
        return row["n"]

    async def count_messages(self) -> int:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT COUNT(*) AS n FROM messages"
        )
        return row["n"]

    async def count_users_by_overlay_state(self) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT fsm_state, COUNT(*) AS n FROM users GROUP BY fsm_state",
        )
        return {r["fsm_state"]: r["n"] for r in rows}
