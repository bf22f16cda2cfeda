"""PostgreSQL implementation of the dialogue repository."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

from .models import OverlayState, Scenario, Session, StateType, Step, User
from .repository import DialogueRepository, apply_sliding_window

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS scenarios (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL,
        trigger_keywords TEXT[] NOT NULL DEFAULT '{}',
        description TEXT NOT NULL DEFAULT '',
        problem_keys TEXT[] NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS steps (
        id SERIAL PRIMARY KEY,
        scenario_id INT NOT NULL REFERENCES scenarios(id) ON DELETE CASCADE,
        step_key TEXT NOT NULL,
        message TEXT NOT NULL,
        is_final BOOLEAN NOT NULL DEFAULT FALSE,
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
        user_id BIGINT PRIMARY KEY,
        scenario_id INT,
        current_step_key TEXT,
        updated_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id BIGINT PRIMARY KEY,
        message_count INT NOT NULL DEFAULT 0,
        fsm_state TEXT NOT NULL DEFAULT 'idle',
        email TEXT,
        consent_granted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        user_id BIGINT PRIMARY KEY,
        message_timestamps BIGINT[] NOT NULL DEFAULT '{}',
        updated_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL,
        message_text TEXT,
        direction TEXT NOT NULL CHECK (direction IN ('incoming', 'outgoing')),
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_users_fsm_state ON users(fsm_state)",
)


class PostgresDialogueRepository(DialogueRepository):
    """Persist dialogue state using PostgreSQL.

    Counter increments and rate-limit admission are single transactions,
    so they stay atomic across processes sharing the database.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _connect(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                pool = await asyncpg.create_pool(self._dsn, min_size=1, max_size=10)
                async with pool.acquire() as conn:
                    await self._ensure_schema(conn)
                self._pool = pool
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ------------------------------------------------------------------
    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        pool = await self._connect()
        async with pool.acquire() as conn:
            return await conn.fetchrow(query, *params)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._connect()
        async with pool.acquire() as conn:
            return await conn.fetch(query, *params)

    async def _execute(self, query: str, *params: Any) -> None:
        pool = await self._connect()
        async with pool.acquire() as conn:
            await conn.execute(query, *params)

    async def _fetchval(self, query: str, *params: Any) -> Any:
        pool = await self._connect()
        async with pool.acquire() as conn:
            return await conn.fetchval(query, *params)

    @staticmethod
    def _scenario(r: asyncpg.Record) -> Scenario:
        return Scenario(
            id=r["id"],
            name=r["name"],
            display_name=r["display_name"],
            trigger_keywords=list(r["trigger_keywords"] or []),
            description=r["description"],
            problem_keys=list(r["problem_keys"] or []),
        )

    @staticmethod
    def _step(r: asyncpg.Record) -> Step:
        return Step(
            id=r["id"],
            scenario_id=r["scenario_id"],
            step_key=r["step_key"],
            message=r["message"],
            is_final=r["is_final"],
            next_step_key=r["next_step_key"],
            state_type=StateType(r["state_type"]),
            label=r["label"],
            parent_step_key=r["parent_step_key"],
        )

    @staticmethod
    def _user(r: asyncpg.Record) -> User:
        return User(
            user_id=r["user_id"],
            message_count=r["message_count"],
            fsm_state=OverlayState(r["fsm_state"]),
            email=r["email"],
            consent_granted=r["consent_granted"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )

    # ------------------------------------------------------------------
    async def get_scenario(self, scenario_id: int) -> Scenario | None:
        row = await self._fetchrow("SELECT * FROM scenarios WHERE id = $1", scenario_id)
        return self._scenario(row) if row else None

    async def get_scenario_by_trigger_keyword(self, text: str) -> Scenario | None:
        row = await self._fetchrow(
            """
            SELECT * FROM scenarios
            WHERE EXISTS (
                SELECT 1 FROM unnest(trigger_keywords) AS kw
                WHERE kw <> '' AND strpos(lower($1), lower(kw)) > 0
            )
            ORDER BY id
            LIMIT 1
            """,
            text,
        )
        return self._scenario(row) if row else None

    async def list_scenarios(self) -> list[Scenario]:
        rows = await self._fetch("SELECT * FROM scenarios ORDER BY id")
        return [self._scenario(r) for r in rows]

    async def get_step(self, scenario_id: int, step_key: str) -> Step | None:
        row = await self._fetchrow(
            "SELECT * FROM steps WHERE scenario_id = $1 AND step_key = $2",
            scenario_id,
            step_key,
        )
        return self._step(row) if row else None

    async def list_steps(self, scenario_id: int) -> list[Step]:
        rows = await self._fetch(
            "SELECT * FROM steps WHERE scenario_id = $1 ORDER BY id", scenario_id
        )
        return [self._step(r) for r in rows]

    async def replace_scenario(self, scenario: Scenario, steps: Sequence[Step]) -> Scenario:
        pool = await self._connect()
        async with pool.acquire() as conn:
            async with conn.transaction():
                scenario_id = await conn.fetchval(
                    """
                    INSERT INTO scenarios (name, display_name, trigger_keywords,
                        description, problem_keys)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (name) DO UPDATE SET
                        display_name = EXCLUDED.display_name,
                        trigger_keywords = EXCLUDED.trigger_keywords,
                        description = EXCLUDED.description,
                        problem_keys = EXCLUDED.problem_keys
                    RETURNING id
                    """,
                    scenario.name,
                    scenario.display_name,
                    scenario.trigger_keywords,
                    scenario.description,
                    scenario.problem_keys,
                )
                await conn.execute("DELETE FROM steps WHERE scenario_id = $1", scenario_id)
                await conn.executemany(
                    """
                    INSERT INTO steps (scenario_id, step_key, message, is_final,
                        next_step_key, state_type, label, parent_step_key)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    [
                        (
                            scenario_id,
                            s.step_key,
                            s.message,
                            s.is_final,
                            s.next_step_key,
                            s.state_type.value,
                            s.label,
                            s.parent_step_key,
                        )
                        for s in steps
                    ],
                )
        return scenario.model_copy(update={"id": scenario_id})

    # ------------------------------------------------------------------
    async def get_session(self, user_id: int) -> Session | None:
        row = await self._fetchrow(
            "SELECT user_id, scenario_id, current_step_key, updated_at "
            "FROM user_sessions WHERE user_id = $1",
            user_id,
        )
        if not row:
            return None
        return Session(
            user_id=row["user_id"],
            scenario_id=row["scenario_id"],
            current_step_key=row["current_step_key"],
            updated_at=row["updated_at"],
        )

    async def put_session(
        self, user_id: int, scenario_id: int | None, step_key: str | None
    ) -> None:
        await self._execute(
            """
            INSERT INTO user_sessions (user_id, scenario_id, current_step_key, updated_at)
            VALUES ($1, $2, $3, (NOW() AT TIME ZONE 'utc'))
            ON CONFLICT (user_id) DO UPDATE SET
                scenario_id = EXCLUDED.scenario_id,
                current_step_key = EXCLUDED.current_step_key,
                updated_at = (NOW() AT TIME ZONE 'utc')
            """,
            user_id,
            scenario_id,
            step_key,
        )

    async def delete_session(self, user_id: int) -> None:
        await self._execute("DELETE FROM user_sessions WHERE user_id = $1", user_id)

    # ------------------------------------------------------------------
    async def get_user(self, user_id: int) -> User | None:
        row = await self._fetchrow("SELECT * FROM users WHERE user_id = $1", user_id)
        return self._user(row) if row else None

    async def get_or_create_user(self, user_id: int) -> User:
        row = await self._fetchrow(
            """
            WITH inserted AS (
                INSERT INTO users (user_id) VALUES ($1)
                ON CONFLICT (user_id) DO NOTHING
                RETURNING *
            )
            SELECT * FROM inserted
            UNION ALL
            SELECT * FROM users WHERE user_id = $1
            LIMIT 1
            """,
            user_id,
        )
        return self._user(row)

    async def increment_message_count(self, user_id: int) -> int:
        return await self._fetchval(
            """
            INSERT INTO users (user_id, message_count) VALUES ($1, 1)
            ON CONFLICT (user_id) DO UPDATE SET
                message_count = users.message_count + 1,
                updated_at = (NOW() AT TIME ZONE 'utc')
            RETURNING message_count
            """,
            user_id,
        )

    async def reset_message_count(self, user_id: int) -> None:
        await self._execute(
            """
            INSERT INTO users (user_id) VALUES ($1)
            ON CONFLICT (user_id) DO UPDATE SET
                message_count = 0, updated_at = (NOW() AT TIME ZONE 'utc')
            """,
            user_id,
        )

    async def set_overlay_state(self, user_id: int, state: OverlayState) -> None:
        await self._execute(
            """
            INSERT INTO users (user_id, fsm_state) VALUES ($1, $2)
            ON CONFLICT (user_id) DO UPDATE SET
                fsm_state = $2, updated_at = (NOW() AT TIME ZONE 'utc')
            """,
            user_id,
            state.value,
        )

    async def set_email(self, user_id: int, email: str | None, consent: bool) -> None:
        await self._execute(
            """
            INSERT INTO users (user_id, email, consent_granted) VALUES ($1, $2, $3)
            ON CONFLICT (user_id) DO UPDATE SET
                email = $2, consent_granted = $3, updated_at = (NOW() AT TIME ZONE 'utc')
            """,
            user_id,
            email,
            consent,
        )

    # ------------------------------------------------------------------
    async def check_and_record_rate(
        self, user_id: int, max_per_minute: int, now: int | None = None
    ) -> bool:
        now = int(time.time()) if now is None else now
        pool = await self._connect()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO rate_limits (user_id) VALUES ($1) "
                    "ON CONFLICT (user_id) DO NOTHING",
                    user_id,
                )
                timestamps = await conn.fetchval(
                    "SELECT message_timestamps FROM rate_limits "
                    "WHERE user_id = $1 FOR UPDATE",
                    user_id,
                )
                admitted, kept = apply_sliding_window(
                    list(timestamps or []), now, max_per_minute
                )
                await conn.execute(
                    "UPDATE rate_limits SET message_timestamps = $2, "
                    "updated_at = (NOW() AT TIME ZONE 'utc') "
                    "WHERE user_id = $1",
                    user_id,
                    kept,
                )
        return admitted

    # ------------------------------------------------------------------
    async def log_message(self, user_id: int, text: str, direction: str) -> None:
        await self._execute(
            "INSERT INTO messages (user_id, message_text, direction, created_at) "
            "VALUES ($1, $2, $3, NOW() AT TIME ZONE 'utc')",
            user_id,
            text,
            direction,
        )

    async def count_active_users(self, since: datetime) -> int:
        return await self._fetchval(
            "SELECT COUNT(DISTINCT user_id) FROM messages WHERE created_at >= $1",
            since,
        )

    async def count_messages(self) -> int:
        return await self._fetchval("SELECT COUNT(*) FROM messages")

    async def count_users_by_overlay_state(self) -> dict[str, int]:
        rows = await self._fetch(
            "SELECT fsm_state, COUNT(*) AS n FROM users GROUP BY fsm_state"
        )
        return {r["fsm_state"]: r["n"] for r in rows}
