"""SQLiteUserStore — aiosqlite-based async user store.

Uses aiosqlite EXCLUSIVELY; the stdlib sqlite3 synchronous module is never
called from the request path.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent reads while writing)
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch, refuse startup
  - Long-lived connection: opened in initialize(), closed in close()
  - Multi-statement writes serialised by an asyncio.Lock and committed once,
    so consume_token_fields() applies the authorised change and deletes the
    side record in a single transaction
  - aiosqlite.Error is logged and re-raised as StoreError
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime
from typing import Any, Iterable, Optional

import aiosqlite

from credkeeper.errors import AccountStateError, StoreError
from credkeeper.store.models import ApiKeyRecord, Purpose, Slot, TokenFields, User, utcnow
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        TEXT NOT NULL UNIQUE,
    email           TEXT NOT NULL UNIQUE,
    password_hash   TEXT NOT NULL,
    is_verified     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS purpose_tokens (
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    purpose         TEXT NOT NULL CHECK(purpose IN
                        ('email_verification', 'password_reset', 'password_change', 'email_change')),
    token_digest    TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    PRIMARY KEY (user_id, purpose)
);

CREATE TABLE IF NOT EXISTS api_keys (
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    slot            TEXT NOT NULL CHECK(slot IN ('primary', 'secondary')),
    key_hash        TEXT NOT NULL UNIQUE,
    key_hint        TEXT NOT NULL,
    active          INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT NOT NULL,
    last_used_at    TEXT,
    PRIMARY KEY (user_id, slot)
);
"""

_SCHEMA_VERSION = 1


# ─── Row deserialisers ────────────────────────────────────────────────────────


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        is_verified=bool(row["is_verified"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_api_key(row: aiosqlite.Row) -> ApiKeyRecord:
    return ApiKeyRecord(
        user_id=row["user_id"],
        slot=row["slot"],
        key_hash=row["key_hash"],
        key_hint=row["key_hint"],
        active=bool(row["active"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        last_used_at=_parse_dt(row["last_used_at"]),
    )


def _row_to_token_fields(row: aiosqlite.Row) -> TokenFields:
    return TokenFields(
        user_id=row["user_id"],
        purpose=Purpose(row["purpose"]),
        token_digest=row["token_digest"],
        expires_at=datetime.fromisoformat(row["expires_at"]),
    )


def _purpose_value(purpose: Purpose) -> str:
    return Purpose(purpose).value


# ─── SQLiteUserStore ──────────────────────────────────────────────────────────


class SQLiteUserStore:
    """Async SQLite user store using aiosqlite exclusively.

    Default path: ~/.credkeeper/credkeeper.db
    Override via: store.path in config or CREDKEEPER_DB_PATH.
    Or pass db_path explicitly (used in tests).

    Usage:
        store = SQLiteUserStore(db_path)
        await store.initialize()   # raises RuntimeError on schema version mismatch
        user = await store.create_user("alice", "alice@example.com", pw_hash)
        await store.close()
    """

    def __init__(self, db_path: str = "~/.credkeeper/credkeeper.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the SQLite connection, enable WAL mode, and create/verify schema.

        PRAGMA user_version:
          - 0: fresh DB → create schema, set user_version=1
          - 1: compatible schema → no-op (idempotent)
          - other: RuntimeError; the FastAPI lifespan propagates it and refuses startup.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA foreign_keys=ON;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            # executescript may not honour PRAGMA in all SQLite builds
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "user_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "user_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported user database schema version: {current_version}. "
                f"Back up and remove {self._db_path} to reset."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("user_db_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False

    # ── Low-level helpers ─────────────────────────────────────────────────────

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("User store not initialized")
        return self._db

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        try:
            cursor = await self._conn().execute(sql, tuple(params))
            return await cursor.fetchone()
        except aiosqlite.Error as exc:
            logger.error("user_db_read_failed", error_type=type(exc).__name__)
            raise StoreError() from exc

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        try:
            cursor = await self._conn().execute(sql, tuple(params))
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            logger.error("user_db_read_failed", error_type=type(exc).__name__)
            raise StoreError() from exc

    async def _write(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Execute one write statement and commit. Returns the affected row count."""
        async with self._write_lock:
            db = self._conn()
            try:
                cursor = await db.execute(sql, tuple(params))
                await db.commit()
                return cursor.rowcount
            except aiosqlite.IntegrityError as exc:
                await db.rollback()
                raise AccountStateError(_integrity_message(exc)) from exc
            except aiosqlite.Error as exc:
                await db.rollback()
                logger.error("user_db_write_failed", error_type=type(exc).__name__)
                raise StoreError() from exc

    # ── Users ─────────────────────────────────────────────────────────────────

    async def create_user(
        self, username: str, email: str, password_hash: str, is_verified: bool = False
    ) -> User:
        created_at = utcnow()
        async with self._write_lock:
            db = self._conn()
            try:
                cursor = await db.execute(
                    """INSERT INTO users (username, email, password_hash, is_verified, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (username, email, password_hash, int(is_verified), created_at.isoformat()),
                )
                await db.commit()
                user_id = cursor.lastrowid
            except aiosqlite.IntegrityError as exc:
                await db.rollback()
                raise AccountStateError(_integrity_message(exc)) from exc
            except aiosqlite.Error as exc:
                await db.rollback()
                logger.error("user_db_write_failed", error_type=type(exc).__name__)
                raise StoreError() from exc
        return User(
            id=int(user_id),
            username=username,
            email=email,
            password_hash=password_hash,
            is_verified=is_verified,
            created_at=created_at,
        )

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return _row_to_user(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE username = ?", (username,))
        return _row_to_user(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        row = await self._fetchone("SELECT * FROM users WHERE email = ?", (email,))
        return _row_to_user(row) if row else None

    async def delete_user(self, user_id: int) -> bool:
        # purpose_tokens and api_keys rows go with it: ON DELETE CASCADE, foreign_keys=ON
        count = await self._write("DELETE FROM users WHERE id = ?", (user_id,))
        return count > 0

    # ── Purpose-token side records ────────────────────────────────────────────

    async def get_token_fields(self, user_id: int, purpose: Purpose) -> Optional[TokenFields]:
        row = await self._fetchone(
            "SELECT * FROM purpose_tokens WHERE user_id = ? AND purpose = ?",
            (user_id, _purpose_value(purpose)),
        )
        return _row_to_token_fields(row) if row else None

    async def set_token_fields(
        self, user_id: int, purpose: Purpose, token_digest: str, expires_at: datetime
    ) -> None:
        await self._write(
            """INSERT INTO purpose_tokens (user_id, purpose, token_digest, expires_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(user_id, purpose) DO UPDATE SET
                   token_digest = excluded.token_digest,
                   expires_at = excluded.expires_at""",
            (user_id, _purpose_value(purpose), token_digest, expires_at.isoformat()),
        )

    async def clear_token_fields(self, user_id: int, purpose: Purpose) -> None:
        await self._write(
            "DELETE FROM purpose_tokens WHERE user_id = ? AND purpose = ?",
            (user_id, _purpose_value(purpose)),
        )

    async def consume_token_fields(
        self,
        user_id: int,
        purpose: Purpose,
        token_digest: str,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        mark_verified: bool = False,
    ) -> bool:
        """Delete the matching side record and apply the user update in one transaction."""
        purpose_value = _purpose_value(purpose)
        async with self._write_lock:
            db = self._conn()
            try:
                cursor = await db.execute(
                    """DELETE FROM purpose_tokens
                       WHERE user_id = ? AND purpose = ? AND token_digest = ? AND expires_at > ?""",
                    (user_id, purpose_value, token_digest, now.isoformat()),
                )
                if cursor.rowcount != 1:
                    await db.rollback()
                    return False

                assignments: list[str] = []
                params: list[Any] = []
                if password_hash is not None:
                    assignments.append("password_hash = ?")
                    params.append(password_hash)
                if email is not None:
                    assignments.append("email = ?")
                    params.append(email)
                if mark_verified:
                    assignments.append("is_verified = 1")
                if assignments:
                    params.append(user_id)
                    await db.execute(
                        f"UPDATE users SET {', '.join(assignments)} WHERE id = ?",
                        tuple(params),
                    )
                await db.commit()
                return True
            except aiosqlite.IntegrityError as exc:
                await db.rollback()
                raise AccountStateError(_integrity_message(exc)) from exc
            except aiosqlite.Error as exc:
                await db.rollback()
                logger.error(
                    "user_db_write_failed",
                    operation="consume_token_fields",
                    purpose=purpose_value,
                    error_type=type(exc).__name__,
                )
                raise StoreError() from exc

    # ── API keys ──────────────────────────────────────────────────────────────

    async def get_api_key(self, user_id: int, slot: Slot) -> Optional[ApiKeyRecord]:
        row = await self._fetchone(
            "SELECT * FROM api_keys WHERE user_id = ? AND slot = ?", (user_id, slot)
        )
        return _row_to_api_key(row) if row else None

    async def set_api_key(
        self,
        user_id: int,
        slot: Slot,
        key_hash: str,
        key_hint: str,
        active: bool,
        created_at: datetime,
    ) -> None:
        await self._write(
            """INSERT INTO api_keys (user_id, slot, key_hash, key_hint, active, created_at, last_used_at)
               VALUES (?, ?, ?, ?, ?, ?, NULL)
               ON CONFLICT(user_id, slot) DO UPDATE SET
                   key_hash = excluded.key_hash,
                   key_hint = excluded.key_hint,
                   active = excluded.active,
                   created_at = excluded.created_at,
                   last_used_at = NULL""",
            (user_id, slot, key_hash, key_hint, int(active), created_at.isoformat()),
        )

    async def set_api_key_active(self, user_id: int, slot: Slot, active: bool) -> bool:
        count = await self._write(
            "UPDATE api_keys SET active = ? WHERE user_id = ? AND slot = ?",
            (int(active), user_id, slot),
        )
        return count > 0

    async def clear_api_key(self, user_id: int, slot: Slot) -> bool:
        count = await self._write(
            "DELETE FROM api_keys WHERE user_id = ? AND slot = ?", (user_id, slot)
        )
        return count > 0

    async def list_api_keys(self, user_id: int) -> list[ApiKeyRecord]:
        rows = await self._fetchall(
            """SELECT * FROM api_keys WHERE user_id = ?
               ORDER BY CASE slot WHEN 'primary' THEN 0 ELSE 1 END""",
            (user_id,),
        )
        return [_row_to_api_key(row) for row in rows]

    async def find_api_key(self, key_hash: str) -> Optional[ApiKeyRecord]:
        row = await self._fetchone("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,))
        return _row_to_api_key(row) if row else None

    async def touch_last_used(self, user_id: int, slot: Slot, at: datetime) -> None:
        # ISO 8601 strings in one timezone compare chronologically
        await self._write(
            """UPDATE api_keys SET last_used_at = ?
               WHERE user_id = ? AND slot = ?
                 AND (last_used_at IS NULL OR last_used_at < ?)""",
            (at.isoformat(), user_id, slot, at.isoformat()),
        )


def _integrity_message(exc: Exception) -> str:
    text = str(exc)
    if "users.username" in text:
        return "Username already exists"
    if "users.email" in text:
        return "Email already exists"
    return "Request conflicts with existing data"
