from __future__ import annotations

import asyncio
import json
import os
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from loguru import logger

DEFAULT_TTL = timedelta(hours=6)
DEFAULT_INDEX_TTL = timedelta(hours=48)


def cooldown_key(key: str) -> str:
    return f"analyzed:{key}"


def type_index_key(exception_type: str) -> str:
    return f"analyzed:index:{exception_type}"


class CooldownStore(Protocol):
    """
    TTL memory of which problems were recently remediated.

    should_process/mark_processed are two separate calls, not an atomic check-and-set:
    two workers handling the same problem id concurrently can both pass the check.
    Every operation fails open (errors are logged, should_process answers True).
    """

    async def should_process(self, key: str) -> bool: ...

    async def mark_processed(self, key: str, ttl: Optional[timedelta] = None) -> None: ...

    async def clear(self, key: str) -> None: ...

    async def index_by_type(self, exception_type: str, key: str) -> None: ...

    async def clear_by_type(self, exception_type: str) -> None: ...


class _KeyValueCooldownStore:
    """
    Cooldown semantics over three primitives (_get/_set/_delete) that subclasses
    implement against their storage. Values expire at `now + ttl`.
    """

    index_ttl: timedelta = DEFAULT_INDEX_TTL

    def __init__(self, *, clock: Callable[[], float] = time.time, index_ttl: timedelta = DEFAULT_INDEX_TTL) -> None:
        self._clock = clock
        self.index_ttl = index_ttl

    # -- primitives -------------------------------------------------------
    def _get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _set(self, key: str, value: str, ttl: timedelta) -> None:
        raise NotImplementedError

    def _delete(self, key: str) -> None:
        raise NotImplementedError

    async def _run(self, fn: Callable[..., object], *args: object) -> object:
        return fn(*args)

    # -- contract ---------------------------------------------------------
    async def should_process(self, key: str) -> bool:
        if not key:
            return True
        try:
            existing = await self._run(self._get, cooldown_key(key))
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cooldown check failed for {key}, allowing processing: {e}")
            return True
        if existing is not None:
            logger.info(f"Skipping {key} - analyzed at {existing}")
            return False
        return True

    async def mark_processed(self, key: str, ttl: Optional[timedelta] = None) -> None:
        if not key:
            return
        ttl = ttl or DEFAULT_TTL
        stamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()
        try:
            await self._run(self._set, cooldown_key(key), stamp, ttl)
            logger.debug(f"Marked {key} as processed (TTL: {ttl})")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to mark {key} as processed: {e}")

    async def clear(self, key: str) -> None:
        if not key:
            return
        try:
            await self._run(self._delete, cooldown_key(key))
            logger.info(f"Cleared cooldown for {key}")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to clear cooldown for {key}: {e}")

    async def index_by_type(self, exception_type: str, key: str) -> None:
        if not exception_type or not key:
            return
        try:
            await self._run(self._add_to_index, exception_type, key)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to index {key} under {exception_type}: {e}")

    async def clear_by_type(self, exception_type: str) -> None:
        if not exception_type:
            return
        try:
            cleared = await self._run(self._flush_index, exception_type)
            logger.info(f"Cleared {cleared} cooldown entries for {exception_type}")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to clear cooldowns for {exception_type}: {e}")

    def _add_to_index(self, exception_type: str, key: str) -> None:
        ikey = type_index_key(exception_type)
        ids = _split_ids(self._get(ikey))
        if key not in ids:
            ids.append(key)
        self._set(ikey, json.dumps(ids), self.index_ttl)

    def _flush_index(self, exception_type: str) -> int:
        ikey = type_index_key(exception_type)
        raw = self._get(ikey)
        if raw is None:
            # Entries keyed by the type itself (records without a problem id).
            self._delete(cooldown_key(exception_type))
            return 1
        ids = _split_ids(raw)
        for pid in ids:
            self._delete(cooldown_key(pid))
        self._delete(ikey)
        return len(ids)


def _split_ids(raw: Optional[str]) -> List[str]:
    # Index values are a JSON list of problem ids.
    ids = json.loads(raw) if raw else []
    return [str(p) for p in ids if p] if isinstance(ids, list) else []


class InMemoryCooldownStore(_KeyValueCooldownStore):
    """Process-local store. The clock is injectable so tests can step past a TTL."""

    def __init__(self, *, clock: Callable[[], float] = time.time, index_ttl: timedelta = DEFAULT_INDEX_TTL) -> None:
        super().__init__(clock=clock, index_ttl=index_ttl)
        self._items: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires = item
            if expires <= self._clock():
                del self._items[key]
                return None
            return value

    def _set(self, key: str, value: str, ttl: timedelta) -> None:
        with self._lock:
            self._items[key] = (value, self._clock() + ttl.total_seconds())

    def _delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class SqliteCooldownStore(_KeyValueCooldownStore):
    """
    Persistent cooldown store (SQLite) so cooldowns survive restarts.
    Calls run in a worker thread to keep the event loop free.
    """

    def __init__(
        self,
        *,
        db_path: str,
        clock: Callable[[], float] = time.time,
        index_ttl: timedelta = DEFAULT_INDEX_TTL,
    ) -> None:
        super().__init__(clock=clock, index_ttl=index_ttl)
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=10.0)
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        with self._connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS cooldowns (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_unix REAL NOT NULL
                )
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_cooldowns_expiry ON cooldowns(expires_unix)")

    async def _run(self, fn: Callable[..., object], *args: object) -> object:
        return await asyncio.to_thread(fn, *args)

    def _get(self, key: str) -> Optional[str]:
        with self._connect() as con:
            row = con.execute(
                "SELECT value FROM cooldowns WHERE key = ? AND expires_unix > ?",
                (key, self._clock()),
            ).fetchone()
        return str(row["value"]) if row else None

    def _set(self, key: str, value: str, ttl: timedelta) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT OR REPLACE INTO cooldowns(key, value, expires_unix) VALUES (?, ?, ?)",
                (key, value, self._clock() + ttl.total_seconds()),
            )

    def _delete(self, key: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM cooldowns WHERE key = ?", (key,))

    def _acquire(self, key: str, ttl: timedelta) -> bool:
        now = self._clock()
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
        with self._connect() as con:
            con.execute("DELETE FROM cooldowns WHERE key = ? AND expires_unix <= ?", (key, now))
            cur = con.execute(
                "INSERT OR IGNORE INTO cooldowns(key, value, expires_unix) VALUES (?, ?, ?)",
                (key, stamp, now + ttl.total_seconds()),
            )
            return cur.rowcount == 1

    async def try_acquire(self, key: str, ttl: Optional[timedelta] = None) -> bool:
        """
        Atomic set-if-absent: True when this caller now owns the cooldown for `key`.
        Fails open like the rest of the store.
        """
        if not key:
            return True
        try:
            return bool(await self._run(self._acquire, cooldown_key(key), ttl or DEFAULT_TTL))
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cooldown acquire failed for {key}, allowing processing: {e}")
            return True

    def purge_expired(self) -> int:
        with self._connect() as con:
            cur = con.execute("DELETE FROM cooldowns WHERE expires_unix <= ?", (self._clock(),))
            return int(cur.rowcount)
