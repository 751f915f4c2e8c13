"""
Database Manager - SQLite with WAL mode for the engine's durable state.

Holds the three logical documents of the engine:
- analysis_memory: one row per symbol (last analysis + mute state)
- observation_list: bounded set of symbols the smart filter skipped
- signals + signal_events: append-mostly signal log with its history

Every mutation is a single locked statement (or a locked check-then-write)
followed by a commit, so interleaved scan and monitor tasks never see or
produce partial records.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiosqlite

from src.core.logger import get_logger

logger = get_logger("db")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort lexicographically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime."""
    if not value:
        return None
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class DatabaseManager:
    """
    Async SQLite database manager with WAL mode.

    Features:
    - WAL mode for concurrent read/write
    - Single connection guarded by a timed asyncio lock
    - Compare-and-set status transitions for signals
    """

    _LOCK_TIMEOUT: float = 30.0

    SIGNAL_COLUMNS = (
        "id", "symbol", "direction", "created_at", "status", "entry_price",
        "stop_loss", "take_profit1", "take_profit2", "take_profit3",
        "confluence_score", "confidence_label", "confidence_percent",
        "leverage", "position_size", "trigger_reason", "timeframe",
        "last_checked_at",
    )

    def __init__(self, db_path: str = "data/signal_scout.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @asynccontextmanager
    async def _timed_lock(self) -> AsyncIterator[None]:
        """Serialize writers; give up after _LOCK_TIMEOUT seconds."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._LOCK_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(
                "Database lock acquisition timed out - possible deadlock",
                timeout=self._LOCK_TIMEOUT,
            )
            raise RuntimeError(
                f"Database lock timeout after {self._LOCK_TIMEOUT}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, timeout=15)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_schema()
        self._initialized = True
        logger.debug("Database initialized", path=self.db_path)

    async def _create_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS analysis_memory (
            symbol TEXT PRIMARY KEY,
            last_analysis_time TEXT,
            last_price REAL,
            last_rvol REAL,
            analysis_count INTEGER NOT NULL DEFAULT 0 CHECK(analysis_count >= 0),
            last_result TEXT,  -- JSON {signal, confidence, confluence_score}
            mute_until TEXT,
            mute_reason TEXT
                CHECK(mute_reason IS NULL OR mute_reason IN ('WAIT_RESULT', 'LOW_CONFIDENCE', 'MANUAL')),
            mute_note TEXT,
            muted_at TEXT,
            last_confidence_score REAL,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS observation_list (
            symbol TEXT PRIMARY KEY,
            added_time TEXT NOT NULL,
            reason TEXT,
            check_count INTEGER NOT NULL DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS signals (
            id TEXT PRIMARY KEY,
            symbol TEXT NOT NULL,
            direction TEXT NOT NULL CHECK(direction IN ('LONG', 'SHORT')),
            created_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'Active',
            entry_price REAL NOT NULL,
            stop_loss REAL NOT NULL,
            take_profit1 REAL NOT NULL,
            take_profit2 REAL,
            take_profit3 REAL,
            confluence_score REAL,
            confidence_label TEXT,
            confidence_percent INTEGER,
            leverage REAL,
            position_size REAL,
            trigger_reason TEXT,
            timeframe TEXT,
            last_checked_at TEXT
        );

        CREATE TABLE IF NOT EXISTS signal_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            signal_id TEXT NOT NULL REFERENCES signals(id),
            timestamp TEXT NOT NULL,
            event TEXT NOT NULL,
            price REAL
        );

        CREATE TABLE IF NOT EXISTS system_state (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_signals_symbol_dir ON signals(symbol, direction, created_at);
        CREATE INDEX IF NOT EXISTS idx_signals_status ON signals(status);
        CREATE INDEX IF NOT EXISTS idx_signal_events_signal ON signal_events(signal_id, id);
        CREATE INDEX IF NOT EXISTS idx_observation_added ON observation_list(added_time);
        """
        await self._db.executescript(schema_sql)
        await self._db.commit()

    def _ensure_ready(self) -> None:
        if not self._initialized or self._db is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        self._ensure_ready()
        cursor = await self._db.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        self._ensure_ready()
        cursor = await self._db.execute(sql, tuple(params))
        row = await cursor.fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Analysis Memory
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_analysis(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row and row.get("last_result"):
            try:
                row["last_result"] = json.loads(row["last_result"])
            except json.JSONDecodeError:
                row["last_result"] = None
        return row

    async def get_analysis_record(self, symbol: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("SELECT * FROM analysis_memory WHERE symbol = ?", (symbol,))
        return self._decode_analysis(row)

    async def list_analysis_records(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM analysis_memory ORDER BY last_analysis_time DESC"
        )
        return [self._decode_analysis(r) for r in rows]

    async def record_analysis(
        self,
        symbol: str,
        analyzed_at: str,
        price: float,
        rvol: Optional[float],
        last_result: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Upsert the post-analysis fields; mute columns are left untouched."""
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                """INSERT INTO analysis_memory
                (symbol, last_analysis_time, last_price, last_rvol, analysis_count, last_result, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    last_analysis_time = excluded.last_analysis_time,
                    last_price = excluded.last_price,
                    last_rvol = excluded.last_rvol,
                    analysis_count = analysis_memory.analysis_count + 1,
                    last_result = excluded.last_result,
                    updated_at = excluded.updated_at""",
                (
                    symbol, analyzed_at, price, rvol,
                    json.dumps(last_result) if last_result is not None else None,
                    analyzed_at,
                ),
            )
            await self._db.commit()
        return await self.get_analysis_record(symbol)

    async def apply_mute(
        self,
        symbol: str,
        mute_until: str,
        reason: str,
        note: str,
        muted_at: str,
        confidence_score: Optional[float],
    ) -> Dict[str, Any]:
        """
        Set or extend a mute. An existing later mute_until is kept as is
        (mute_until never moves backward).
        """
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                "SELECT mute_until FROM analysis_memory WHERE symbol = ?", (symbol,)
            )
            row = await cursor.fetchone()
            current = parse_iso(row["mute_until"]) if row else None
            requested = parse_iso(mute_until)
            if current is not None and requested is not None and current >= requested:
                logger.debug(
                    "Mute not extended; existing mute is later",
                    symbol=symbol,
                    existing=row["mute_until"],
                    requested=mute_until,
                )
            else:
                await self._db.execute(
                    """INSERT INTO analysis_memory
                    (symbol, analysis_count, mute_until, mute_reason, mute_note, muted_at,
                     last_confidence_score, updated_at)
                    VALUES (?, 0, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(symbol) DO UPDATE SET
                        mute_until = excluded.mute_until,
                        mute_reason = excluded.mute_reason,
                        mute_note = excluded.mute_note,
                        muted_at = excluded.muted_at,
                        last_confidence_score = excluded.last_confidence_score,
                        updated_at = excluded.updated_at""",
                    (symbol, mute_until, reason, note, muted_at, confidence_score, muted_at),
                )
                await self._db.commit()
        return await self.get_analysis_record(symbol)

    async def clear_mute(self, symbol: str) -> bool:
        """Remove mute fields. Returns False when the symbol has no record."""
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                """UPDATE analysis_memory SET
                    mute_until = NULL, mute_reason = NULL, mute_note = NULL,
                    muted_at = NULL, last_confidence_score = NULL, updated_at = ?
                WHERE symbol = ?""",
                (to_iso(utc_now()), symbol),
            )
            await self._db.commit()
            return cursor.rowcount > 0

    async def list_muted(self, now_iso: str) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM analysis_memory WHERE mute_until IS NOT NULL AND mute_until > ? "
            "ORDER BY mute_until ASC",
            (now_iso,),
        )
        return [self._decode_analysis(r) for r in rows]

    # ------------------------------------------------------------------
    # Observation List
    # ------------------------------------------------------------------

    async def upsert_observation(self, symbol: str, reason: str, added_time: str, limit: int) -> None:
        """Insert or refresh an observation, then trim to the most recent ``limit``."""
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                """INSERT INTO observation_list (symbol, added_time, reason, check_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(symbol) DO UPDATE SET
                    added_time = excluded.added_time,
                    reason = excluded.reason,
                    check_count = observation_list.check_count + 1""",
                (symbol, added_time, reason),
            )
            await self._db.execute(
                """DELETE FROM observation_list WHERE symbol NOT IN (
                    SELECT symbol FROM observation_list ORDER BY added_time DESC, rowid DESC LIMIT ?
                )""",
                (int(limit),),
            )
            await self._db.commit()

    async def list_observations(self) -> List[Dict[str, Any]]:
        return await self._fetchall(
            "SELECT * FROM observation_list ORDER BY added_time DESC, rowid DESC"
        )

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def insert_signal(
        self,
        signal: Dict[str, Any],
        initial_event: Dict[str, Any],
        day_prefix: str,
    ) -> bool:
        """
        Insert a signal and its first history event unless a signal for the
        same symbol+direction already exists on ``day_prefix`` (YYYY-MM-DD).
        Returns False when refused.
        """
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                "SELECT 1 FROM signals WHERE symbol = ? AND direction = ? AND created_at LIKE ? LIMIT 1",
                (signal["symbol"], signal["direction"], f"{day_prefix}%"),
            )
            if await cursor.fetchone():
                return False
            cols = [c for c in self.SIGNAL_COLUMNS if c in signal]
            await self._db.execute(
                f"INSERT INTO signals ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                tuple(signal[c] for c in cols),
            )
            await self._db.execute(
                "INSERT INTO signal_events (signal_id, timestamp, event, price) VALUES (?, ?, ?, ?)",
                (signal["id"], initial_event["timestamp"], initial_event["event"], initial_event.get("price")),
            )
            await self._db.commit()
            return True

    async def transition_signal(
        self,
        signal_id: str,
        expected_status: str,
        new_status: str,
        event: Dict[str, Any],
        checked_at: str,
    ) -> bool:
        """Compare-and-set status change plus history append. False if status moved meanwhile."""
        self._ensure_ready()
        async with self._timed_lock():
            cursor = await self._db.execute(
                "UPDATE signals SET status = ?, last_checked_at = ? WHERE id = ? AND status = ?",
                (new_status, checked_at, signal_id, expected_status),
            )
            if cursor.rowcount != 1:
                return False
            await self._db.execute(
                "INSERT INTO signal_events (signal_id, timestamp, event, price) VALUES (?, ?, ?, ?)",
                (signal_id, event["timestamp"], event["event"], event.get("price")),
            )
            await self._db.commit()
            return True

    async def touch_signal(self, signal_id: str, checked_at: str) -> None:
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                "UPDATE signals SET last_checked_at = ? WHERE id = ?",
                (checked_at, signal_id),
            )
            await self._db.commit()

    async def get_signal(self, signal_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetchone("SELECT * FROM signals WHERE id = ?", (signal_id,))

    async def list_signals(
        self,
        status: Optional[str] = None,
        symbol: Optional[str] = None,
        direction: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Signals newest first, optionally filtered."""
        sql = "SELECT * FROM signals WHERE 1 = 1"
        params: List[Any] = []
        if status:
            sql += " AND status = ?"
            params.append(status)
        if symbol:
            sql += " AND symbol = ?"
            params.append(symbol)
        if direction:
            sql += " AND direction = ?"
            params.append(direction)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return await self._fetchall(sql, params)

    async def has_signal_on_day(self, symbol: str, direction: str, day_prefix: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 AS found FROM signals WHERE symbol = ? AND direction = ? AND created_at LIKE ? LIMIT 1",
            (symbol, direction, f"{day_prefix}%"),
        )
        return row is not None

    async def get_signal_events(self, signal_ids: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        ids = list(signal_ids)
        out: Dict[str, List[Dict[str, Any]]] = {sid: [] for sid in ids}
        if not ids:
            return out
        rows = await self._fetchall(
            f"SELECT signal_id, timestamp, event, price FROM signal_events "
            f"WHERE signal_id IN ({', '.join('?' for _ in ids)}) ORDER BY id ASC",
            ids,
        )
        for row in rows:
            out[row.pop("signal_id")].append(row)
        return out

    async def get_signal_stats(self, day_prefix: str) -> Dict[str, int]:
        """Aggregate counts derived from the signal rows on every call."""
        row = await self._fetchone(
            """SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN substr(status, 1, 6) = 'Hit_TP' THEN 1 ELSE 0 END), 0) AS wins,
                COALESCE(SUM(CASE WHEN status = 'Hit_SL' THEN 1 ELSE 0 END), 0) AS losses,
                COALESCE(SUM(CASE WHEN status = 'Active' THEN 1 ELSE 0 END), 0) AS active,
                COALESCE(SUM(CASE WHEN created_at LIKE ? THEN 1 ELSE 0 END), 0) AS today
            FROM signals""",
            (f"{day_prefix}%",),
        )
        return {k: int(v or 0) for k, v in (row or {}).items()}

    # ------------------------------------------------------------------
    # System State
    # ------------------------------------------------------------------

    async def set_state(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under ``key``."""
        self._ensure_ready()
        async with self._timed_lock():
            await self._db.execute(
                """INSERT OR REPLACE INTO system_state (key, value, updated_at)
                VALUES (?, ?, ?)""",
                (key, json.dumps(value, default=str), to_iso(utc_now())),
            )
            await self._db.commit()

    async def get_state(self, key: str, default: Any = None) -> Any:
        row = await self._fetchone("SELECT value FROM system_state WHERE key = ?", (key,))
        if row:
            try:
                return json.loads(row["value"])
            except json.JSONDecodeError:
                return row["value"]
        return default

    async def close(self) -> None:
        """Close database connection gracefully."""
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False
