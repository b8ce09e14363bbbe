"""
Database infrastructure with SQLite and async support.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite


logger = logging.getLogger(__name__)


MIGRATIONS: Sequence[Tuple[int, Sequence[str]]] = (
    (1, (
        """
        CREATE TABLE IF NOT EXISTS evidence_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            record_id TEXT NOT NULL,
            source_id TEXT NOT NULL,
            source_url TEXT NOT NULL,
            category TEXT NOT NULL,
            geography TEXT NOT NULL DEFAULT 'UAE',
            item_name TEXT NOT NULL,
            price_typical REAL,
            unit TEXT NOT NULL,
            currency TEXT NOT NULL DEFAULT 'AED',
            capture_date TEXT NOT NULL,
            capture_day TEXT NOT NULL,
            reliability_grade TEXT NOT NULL,
            confidence_score INTEGER NOT NULL,
            extracted_snippet TEXT,
            publisher TEXT,
            title TEXT,
            tags TEXT,
            notes TEXT,
            run_id TEXT,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_evidence_dedup ON evidence_records (source_url, item_name, capture_day)",
        "CREATE INDEX IF NOT EXISTS idx_evidence_item_source ON evidence_records (item_name, source_id, capture_date)",
        """
        CREATE TABLE IF NOT EXISTS ingestion_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL UNIQUE,
            triggered_by TEXT NOT NULL,
            actor_id INTEGER,
            status TEXT NOT NULL,
            sources_attempted INTEGER NOT NULL,
            sources_succeeded INTEGER NOT NULL,
            sources_failed INTEGER NOT NULL,
            evidence_extracted INTEGER NOT NULL,
            evidence_created INTEGER NOT NULL,
            evidence_skipped INTEGER NOT NULL,
            errors TEXT,
            per_source TEXT,
            downstream TEXT,
            started_at TEXT NOT NULL,
            completed_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS connector_health (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            source_id TEXT NOT NULL,
            source_name TEXT NOT NULL,
            status TEXT NOT NULL,
            http_status INTEGER,
            response_time_ms INTEGER,
            content_length INTEGER,
            records_extracted INTEGER NOT NULL DEFAULT 0,
            records_inserted INTEGER NOT NULL DEFAULT 0,
            duplicates_skipped INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            error_type TEXT,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS trend_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            metric TEXT NOT NULL,
            category TEXT NOT NULL,
            geography TEXT NOT NULL,
            direction TEXT NOT NULL,
            confidence TEXT NOT NULL,
            data_point_count INTEGER NOT NULL,
            current_ma REAL,
            previous_ma REAL,
            percent_change REAL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS price_change_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            item_name TEXT NOT NULL,
            category TEXT NOT NULL,
            source_id TEXT NOT NULL,
            previous_price REAL NOT NULL,
            new_price REAL NOT NULL,
            change_pct REAL NOT NULL,
            change_direction TEXT NOT NULL,
            severity TEXT NOT NULL,
            detected_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS project_insights (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            insight_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            actionable_recommendation TEXT,
            confidence_score REAL,
            data_points TEXT,
            trigger_condition TEXT,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS benchmark_proposals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            benchmark_key TEXT NOT NULL,
            run_id TEXT NOT NULL,
            recommendation TEXT NOT NULL,
            confidence_score INTEGER NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS source_state (
            source_id TEXT PRIMARY KEY,
            last_successful_fetch TEXT,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            last_error TEXT
        )
        """,
    )),
)


PRAGMAS = ("PRAGMA journal_mode=WAL;", "PRAGMA busy_timeout=30000;")


def resolve_db_path(location: str) -> Union[str, Path]:
    """Accept a plain path, ``:memory:`` or an ``sqlite[+aiosqlite]://`` URL."""
    if location.startswith("sqlite"):
        location = location.split("///")[-1] if "///" in location else location.split("//")[-1]
    return location if location == ":memory:" else Path(location)


def _column_list(columns: Sequence[str]) -> str:
    return ", ".join(columns)


class Database:
    """Single aiosqlite connection for the evidence tables.

    Every write commits immediately; the engine issues no multi-statement
    transactions.
    """

    def __init__(self, db_path: str = "db/evidence.db"):
        self.db_path = resolve_db_path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection (creating the parent directory) and migrate."""
        if self.connected:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self.db_path, timeout=30)
        conn.row_factory = aiosqlite.Row
        for pragma in PRAGMAS:
            await conn.execute(pragma)
        self._connection = conn
        await self._run_migrations()
        logger.debug(f"Connected to {self.db_path}")

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.connect()
        return self._connection

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        return await (await self._conn()).execute(sql, params)

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        async with (await self._conn()).execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with (await self._conn()).execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _write(self, sql: str, params: Sequence[Any]) -> aiosqlite.Cursor:
        conn = await self._conn()
        cursor = await conn.execute(sql, tuple(params))
        await conn.commit()
        return cursor

    async def insert(self, table: str, row: Dict[str, Any]) -> int:
        """Insert *row* into *table*; returns the new rowid."""
        placeholders = ", ".join("?" for _ in row)
        cursor = await self._write(
            f"INSERT INTO {table} ({_column_list(list(row))}) VALUES ({placeholders})",
            list(row.values()),
        )
        return cursor.lastrowid

    async def upsert(self, table: str, row: Dict[str, Any], pk_columns: List[str]) -> None:
        """Insert *row*, or update its non-key columns when the key exists."""
        columns = list(row)
        placeholders = ", ".join("?" for _ in columns)
        updates = [f"{col} = excluded.{col}" for col in columns if col not in pk_columns]
        action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        await self._write(
            f"INSERT INTO {table} ({_column_list(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT({_column_list(pk_columns)}) {action}",
            list(row.values()),
        )

    async def _run_migrations(self) -> None:
        """Apply every version in ``MIGRATIONS`` not yet recorded, oldest first."""
        conn = self._connection
        await conn.execute(
            "CREATE TABLE IF NOT EXISTS migrations ("
            "version INTEGER PRIMARY KEY, applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
        )
        async with conn.execute("SELECT version FROM migrations") as cursor:
            applied = {row[0] for row in await cursor.fetchall()}

        for version, statements in MIGRATIONS:
            if version in applied:
                continue
            for statement in statements:
                await conn.execute(statement)
            await conn.execute("INSERT INTO migrations (version) VALUES (?)", (version,))
            logger.info(f"Applied schema migration {version}")
        await conn.commit()
