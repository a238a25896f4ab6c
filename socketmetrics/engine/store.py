"""
Summary record persistence.

The engine only needs two operations: append a record and fetch the most
recent N (newest first). Two implementations ship:

- InMemorySummaryStore: process-local list, used when no database is configured
- SqliteSummaryStore: stdlib sqlite3, run off the event loop with asyncio.to_thread
"""

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .data_types import SummaryRecord
from .errors import StoreError

logger = logging.getLogger(__name__)


class SummaryStore(ABC):
    """Append-only store of summary records."""

    @abstractmethod
    async def append(self, record: SummaryRecord) -> None:
        """Persist one record. Raises StoreError on failure."""

    @abstractmethod
    async def most_recent(self, n: int) -> List[SummaryRecord]:
        """Up to n records, newest timestamp first."""

    async def open(self) -> None:
        """Prepare the store for use."""

    async def close(self) -> None:
        """Release resources."""


class InMemorySummaryStore(SummaryStore):
    """List-backed store. Optional max_records keeps only the newest records."""

    def __init__(self, max_records: Optional[int] = None):
        self._records: List[SummaryRecord] = []
        self._max_records = max_records

    async def append(self, record: SummaryRecord) -> None:
        self._records.append(replace(record))
        if self._max_records and len(self._records) > self._max_records:
            del self._records[: len(self._records) - self._max_records]

    async def most_recent(self, n: int) -> List[SummaryRecord]:
        if n <= 0:
            return []
        # sorted() is stable, so equal timestamps come back newest-inserted first
        ordered = sorted(reversed(self._records), key=lambda r: r.timestamp_ms, reverse=True)
        return [replace(r) for r in ordered[:n]]

    def __len__(self) -> int:
        return len(self._records)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS aggregateddata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    price REAL NOT NULL,
    volume REAL NOT NULL,
    moving_average REAL NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    data_points INTEGER NOT NULL,
    source TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_aggregateddata_timestamp ON aggregateddata (timestamp_ms DESC);
CREATE INDEX IF NOT EXISTS idx_aggregateddata_symbol ON aggregateddata (symbol);
"""


class SqliteSummaryStore(SummaryStore):
    """
    SQLite-backed store.

    Args:
        path: Database file, or ":memory:"

    Example:
        >>> store = SqliteSummaryStore("data/metrics.db")
        >>> await store.open()
        >>> await store.append(record)
        >>> latest = await store.most_recent(1)
    """

    def __init__(self, path: str = "socketmetrics.db"):
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    async def open(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = await asyncio.to_thread(self._connect)
        except sqlite3.Error as e:
            raise StoreError("open", e) from e
        logger.info(f"Opened summary store at {self.path}")

    def _connect(self) -> sqlite3.Connection:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.executescript(_SCHEMA)
        conn.commit()
        return conn

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        with self._lock:
            conn.close()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("access", RuntimeError("store is not open"))
        return self._conn

    async def append(self, record: SummaryRecord) -> None:
        conn = self._require_conn()
        try:
            await asyncio.to_thread(self._insert, conn, record)
        except sqlite3.Error as e:
            raise StoreError("append", e) from e

    def _insert(self, conn: sqlite3.Connection, record: SummaryRecord) -> None:
        with self._lock:
            conn.execute(
                "INSERT INTO aggregateddata "
                "(symbol, price, volume, moving_average, timestamp_ms, data_points, source) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.symbol,
                    record.mean_price,
                    record.total_volume,
                    record.moving_average,
                    record.timestamp_ms,
                    record.sample_count,
                    record.source_id,
                ),
            )
            conn.commit()

    async def most_recent(self, n: int) -> List[SummaryRecord]:
        if n <= 0:
            return []
        conn = self._require_conn()
        try:
            rows = await asyncio.to_thread(self._select, conn, n)
        except sqlite3.Error as e:
            raise StoreError("most_recent", e) from e

        return [
            SummaryRecord(
                symbol=row[0],
                mean_price=row[1],
                total_volume=row[2],
                moving_average=row[3],
                timestamp_ms=row[4],
                sample_count=row[5],
                source_id=row[6],
            )
            for row in rows
        ]

    def _select(self, conn: sqlite3.Connection, n: int) -> list:
        with self._lock:
            cursor = conn.execute(
                "SELECT symbol, price, volume, moving_average, timestamp_ms, data_points, source "
                "FROM aggregateddata ORDER BY timestamp_ms DESC, id DESC LIMIT ?",
                (n,),
            )
            return cursor.fetchall()
