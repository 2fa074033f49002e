"""SQLite-backed journal of strategy cycles and the trades each phase made."""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from storage.models import CycleRecord, PhaseResultRecord

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _serialize_payload(result: Any) -> str:
    payload = asdict(result) if is_dataclass(result) else dict(result)
    # Decimals are stored as strings so journalled quantities stay exact.
    return json.dumps({key: str(value) if isinstance(value, Decimal) else value for key, value in payload.items()})


class SQLiteJournal:
    """Provides async-friendly helpers for journalling strategy activity."""

    def __init__(self, db_path: Path | str = Path("data/cycle_journal.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS strategy_cycle (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cycle_number INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                last_phase TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS phase_result (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cycle_id INTEGER NOT NULL,
                phase TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                tx_hash TEXT,
                payload TEXT NOT NULL,
                FOREIGN KEY (cycle_id) REFERENCES strategy_cycle(id) ON DELETE CASCADE
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_phase_result_cycle
                ON phase_result(cycle_id);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def record_cycle_start(self, cycle_number: int, phase: str) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._record_cycle_start_sync, cycle_number, phase)

    def _record_cycle_start_sync(self, cycle_number: int, phase: str) -> int:
        started_at = datetime.now(timezone.utc).strftime(ISO_FORMAT)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO strategy_cycle (cycle_number, started_at, last_phase)
                VALUES (?, ?, ?)
                """,
                (cycle_number, started_at, phase),
            )
            self._connection.commit()
            cycle_id = cursor.lastrowid
            cursor.close()
        return cycle_id

    async def record_phase_result(self, cycle_id: int, phase: str, result: Any) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._record_phase_result_sync, cycle_id, phase, result)

    def _record_phase_result_sync(self, cycle_id: int, phase: str, result: Any) -> int:
        recorded_at = datetime.now(timezone.utc).strftime(ISO_FORMAT)
        tx_hash = getattr(result, "tx_hash", None)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO phase_result (cycle_id, phase, recorded_at, tx_hash, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (cycle_id, phase, recorded_at, tx_hash, _serialize_payload(result)),
            )
            result_id = cursor.lastrowid
            cursor.execute(
                "UPDATE strategy_cycle SET last_phase = ? WHERE id = ?",
                (phase, cycle_id),
            )
            self._connection.commit()
            cursor.close()
        return result_id

    async def record_cycle_finish(self, cycle_id: int, phase: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._record_cycle_finish_sync, cycle_id, phase)

    def _record_cycle_finish_sync(self, cycle_id: int, phase: str) -> None:
        finished_at = datetime.now(timezone.utc).strftime(ISO_FORMAT)
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE strategy_cycle
                SET finished_at = ?, last_phase = ?
                WHERE id = ?
                """,
                (finished_at, phase, cycle_id),
            )
            self._connection.commit()
            cursor.close()

    async def fetch_cycle(self, cycle_id: int) -> Optional[CycleRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_cycle_sync, cycle_id)

    def _fetch_cycle_sync(self, cycle_id: int) -> Optional[CycleRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM strategy_cycle WHERE id = ?", (cycle_id,))
            row = cursor.fetchone()
            cursor.close()
        if row is None:
            return None
        return CycleRecord(
            id=row["id"],
            cycle_number=row["cycle_number"],
            started_at=datetime.strptime(row["started_at"], ISO_FORMAT),
            finished_at=datetime.strptime(row["finished_at"], ISO_FORMAT) if row["finished_at"] else None,
            last_phase=row["last_phase"],
        )

    async def fetch_recent_trades(self, limit: int = 50) -> list[PhaseResultRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_trades_sync, limit)

    def _fetch_recent_trades_sync(self, limit: int) -> list[PhaseResultRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM phase_result
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,)
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            PhaseResultRecord(
                id=row["id"],
                cycle_id=row["cycle_id"],
                phase=row["phase"],
                recorded_at=datetime.strptime(row["recorded_at"], ISO_FORMAT),
                tx_hash=row["tx_hash"],
                payload=json.loads(row["payload"]),
            )
            for row in rows
        ]

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()


__all__ = ["SQLiteJournal", "CycleRecord", "PhaseResultRecord"]
