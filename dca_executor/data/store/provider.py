from __future__ import annotations

import asyncio
import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError

from dca_executor.config import repo_root
from dca_executor.core.exceptions import NetworkError, ProviderMisconfigured, UpstreamBadResponse, UpstreamError
from dca_executor.core.http import ProviderHttpClient
from dca_executor.data.store.request_factory import RestStoreRequestFactory
from dca_executor.data.store.schemas import (
    DelegationRecord,
    ExecutionRow,
    FailedAttemptRow,
    HistoryEntry,
    RunSummaryRow,
    utc_now,
)

TABLE_EXECUTIONS = "dca_executions"
TABLE_FAILED_ATTEMPTS = "dca_failed_attempts"
TABLE_RUN_SUMMARIES = "daily_summaries"


class Store(Protocol):
    async def active_delegations(self, now: datetime) -> List[DelegationRecord]:
        ...

    async def has_activity_since(self, since: datetime) -> bool:
        ...

    async def insert_execution(self, row: ExecutionRow) -> None:
        ...

    async def insert_failed_attempt(self, row: FailedAttemptRow) -> None:
        ...

    async def insert_run_summary(self, row: RunSummaryRow) -> None:
        ...

    async def increment_protocol_stats(self, volume: int, fees: int) -> None:
        ...

    async def execution_history(self, user_address: str, limit: int = 50) -> List[HistoryEntry]:
        ...


@dataclass(frozen=True)
class StoreSettings:
    backend: str
    sqlite_path: Path
    rest_url: str
    service_key: str

    @classmethod
    def from_env(cls) -> "StoreSettings":
        backend = os.getenv("STORE_BACKEND", "sqlite").strip().lower() or "sqlite"
        sqlite_path = Path(os.getenv("STORE_SQLITE_PATH", str(repo_root() / "runs" / "dca.sqlite3")))
        rest_url = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
        service_key = os.getenv("SUPABASE_SERVICE_KEY", "").strip()
        if backend not in {"memory", "sqlite", "rest"}:
            raise ProviderMisconfigured(f"Unknown STORE_BACKEND: {backend}")
        if backend == "rest" and not (rest_url and service_key):
            raise ProviderMisconfigured("SUPABASE_URL and SUPABASE_SERVICE_KEY are required when STORE_BACKEND=rest")
        return cls(backend=backend, sqlite_path=sqlite_path, rest_url=rest_url, service_key=service_key)


def _parse_delegations(rows: Iterable[Dict[str, Any]]) -> List[DelegationRecord]:
    records: List[DelegationRecord] = []
    for row in rows:
        try:
            records.append(DelegationRecord.model_validate(row))
        except ValidationError as exc:
            raise UpstreamBadResponse(f"Delegation row {row.get('id')} is malformed") from exc
    return records


def _history(rows: Iterable[Dict[str, Any]]) -> List[HistoryEntry]:
    return [HistoryEntry.model_validate({**row, "timestamp": row["created_at"]}) for row in rows]


class MemoryStore:
    """Process-local store used by tests and dry runs.

    ``fail_on`` holds method names that raise a network error, for exercising
    the fail-closed and dump-on-failure paths.
    """

    def __init__(self, delegations: Optional[List[DelegationRecord]] = None) -> None:
        self.delegations: List[DelegationRecord] = list(delegations or [])
        self.executions: List[Dict[str, Any]] = []
        self.failed_attempts: List[Dict[str, Any]] = []
        self.run_summaries: List[Dict[str, Any]] = []
        self.stats = {"total_volume": Decimal(0), "total_fees": Decimal(0), "total_executions": 0}
        self.fail_on: set[str] = set()

    def _guard(self, name: str) -> None:
        if name in self.fail_on:
            raise NetworkError(f"store connection refused during {name}")

    def add_delegation(self, record: DelegationRecord) -> None:
        self.delegations.append(record)

    async def active_delegations(self, now: datetime) -> List[DelegationRecord]:
        self._guard("active_delegations")
        return [record for record in self.delegations if record.expires_at > now]

    async def has_activity_since(self, since: datetime) -> bool:
        self._guard("has_activity_since")
        rows = self.executions + self.run_summaries
        return any(datetime.fromisoformat(row["created_at"]) >= since for row in rows)

    async def insert_execution(self, row: ExecutionRow) -> None:
        self._guard("insert_execution")
        self.executions.append(row.as_record())

    async def insert_failed_attempt(self, row: FailedAttemptRow) -> None:
        self._guard("insert_failed_attempt")
        self.failed_attempts.append(row.as_record())

    async def insert_run_summary(self, row: RunSummaryRow) -> None:
        self._guard("insert_run_summary")
        self.run_summaries.append(row.as_record())

    async def increment_protocol_stats(self, volume: int, fees: int) -> None:
        self._guard("increment_protocol_stats")
        self.stats["total_volume"] += Decimal(volume)
        self.stats["total_fees"] += Decimal(fees)
        self.stats["total_executions"] += 1

    async def execution_history(self, user_address: str, limit: int = 50) -> List[HistoryEntry]:
        self._guard("execution_history")
        rows = [row for row in self.executions if row["user_address"].lower() == user_address.lower()]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return _history(rows[:limit])


_SCHEMA = """
CREATE TABLE IF NOT EXISTS delegations (
    id TEXT PRIMARY KEY,
    user_address TEXT NOT NULL,
    smart_account_address TEXT NOT NULL,
    delegation_data TEXT NOT NULL,
    max_amount_per_swap TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT,
    target_asset TEXT
);
CREATE TABLE IF NOT EXISTS dca_executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    result_id TEXT NOT NULL UNIQUE,
    run_id TEXT NOT NULL,
    delegation_id TEXT,
    user_address TEXT NOT NULL,
    wallet_address TEXT,
    fear_greed_index INTEGER NOT NULL,
    action TEXT NOT NULL,
    amount_in TEXT NOT NULL,
    amount_out TEXT,
    fee_collected TEXT DEFAULT '0',
    tx_hash TEXT,
    status TEXT NOT NULL,
    error_message TEXT,
    error_type TEXT,
    error_detail TEXT,
    retry_count INTEGER DEFAULT 0,
    last_error TEXT,
    retry_of TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_executions_user ON dca_executions (user_address, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_executions_created ON dca_executions (created_at DESC);
CREATE TABLE IF NOT EXISTS dca_failed_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    delegation_id TEXT,
    user_address TEXT NOT NULL,
    stage TEXT NOT NULL,
    error_type TEXT NOT NULL,
    error_message TEXT NOT NULL,
    retryable INTEGER NOT NULL,
    context TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS daily_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    status TEXT NOT NULL,
    fear_greed_index INTEGER,
    action TEXT,
    percentage REAL,
    processed INTEGER,
    succeeded INTEGER,
    failed INTEGER,
    volume TEXT,
    fees TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS protocol_stats (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    total_volume TEXT NOT NULL DEFAULT '0',
    total_fees TEXT NOT NULL DEFAULT '0',
    total_executions INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);
INSERT OR IGNORE INTO protocol_stats (id, total_volume, total_fees, total_executions) VALUES (1, '0', '0', 0);
"""


class SqliteStore:
    """Local single-file store. Blocking sqlite3 calls run in a worker thread."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        if not self._initialized:
            conn.executescript(_SCHEMA)
            self._initialized = True
        return conn

    async def _run(self, fn, *args):
        def _call():
            conn = self._connect()
            try:
                with conn:
                    return fn(conn, *args)
            finally:
                conn.close()

        try:
            return await asyncio.to_thread(_call)
        except sqlite3.OperationalError as exc:
            raise NetworkError(f"sqlite store unavailable: {exc}") from exc
        except sqlite3.Error as exc:
            raise UpstreamError(f"sqlite store unreadable: {exc}") from exc

    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, record: Dict[str, Any]) -> None:
        # timestamps compare as text, so keep one offset spelling
        for key in ("created_at", "expires_at"):
            value = record.get(key)
            if isinstance(value, str) and value.endswith("Z"):
                record[key] = value[:-1] + "+00:00"
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(record.values()))

    def add_delegation_sync(self, record: DelegationRecord) -> None:
        row = record.model_dump(mode="json")
        row["delegation_data"] = (
            record.delegation_data if isinstance(record.delegation_data, str) else json.dumps(record.delegation_data)
        )
        row["max_amount_per_swap"] = str(record.max_amount_per_swap)
        known = {"id", "user_address", "smart_account_address", "delegation_data", "max_amount_per_swap", "expires_at", "created_at", "target_asset"}
        conn = self._connect()
        try:
            with conn:
                self._insert(conn, "delegations", {key: row.get(key) for key in known})
        finally:
            conn.close()

    async def active_delegations(self, now: datetime) -> List[DelegationRecord]:
        def _query(conn: sqlite3.Connection):
            cursor = conn.execute("SELECT * FROM delegations WHERE expires_at > ?", (now.isoformat(),))
            return [dict(row) for row in cursor.fetchall()]

        return _parse_delegations(await self._run(_query))

    async def has_activity_since(self, since: datetime) -> bool:
        def _query(conn: sqlite3.Connection) -> bool:
            for table in (TABLE_EXECUTIONS, TABLE_RUN_SUMMARIES):
                row = conn.execute(f"SELECT 1 FROM {table} WHERE created_at >= ? LIMIT 1", (since.isoformat(),)).fetchone()
                if row is not None:
                    return True
            return False

        return await self._run(_query)

    async def insert_execution(self, row: ExecutionRow) -> None:
        await self._run(self._insert, TABLE_EXECUTIONS, row.as_record())

    async def insert_failed_attempt(self, row: FailedAttemptRow) -> None:
        record = row.as_record()
        record["retryable"] = int(record["retryable"])
        await self._run(self._insert, TABLE_FAILED_ATTEMPTS, record)

    async def insert_run_summary(self, row: RunSummaryRow) -> None:
        await self._run(self._insert, TABLE_RUN_SUMMARIES, row.as_record())

    async def increment_protocol_stats(self, volume: int, fees: int) -> None:
        def _update(conn: sqlite3.Connection) -> None:
            current = conn.execute("SELECT total_volume, total_fees FROM protocol_stats WHERE id = 1").fetchone()
            conn.execute(
                "UPDATE protocol_stats SET total_volume = ?, total_fees = ?, "
                "total_executions = total_executions + 1, updated_at = ? WHERE id = 1",
                (
                    str(int(current["total_volume"]) + int(volume)),
                    str(int(current["total_fees"]) + int(fees)),
                    utc_now().isoformat(),
                ),
            )

        await self._run(_update)

    async def protocol_stats(self) -> Dict[str, Any]:
        def _query(conn: sqlite3.Connection) -> Dict[str, Any]:
            return dict(conn.execute("SELECT * FROM protocol_stats WHERE id = 1").fetchone())

        return await self._run(_query)

    async def execution_history(self, user_address: str, limit: int = 50) -> List[HistoryEntry]:
        def _query(conn: sqlite3.Connection):
            cursor = conn.execute(
                "SELECT * FROM dca_executions WHERE lower(user_address) = lower(?) ORDER BY created_at DESC LIMIT ?",
                (user_address, int(limit)),
            )
            return [dict(row) for row in cursor.fetchall()]

        return _history(await self._run(_query))


class RestStore:
    def __init__(self, settings: StoreSettings, http_client: Optional[ProviderHttpClient] = None) -> None:
        self.settings = settings
        self.request_factory = RestStoreRequestFactory(base_url=settings.rest_url, service_key=settings.service_key)
        self._client = http_client or ProviderHttpClient("store", rps=20.0)
        self._owns_client = http_client is None

    async def __aenter__(self) -> "RestStore":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client:
            await self._client.__aexit__(exc_type, exc, tb)

    async def _rows(self, spec) -> List[Dict[str, Any]]:
        payload = await self._client.request(spec)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise UpstreamBadResponse("store returned a non-list result")
        return payload

    async def active_delegations(self, now: datetime) -> List[DelegationRecord]:
        return _parse_delegations(await self._rows(self.request_factory.build_active_delegations(now)))

    async def has_activity_since(self, since: datetime) -> bool:
        for table in (TABLE_EXECUTIONS, TABLE_RUN_SUMMARIES):
            if await self._rows(self.request_factory.build_activity_probe(table, since)):
                return True
        return False

    async def insert_execution(self, row: ExecutionRow) -> None:
        await self._client.request(self.request_factory.build_insert(TABLE_EXECUTIONS, row.as_record()))

    async def insert_failed_attempt(self, row: FailedAttemptRow) -> None:
        await self._client.request(self.request_factory.build_insert(TABLE_FAILED_ATTEMPTS, row.as_record()))

    async def insert_run_summary(self, row: RunSummaryRow) -> None:
        await self._client.request(self.request_factory.build_insert(TABLE_RUN_SUMMARIES, row.as_record()))

    async def increment_protocol_stats(self, volume: int, fees: int) -> None:
        await self._client.request(self.request_factory.build_increment_stats(str(volume), str(fees)))

    async def execution_history(self, user_address: str, limit: int = 50) -> List[HistoryEntry]:
        return _history(await self._rows(self.request_factory.build_history(user_address, limit)))


def get_store(settings: Optional[StoreSettings] = None, http_client: Optional[ProviderHttpClient] = None):
    cfg = settings or StoreSettings.from_env()
    if cfg.backend == "rest":
        return RestStore(cfg, http_client=http_client)
    if cfg.backend == "memory":
        return MemoryStore()
    return SqliteStore(cfg.sqlite_path)


__all__ = ["MemoryStore", "RestStore", "SqliteStore", "Store", "StoreSettings", "get_store"]
