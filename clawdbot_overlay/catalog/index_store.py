"""SQLite-backed catalogs of live overlay records.

Each catalog mirrors the unspent state of the outputs admitted under one
topic: a row is written when an output is admitted and removed when the
output is spent or evicted.  Rows are keyed by ``(txid, output_index)``, and
every write is a single statement inside its own transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from clawdbot_overlay.catalog.query import (
    AGENTS_TABLE,
    CASEFOLD_FUNCTION,
    SERVICES_TABLE,
    QueryEngine,
)
from clawdbot_overlay.model import (
    PROTOCOL_ID,
    IdentityRecord,
    OutputRef,
    ParsedPayload,
    ServicePricing,
    ServiceRecord,
    Topic,
)
from clawdbot_overlay.script_codec import Script
from clawdbot_overlay.validator import decode_record

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".clawdbot-overlay" / "overlay.sqlite"
LATEST_LIMIT = 200


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def connect_catalog(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Open a catalog database, creating the parent directory if needed."""

    if db_path is None:
        db_path = DEFAULT_DB_PATH
    if str(db_path) != ":memory:":
        db_path = Path(db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.create_function(CASEFOLD_FUNCTION, 1, _casefold, deterministic=True)
    return conn


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CatalogIndex:
    """Base class for one topic's catalog table."""

    topic: Topic
    table: str
    # Columns defining one logical record for :meth:`latest`.
    record_identity: tuple[str, ...]

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        protocol_id: str = PROTOCOL_ID,
        verify_identity_keys: bool = False,
    ) -> None:
        self.db_path = db_path
        self.protocol_id = protocol_id
        self.verify_identity_keys = verify_identity_keys
        self.conn = connect_catalog(db_path)
        self.query_engine = QueryEngine(self.topic)
        self._lock = threading.RLock()
        self._init_schema()

    def _schema_statements(self) -> List[str]:
        raise NotImplementedError

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            for statement in self._schema_statements():
                self.conn.execute(statement)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "CatalogIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - convenience
        self.close()

    # Lifecycle ----------------------------------------------------------

    def on_admitted(self, txid: str, output_index: int, script: Script | bytes) -> bool:
        """Index the record carried by ``script``.

        Scripts that do not validate for this topic are ignored.  Returns
        whether a row was written.
        """

        result = decode_record(
            script,
            self.topic,
            protocol_id=self.protocol_id,
            verify_key_point=self.verify_identity_keys,
        )
        if not result.ok:
            logger.debug(
                "Not indexing %s:%s on %s: %s", txid, output_index, self.table, result.reason
            )
            return False

        params = self._row_params(txid, output_index, result.record)
        params["indexed_at"] = _utc_now()
        with self._lock, self.conn:
            self.conn.execute(self._upsert_sql(), params)
        logger.debug("Indexed %s:%s into %s", txid, output_index, self.table)
        return True

    def on_spent(self, txid: str, output_index: int) -> bool:
        return self._delete(txid, output_index)

    def on_evicted(self, txid: str, output_index: int) -> bool:
        return self._delete(txid, output_index)

    def _delete(self, txid: str, output_index: int) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"DELETE FROM {self.table} WHERE txid = ? AND output_index = ?",
                (txid, output_index),
            )
        if cursor.rowcount:
            logger.debug("Removed %s:%s from %s", txid, output_index, self.table)
        return cursor.rowcount > 0

    # Reads --------------------------------------------------------------

    def lookup(self, query: Any = None) -> List[OutputRef]:
        with self._lock:
            return self.query_engine.run(self.conn, query)

    def get(self, txid: str, output_index: int) -> Optional[ParsedPayload]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT * FROM {self.table} WHERE txid = ? AND output_index = ?",
                (txid, output_index),
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()
        return int(row[0])

    def latest(self, limit: int = LATEST_LIMIT) -> List[dict[str, Any]]:
        """Return the newest row per logical record, newest first."""

        partition = ", ".join(self.record_identity)
        sql = (
            f"SELECT * FROM ("
            f"SELECT *, ROW_NUMBER() OVER ("
            f"PARTITION BY {partition} ORDER BY indexed_at DESC, rowid DESC) AS recency "
            f"FROM {self.table}) WHERE recency = 1 "
            f"ORDER BY indexed_at DESC LIMIT ?"
        )
        with self._lock:
            rows = self.conn.execute(sql, (limit,)).fetchall()
        return [self._row_to_summary(row) for row in rows]

    def stats(self) -> dict[str, int]:
        raise NotImplementedError

    # Row mapping --------------------------------------------------------

    def _upsert_sql(self) -> str:
        raise NotImplementedError

    def _row_params(self, txid: str, output_index: int, record: ParsedPayload) -> dict[str, Any]:
        raise NotImplementedError

    def _row_to_record(self, row: sqlite3.Row) -> ParsedPayload:
        raise NotImplementedError

    def _row_to_summary(self, row: sqlite3.Row) -> dict[str, Any]:
        summary = self._row_to_record(row).to_payload(self.protocol_id)
        summary.update(
            {"txid": row["txid"], "outputIndex": row["output_index"], "indexedAt": row["indexed_at"]}
        )
        return summary


class AgentCatalogIndex(CatalogIndex):
    """Identity records.

    Several live rows may share an ``identity_key``: each identity output is
    an independent claim until it is spent.  :meth:`latest` collapses them.
    """

    topic = Topic.IDENTITY
    table = AGENTS_TABLE
    record_identity = ("identity_key",)

    def _schema_statements(self) -> List[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {AGENTS_TABLE} (
                txid TEXT NOT NULL,
                output_index INTEGER NOT NULL,
                identity_key TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                channels TEXT,
                capabilities TEXT,
                timestamp TEXT,
                indexed_at TEXT NOT NULL,
                PRIMARY KEY (txid, output_index)
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{AGENTS_TABLE}_identity_key ON {AGENTS_TABLE}(identity_key)",
            f"CREATE INDEX IF NOT EXISTS idx_{AGENTS_TABLE}_name ON {AGENTS_TABLE}(name)",
        ]

    def _upsert_sql(self) -> str:
        return f"""
            INSERT OR REPLACE INTO {AGENTS_TABLE}
                (txid, output_index, identity_key, name, description, channels, capabilities, timestamp, indexed_at)
            VALUES
                (:txid, :output_index, :identity_key, :name, :description, :channels, :capabilities, :timestamp, :indexed_at)
            """

    def _row_params(self, txid: str, output_index: int, record: ParsedPayload) -> dict[str, Any]:
        if not isinstance(record, IdentityRecord):
            raise TypeError(f"agent catalog cannot store {type(record).__name__}")
        return {
            "txid": txid,
            "output_index": output_index,
            "identity_key": record.identity_key,
            "name": record.name,
            "description": record.description,
            "channels": json.dumps(record.channels),
            "capabilities": json.dumps(record.capabilities),
            "timestamp": record.timestamp,
        }

    def _row_to_record(self, row: sqlite3.Row) -> IdentityRecord:
        return IdentityRecord(
            identity_key=row["identity_key"],
            name=row["name"],
            description=row["description"] or "",
            channels=json.loads(row["channels"] or "{}"),
            capabilities=json.loads(row["capabilities"] or "[]"),
            timestamp=row["timestamp"] or "",
        )

    def stats(self) -> dict[str, int]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT COUNT(DISTINCT identity_key), COUNT(*) FROM {AGENTS_TABLE}"
            ).fetchone()
        return {"agentCount": int(row[0]), "recordCount": int(row[1])}


class ServiceCatalogIndex(CatalogIndex):
    """Service offers, at most one live row per ``(identity_key, service_id)``.

    The unique index lets ``INSERT OR REPLACE`` drop the previous offer for
    the same provider and service id in the same statement that writes the
    new one.
    """

    topic = Topic.SERVICES
    table = SERVICES_TABLE
    record_identity = ("identity_key", "service_id")

    def _schema_statements(self) -> List[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {SERVICES_TABLE} (
                txid TEXT NOT NULL,
                output_index INTEGER NOT NULL,
                identity_key TEXT NOT NULL,
                service_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                pricing_model TEXT NOT NULL,
                pricing_sats INTEGER NOT NULL,
                timestamp TEXT,
                indexed_at TEXT NOT NULL,
                PRIMARY KEY (txid, output_index)
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{SERVICES_TABLE}_identity_key ON {SERVICES_TABLE}(identity_key)",
            f"CREATE INDEX IF NOT EXISTS idx_{SERVICES_TABLE}_service_id ON {SERVICES_TABLE}(service_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{SERVICES_TABLE}_pricing_sats ON {SERVICES_TABLE}(pricing_sats)",
            f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{SERVICES_TABLE}_offer ON {SERVICES_TABLE}(identity_key, service_id)",
        ]

    def _upsert_sql(self) -> str:
        return f"""
            INSERT OR REPLACE INTO {SERVICES_TABLE}
                (txid, output_index, identity_key, service_id, name, description, pricing_model, pricing_sats, timestamp, indexed_at)
            VALUES
                (:txid, :output_index, :identity_key, :service_id, :name, :description, :pricing_model, :pricing_sats, :timestamp, :indexed_at)
            """

    def _row_params(self, txid: str, output_index: int, record: ParsedPayload) -> dict[str, Any]:
        if not isinstance(record, ServiceRecord):
            raise TypeError(f"service catalog cannot store {type(record).__name__}")
        return {
            "txid": txid,
            "output_index": output_index,
            "identity_key": record.identity_key,
            "service_id": record.service_id,
            "name": record.name,
            "description": record.description,
            "pricing_model": record.pricing.model,
            "pricing_sats": record.pricing.amount_sats,
            "timestamp": record.timestamp,
        }

    def _row_to_record(self, row: sqlite3.Row) -> ServiceRecord:
        return ServiceRecord(
            identity_key=row["identity_key"],
            service_id=row["service_id"],
            name=row["name"],
            description=row["description"] or "",
            pricing=ServicePricing(model=row["pricing_model"], amount_sats=row["pricing_sats"]),
            timestamp=row["timestamp"] or "",
        )

    def stats(self) -> dict[str, int]:
        with self._lock:
            row = self.conn.execute(
                f"SELECT COUNT(*), COUNT(DISTINCT identity_key) FROM {SERVICES_TABLE}"
            ).fetchone()
        return {"serviceCount": int(row[0]), "providerCount": int(row[1])}


CATALOG_INDEXES = {
    Topic.IDENTITY: AgentCatalogIndex,
    Topic.SERVICES: ServiceCatalogIndex,
}


__all__ = [
    "AgentCatalogIndex",
    "CATALOG_INDEXES",
    "CatalogIndex",
    "DEFAULT_DB_PATH",
    "ServiceCatalogIndex",
    "connect_catalog",
]
