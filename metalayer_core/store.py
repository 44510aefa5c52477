"""Record persistence.

`RecordStore` is the persistence collaborator the pipeline writes through.
`SQLiteRecordStore` is the reference implementation:

- one row per InteractionRecord, insert-only (a second insert for the same
  record id is an error)
- one receipt row per record, upserted when anchoring upgrades it
- WAL journal, FULL synchronous: a write is durable once the call returns
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from typing import Dict, List, Optional, Protocol

from .crypto import _iso
from .models import AnchorStatus, InteractionRecord, LedgerAnchorReceipt


class RecordStore(Protocol):
    def save_record(self, record: InteractionRecord) -> None: ...

    def get_record(self, record_id: str) -> Optional[InteractionRecord]: ...

    def save_receipt(self, receipt: LedgerAnchorReceipt) -> None: ...

    def save_record_with_receipt(self, record: InteractionRecord, receipt: LedgerAnchorReceipt) -> None: ...

    def get_receipt(self, record_id: str) -> Optional[LedgerAnchorReceipt]: ...

    def list_local_only(self) -> List[LedgerAnchorReceipt]: ...

    def policy_stats(self, community_ref: Optional[str] = None) -> Dict[str, int]: ...

    def anchor_stats(self) -> Dict[str, int]: ...


class SQLiteRecordStore:
    """SQLite-backed RecordStore."""

    def __init__(self, db_path: str = "metalayer.db"):
        self.db_path = str(db_path)
        self._init_db()

    @contextmanager
    def _db(self):
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                record_id TEXT PRIMARY KEY,
                actor_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                community_ref TEXT,
                allowed INTEGER NOT NULL,
                fingerprint TEXT NOT NULL,
                recorded_at_utc TEXT NOT NULL,
                record_json TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS receipts (
                record_id TEXT PRIMARY KEY REFERENCES records(record_id),
                fingerprint TEXT NOT NULL,
                anchor_status TEXT NOT NULL,
                external_ref TEXT,
                anchored_at_utc TEXT NOT NULL,
                receipt_json TEXT NOT NULL
            )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_receipts_status ON receipts(anchor_status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_community ON records(community_ref)")

    def save_record(self, record: InteractionRecord) -> None:
        with self._db() as conn:
            self._insert_record(conn, record)

    def save_record_with_receipt(self, record: InteractionRecord, receipt: LedgerAnchorReceipt) -> None:
        """Write a new record and its first receipt in one transaction."""
        with self._db() as conn:
            self._insert_record(conn, record)
            self._upsert_receipt(conn, receipt)

    def _insert_record(self, conn: sqlite3.Connection, record: InteractionRecord) -> None:
        conn.execute(
            """
            INSERT INTO records
            (record_id, actor_id, action_type, community_ref, allowed, fingerprint, recorded_at_utc, record_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.record_id,
                record.actor.id,
                record.action_type,
                record.community_ref,
                1 if record.decision.allowed else 0,
                record.fingerprint,
                _iso(record.recorded_at),
                json.dumps(record.to_dict(), sort_keys=True, ensure_ascii=False),
            ),
        )

    def get_record(self, record_id: str) -> Optional[InteractionRecord]:
        with self._db() as conn:
            row = conn.execute("SELECT record_json FROM records WHERE record_id = ?", (record_id,)).fetchone()
        if row is None:
            return None
        return InteractionRecord.from_dict(json.loads(row[0]))

    def save_receipt(self, receipt: LedgerAnchorReceipt) -> None:
        with self._db() as conn:
            self._upsert_receipt(conn, receipt)

    def _upsert_receipt(self, conn: sqlite3.Connection, receipt: LedgerAnchorReceipt) -> None:
        conn.execute(
            """
            INSERT INTO receipts
            (record_id, fingerprint, anchor_status, external_ref, anchored_at_utc, receipt_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(record_id) DO UPDATE SET
                fingerprint = excluded.fingerprint,
                anchor_status = excluded.anchor_status,
                external_ref = excluded.external_ref,
                anchored_at_utc = excluded.anchored_at_utc,
                receipt_json = excluded.receipt_json
            """,
            (
                receipt.record_id,
                receipt.fingerprint,
                AnchorStatus(receipt.anchor_status).value,
                receipt.external_ref,
                _iso(receipt.anchored_at),
                json.dumps(receipt.to_dict(), sort_keys=True, ensure_ascii=False),
            ),
        )

    def get_receipt(self, record_id: str) -> Optional[LedgerAnchorReceipt]:
        with self._db() as conn:
            row = conn.execute("SELECT receipt_json FROM receipts WHERE record_id = ?", (record_id,)).fetchone()
        if row is None:
            return None
        return LedgerAnchorReceipt.from_dict(json.loads(row[0]))

    def list_local_only(self) -> List[LedgerAnchorReceipt]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT receipt_json FROM receipts WHERE anchor_status = ? ORDER BY anchored_at_utc",
                (AnchorStatus.LOCAL_ONLY.value,),
            ).fetchall()
        return [LedgerAnchorReceipt.from_dict(json.loads(r[0])) for r in rows]

    def policy_stats(self, community_ref: Optional[str] = None) -> Dict[str, int]:
        """Blocked-decision counts grouped by action type."""
        sql = "SELECT action_type, COUNT(*) FROM records WHERE allowed = 0"
        params: tuple = ()
        if community_ref is not None:
            sql += " AND community_ref = ?"
            params = (community_ref,)
        sql += " GROUP BY action_type"
        with self._db() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {str(action_type): int(n) for action_type, n in rows}

    def anchor_stats(self) -> Dict[str, int]:
        """Confirmed-anchor counts grouped by action type."""
        with self._db() as conn:
            rows = conn.execute(
                """
                SELECT r.action_type, COUNT(*)
                FROM receipts a JOIN records r ON r.record_id = a.record_id
                WHERE a.anchor_status = ?
                GROUP BY r.action_type
                """,
                (AnchorStatus.CONFIRMED.value,),
            ).fetchall()
        return {str(action_type): int(n) for action_type, n in rows}
