"""
Queue Stores

Persistence for ProcessingQueue items. Items live in an arena keyed by id;
the only concurrency primitive is compare_and_update(), a conditional
update that succeeds only if the row still has the status and attempt
count the caller observed.

- InMemoryQueueStore: dict + lock, for tests and single-process use
- PostgresQueueStore: document_processing_queue table on the shared VectorStore pool
"""

import logging
import threading
from typing import Optional
from dataclasses import replace
from datetime import datetime

from .processing_queue import QueueItem, QueueStatus

logger = logging.getLogger(__name__)


class QueueStore:
    """Interface for queue persistence."""

    def insert_if_no_active(self, item: QueueItem) -> QueueItem:
        """Insert ``item`` unless the document already has an active item; return whichever is active."""
        raise NotImplementedError

    def get(self, item_id: str) -> Optional[QueueItem]:
        raise NotImplementedError

    def latest_for_document(self, document_id: str) -> Optional[QueueItem]:
        raise NotImplementedError

    def list_eligible(self, now: datetime, limit: int = 10) -> list[QueueItem]:
        """Eligible items in dequeue order (priority desc, created_at asc)."""
        raise NotImplementedError

    def compare_and_update(
        self,
        item_id: str,
        expected_status: QueueStatus,
        expected_attempts: int,
        changes: dict,
    ) -> Optional[QueueItem]:
        """Apply ``changes`` only if status and attempts still match. None if the claim was lost."""
        raise NotImplementedError

    def update(self, item_id: str, changes: dict) -> Optional[QueueItem]:
        """Unconditional update. None if the item does not exist."""
        raise NotImplementedError

    def list_items(self, case_id: Optional[str] = None) -> list[QueueItem]:
        raise NotImplementedError

    def delete_terminal_before(self, cutoff: datetime) -> int:
        raise NotImplementedError

    def delete_case_items(self, case_id: str, statuses: tuple) -> int:
        raise NotImplementedError


# =============================================================================
# In-memory store
# =============================================================================

class InMemoryQueueStore(QueueStore):
    """Thread-safe in-process queue store."""

    def __init__(self):
        self._items: dict[str, QueueItem] = {}
        self._lock = threading.Lock()

    def insert_if_no_active(self, item: QueueItem) -> QueueItem:
        with self._lock:
            for existing in self._items.values():
                if existing.document_id == item.document_id and existing.is_active:
                    return existing
            self._items[item.id] = item
            return item

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            return self._items.get(item_id)

    def latest_for_document(self, document_id: str) -> Optional[QueueItem]:
        with self._lock:
            matches = [i for i in self._items.values() if i.document_id == document_id]
        if not matches:
            return None
        return max(matches, key=lambda i: i.created_at)

    def list_eligible(self, now: datetime, limit: int = 10) -> list[QueueItem]:
        with self._lock:
            eligible = [i for i in self._items.values() if i.is_eligible(now)]
        eligible.sort(key=QueueItem.dequeue_key)
        return eligible[:limit]

    def compare_and_update(
        self,
        item_id: str,
        expected_status: QueueStatus,
        expected_attempts: int,
        changes: dict,
    ) -> Optional[QueueItem]:
        with self._lock:
            current = self._items.get(item_id)
            if current is None:
                return None
            if current.status != expected_status or current.attempts != expected_attempts:
                return None
            updated = replace(current, **changes)
            self._items[item_id] = updated
            return updated

    def update(self, item_id: str, changes: dict) -> Optional[QueueItem]:
        with self._lock:
            current = self._items.get(item_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._items[item_id] = updated
            return updated

    def list_items(self, case_id: Optional[str] = None) -> list[QueueItem]:
        with self._lock:
            items = list(self._items.values())
        if case_id is not None:
            items = [i for i in items if i.case_id == case_id]
        return sorted(items, key=lambda i: i.created_at)

    def delete_terminal_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                item_id for item_id, item in self._items.items()
                if item.is_terminal and item.created_at < cutoff
            ]
            for item_id in doomed:
                del self._items[item_id]
        return len(doomed)

    def delete_case_items(self, case_id: str, statuses: tuple) -> int:
        with self._lock:
            doomed = [
                item_id for item_id, item in self._items.items()
                if item.case_id == case_id and item.status in statuses
            ]
            for item_id in doomed:
                del self._items[item_id]
        return len(doomed)


# =============================================================================
# PostgreSQL store
# =============================================================================

QUEUE_TABLE = "document_processing_queue"

_UPDATABLE_COLUMNS = {
    "status", "priority", "attempts", "max_attempts", "error_message",
    "started_at", "completed_at", "next_retry_at",
    "processing_time_ms", "tokens_used", "model_used",
}


def _db_value(value):
    if isinstance(value, QueueStatus):
        return value.value
    return value


class PostgresQueueStore(QueueStore):
    """
    Queue store backed by PostgreSQL.

    Shares the connection pool and stale-connection retry of a VectorStore.
    The claim is a single ``UPDATE ... WHERE id AND status AND attempts RETURNING *``.
    """

    def __init__(self, db):
        self.db = db

    def initialize_schema(self) -> None:
        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS {QUEUE_TABLE} (
            id UUID PRIMARY KEY,
            document_id UUID NOT NULL,
            case_id UUID NOT NULL,
            owner_id TEXT NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            priority INT NOT NULL DEFAULT 0,
            attempts INT NOT NULL DEFAULT 0,
            max_attempts INT NOT NULL DEFAULT 3,
            error_message TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            next_retry_at TIMESTAMPTZ,
            processing_time_ms INT,
            tokens_used INT,
            model_used TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_queue_dequeue
            ON {QUEUE_TABLE}(status, priority DESC, created_at);
        CREATE INDEX IF NOT EXISTS idx_queue_document
            ON {QUEUE_TABLE}(document_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_queue_case
            ON {QUEUE_TABLE}(case_id);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()
            logger.info("Queue schema initialized")

        self.db._execute_with_retry(_op, "initialize_queue_schema")

    def insert_if_no_active(self, item: QueueItem) -> QueueItem:
        # Advisory lock serializes concurrent enqueues for the same document
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (item.document_id,))
                cur.execute(
                    f"""
                    SELECT * FROM {QUEUE_TABLE}
                    WHERE document_id = %s::uuid AND status IN ('pending', 'processing')
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (item.document_id,),
                )
                row = cur.fetchone()
                if row is None:
                    cur.execute(
                        f"""
                        INSERT INTO {QUEUE_TABLE}
                            (id, document_id, case_id, owner_id, status, priority,
                             attempts, max_attempts, created_at)
                        VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            item.id, item.document_id, item.case_id, item.owner_id,
                            item.status.value, item.priority, item.attempts,
                            item.max_attempts, item.created_at,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
            return QueueItem.from_row(dict(row))

        return self.db._execute_with_retry(_op, "queue_insert")

    def get(self, item_id: str) -> Optional[QueueItem]:
        return self._fetch_one(
            f"SELECT * FROM {QUEUE_TABLE} WHERE id = %s::uuid", (item_id,), "queue_get"
        )

    def latest_for_document(self, document_id: str) -> Optional[QueueItem]:
        return self._fetch_one(
            f"""
            SELECT * FROM {QUEUE_TABLE}
            WHERE document_id = %s::uuid
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (document_id,),
            "queue_latest_for_document",
        )

    def list_eligible(self, now: datetime, limit: int = 10) -> list[QueueItem]:
        return self._fetch_all(
            f"""
            SELECT * FROM {QUEUE_TABLE}
            WHERE attempts < max_attempts
              AND (status = 'pending' OR (status = 'failed' AND next_retry_at < %s))
            ORDER BY priority DESC, created_at ASC, id ASC
            LIMIT %s
            """,
            (now, limit),
            "queue_list_eligible",
        )

    def compare_and_update(
        self,
        item_id: str,
        expected_status: QueueStatus,
        expected_attempts: int,
        changes: dict,
    ) -> Optional[QueueItem]:
        set_clause, params = self._set_clause(changes)
        sql = f"""
        UPDATE {QUEUE_TABLE}
        SET {set_clause}
        WHERE id = %s::uuid AND status = %s AND attempts = %s
        RETURNING *
        """
        params.extend([item_id, _db_value(expected_status), expected_attempts])
        return self._write_one(sql, params, "queue_claim")

    def update(self, item_id: str, changes: dict) -> Optional[QueueItem]:
        set_clause, params = self._set_clause(changes)
        sql = f"UPDATE {QUEUE_TABLE} SET {set_clause} WHERE id = %s::uuid RETURNING *"
        params.append(item_id)
        return self._write_one(sql, params, "queue_update")

    def list_items(self, case_id: Optional[str] = None) -> list[QueueItem]:
        if case_id is None:
            return self._fetch_all(
                f"SELECT * FROM {QUEUE_TABLE} ORDER BY created_at", (), "queue_list"
            )
        return self._fetch_all(
            f"SELECT * FROM {QUEUE_TABLE} WHERE case_id = %s::uuid ORDER BY created_at",
            (case_id,),
            "queue_list_case",
        )

    def delete_terminal_before(self, cutoff: datetime) -> int:
        sql = f"""
        DELETE FROM {QUEUE_TABLE}
        WHERE created_at < %s
          AND (status = 'completed' OR (status = 'failed' AND attempts >= max_attempts))
        """
        return self._delete(sql, (cutoff,), "queue_cleanup")

    def delete_case_items(self, case_id: str, statuses: tuple) -> int:
        sql = f"DELETE FROM {QUEUE_TABLE} WHERE case_id = %s::uuid AND status = ANY(%s)"
        return self._delete(sql, (case_id, [_db_value(s) for s in statuses]), "queue_cancel_case")

    # -------------------------------------------------------------------------

    @staticmethod
    def _set_clause(changes: dict) -> tuple[str, list]:
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown queue columns: {sorted(unknown)}")
        columns = sorted(changes)
        set_clause = ", ".join(f"{col} = %s" for col in columns)
        return set_clause, [_db_value(changes[col]) for col in columns]

    def _fetch_one(self, sql: str, params, label: str) -> Optional[QueueItem]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
            return QueueItem.from_row(dict(row)) if row else None

        return self.db._execute_with_retry(_op, label)

    def _fetch_all(self, sql: str, params, label: str) -> list[QueueItem]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [QueueItem.from_row(dict(r)) for r in rows]

        return self.db._execute_with_retry(_op, label)

    def _write_one(self, sql: str, params, label: str) -> Optional[QueueItem]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
            return QueueItem.from_row(dict(row)) if row else None

        return self.db._execute_with_retry(_op, label)

    def _delete(self, sql: str, params, label: str) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                count = cur.rowcount
                conn.commit()
            return count

        return self.db._execute_with_retry(_op, label)
