"""
Document Processing Queue

Durable, retryable work queue that turns "document needs classification"
into a completed or failed terminal state.

Lifecycle:
    pending -> processing -> completed
                          -> failed -> (backoff) -> processing -> ...
    failed with attempts == max_attempts is terminal.

Attempts are counted when an item is claimed, so a worker that dies
mid-attempt still consumes retry budget. Claiming is an optimistic
conditional update against the store: two workers racing for the same
item cannot both win.

Usage:
    queue = ProcessingQueue(InMemoryQueueStore(), pipeline.classify_and_store)
    queue.enqueue(document_id, case_id, owner_id, priority=1)
    result = queue.process_next()
"""

import os
import time
import uuid
import logging
from enum import Enum
from typing import Callable, Optional
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

# Backoff before retry N (seconds); the last value repeats
DEFAULT_RETRY_DELAYS = (60, 300, 900)
DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING)


class QueueItemNotFoundError(KeyError):
    """Raised when an operation targets a queue item id that does not exist."""

    def __init__(self, item_id: str):
        super().__init__(item_id)
        self.item_id = item_id

    def __str__(self) -> str:
        return f"Queue item not found: {self.item_id}"


@dataclass
class QueueItem:
    """One classification attempt sequence for a document."""
    id: str
    document_id: str
    case_id: str
    owner_id: str
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 0
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    model_used: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        """Completed, or failed with no retries left."""
        if self.status == QueueStatus.COMPLETED:
            return True
        return self.status == QueueStatus.FAILED and self.attempts >= self.max_attempts

    def is_eligible(self, now: datetime) -> bool:
        """Whether dequeue may select this item at ``now``."""
        if self.attempts >= self.max_attempts:
            return False
        if self.status == QueueStatus.PENDING:
            return True
        return (
            self.status == QueueStatus.FAILED
            and self.next_retry_at is not None
            and self.next_retry_at < now
        )

    def dequeue_key(self) -> tuple:
        """Sort key: highest priority first, then oldest first."""
        return (-self.priority, self.created_at, self.id)

    @classmethod
    def from_row(cls, row: dict) -> "QueueItem":
        return cls(
            id=str(row["id"]),
            document_id=str(row["document_id"]),
            case_id=str(row["case_id"]),
            owner_id=str(row["owner_id"]),
            status=QueueStatus(row["status"]),
            priority=row.get("priority") or 0,
            attempts=row.get("attempts") or 0,
            max_attempts=row.get("max_attempts") or DEFAULT_MAX_ATTEMPTS,
            error_message=row.get("error_message"),
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            next_retry_at=row.get("next_retry_at"),
            processing_time_ms=row.get("processing_time_ms"),
            tokens_used=row.get("tokens_used"),
            model_used=row.get("model_used"),
        )

    def to_dict(self) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "document_id": self.document_id,
            "case_id": self.case_id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "next_retry_at": _iso(self.next_retry_at),
            "processing_time_ms": self.processing_time_ms,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
        }


@dataclass
class ProcessingResult:
    """Outcome of one process_next() call."""
    item_id: str
    document_id: str
    success: bool
    processing_time_ms: int
    tokens_used: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "document_id": self.document_id,
            "success": self.success,
            "processing_time_ms": self.processing_time_ms,
            "tokens_used": self.tokens_used,
            "error": self.error,
        }


@dataclass
class QueueStats:
    """Per-status item counts."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @classmethod
    def from_items(cls, items: list[QueueItem]) -> "QueueStats":
        stats = cls()
        for item in items:
            stats.total += 1
            if item.status == QueueStatus.PENDING:
                stats.pending += 1
            elif item.status == QueueStatus.PROCESSING:
                stats.processing += 1
            elif item.status == QueueStatus.COMPLETED:
                stats.completed += 1
            elif item.status == QueueStatus.FAILED:
                stats.failed += 1
        return stats

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass
class QueueConfig:
    """Retry policy for the processing queue."""
    retry_delays: tuple = DEFAULT_RETRY_DELAYS  # seconds
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    # Candidates fetched per claim round; more rounds run if all are lost to races
    claim_batch_size: int = 10
    max_claim_rounds: int = 3

    @classmethod
    def from_env(cls) -> "QueueConfig":
        return cls(max_attempts=int(os.getenv("QUEUE_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS))))


def retry_delay(attempts_so_far: int, delays: tuple = DEFAULT_RETRY_DELAYS) -> timedelta:
    """Backoff before the next retry, given how many attempts have been made."""
    index = min(max(attempts_so_far - 1, 0), len(delays) - 1)
    return timedelta(seconds=delays[index])


class ProcessingQueue:
    """
    Classification work queue over a QueueStore.

    Args:
        store: QueueStore implementation (in-memory or PostgreSQL)
        classify: Classification entrypoint, called as classify(document_id, owner_id).
            Its return value may carry tokens_used / model_used attributes.
        config: Retry policy
        metrics: Optional MetricsCollector
    """

    def __init__(
        self,
        store=None,
        classify: Optional[Callable] = None,
        config: Optional[QueueConfig] = None,
        metrics=None,
    ):
        if store is None:
            from .queue_store import InMemoryQueueStore
            store = InMemoryQueueStore()
        self.store = store
        self.classify = classify
        self.config = config or QueueConfig.from_env()
        self.metrics = metrics

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        document_id: str,
        case_id: str,
        owner_id: str,
        priority: int = 0,
    ) -> QueueItem:
        """
        Queue a document for classification.

        Returns the existing item if the document is already pending or
        processing; otherwise inserts a new pending item.
        """
        item = QueueItem(
            id=str(uuid.uuid4()),
            document_id=document_id,
            case_id=case_id,
            owner_id=owner_id,
            priority=priority,
            max_attempts=self.config.max_attempts,
        )
        stored = self.store.insert_if_no_active(item)
        if stored.id == item.id:
            logger.info(f"Queued document {document_id} (priority={priority})")
        else:
            logger.debug(f"Document {document_id} already queued as {stored.id}")
        return stored

    def enqueue_batch(
        self,
        document_ids: list[str],
        case_id: str,
        owner_id: str,
        priority: int = 0,
    ) -> list[QueueItem]:
        """Queue several documents; already-queued ones return their existing item."""
        items = [self.enqueue(doc_id, case_id, owner_id, priority) for doc_id in document_ids]
        logger.info(f"Batch queued {len(items)} documents for case {case_id}")
        return items

    # =========================================================================
    # Dequeue / claim
    # =========================================================================

    def dequeue_next(self, now: Optional[datetime] = None) -> Optional[QueueItem]:
        """Return the next eligible item without claiming it, or None."""
        candidates = self.store.list_eligible(now or utcnow(), limit=1)
        return candidates[0] if candidates else None

    def mark_processing(self, item_id: str, now: Optional[datetime] = None) -> Optional[QueueItem]:
        """
        Transition an eligible item to processing and count the attempt.

        Returns None when the item is not eligible (already claimed, finished,
        exhausted or waiting for its retry time) or when another worker claims
        it first. A lost claim is never retried.
        """
        now = now or utcnow()
        item = self._require(item_id)
        if not item.is_eligible(now):
            logger.debug(f"Item {item_id} not eligible for processing (status={item.status.value})")
            return None

        claimed = self.store.compare_and_update(
            item_id,
            expected_status=item.status,
            expected_attempts=item.attempts,
            changes=self._claim_changes(item, now),
        )
        if claimed is None:
            logger.debug(f"Lost claim race for {item_id}")
        return claimed

    def claim_next(self, now: Optional[datetime] = None) -> Optional[QueueItem]:
        """
        Atomically dequeue and mark processing.

        Each candidate is claimed with a conditional update on the status and
        attempts we observed; a lost race moves on to the next candidate.
        """
        now = now or utcnow()
        for _ in range(self.config.max_claim_rounds):
            candidates = self.store.list_eligible(now, limit=self.config.claim_batch_size)
            if not candidates:
                return None
            for candidate in candidates:
                claimed = self.store.compare_and_update(
                    candidate.id,
                    expected_status=candidate.status,
                    expected_attempts=candidate.attempts,
                    changes=self._claim_changes(candidate, now),
                )
                if claimed is not None:
                    logger.info(
                        f"Claimed {claimed.id} for document {claimed.document_id} "
                        f"(attempt {claimed.attempts}/{claimed.max_attempts})"
                    )
                    return claimed
                logger.debug(f"Lost claim race for {candidate.id}")
        return None

    @staticmethod
    def _claim_changes(item: QueueItem, now: datetime) -> dict:
        return {
            "status": QueueStatus.PROCESSING,
            "started_at": now,
            "attempts": item.attempts + 1,
        }

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    def mark_completed(
        self,
        item_id: str,
        processing_time_ms: int,
        tokens_used: Optional[int] = None,
        model_used: Optional[str] = None,
    ) -> QueueItem:
        updated = self.store.update(item_id, {
            "status": QueueStatus.COMPLETED,
            "completed_at": utcnow(),
            "processing_time_ms": processing_time_ms,
            "tokens_used": tokens_used,
            "model_used": model_used,
            "error_message": None,
        })
        if updated is None:
            raise QueueItemNotFoundError(item_id)
        return updated

    def mark_failed(
        self,
        item_id: str,
        error_message: str,
        attempts_so_far: int,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        """Record a failure and schedule the retry per the backoff table."""
        now = now or utcnow()
        next_retry_at = now + retry_delay(attempts_so_far, self.config.retry_delays)

        updated = self.store.update(item_id, {
            "status": QueueStatus.FAILED,
            "error_message": error_message,
            "next_retry_at": next_retry_at,
        })
        if updated is None:
            raise QueueItemNotFoundError(item_id)

        if updated.attempts >= updated.max_attempts:
            logger.warning(
                f"Document {updated.document_id} failed permanently after "
                f"{updated.attempts} attempts: {error_message}"
            )
        else:
            logger.info(
                f"Document {updated.document_id} failed (attempt {updated.attempts}), "
                f"retry at {next_retry_at.isoformat()}"
            )
        return updated

    # =========================================================================
    # Orchestration
    # =========================================================================

    def process_next(self) -> Optional[ProcessingResult]:
        """
        Claim the next item, classify it, and record the outcome.

        Classification errors are absorbed into mark_failed and reported in
        the returned result; they are never raised. Returns None when the
        queue has nothing eligible.
        """
        if self.classify is None:
            raise RuntimeError("ProcessingQueue has no classification entrypoint")

        item = self.claim_next()
        if item is None:
            return None

        start = time.time()
        try:
            outcome = self.classify(item.document_id, item.owner_id)
        except Exception as e:
            elapsed_ms = int((time.time() - start) * 1000)
            error_message = str(e) or type(e).__name__
            logger.error(f"Classification failed for {item.document_id}: {error_message}")
            self.mark_failed(item.id, error_message, item.attempts)
            if self.metrics:
                self.metrics.record_classification(False, elapsed_ms, error_type=type(e).__name__)
            return ProcessingResult(
                item_id=item.id,
                document_id=item.document_id,
                success=False,
                processing_time_ms=elapsed_ms,
                error=error_message,
            )

        elapsed_ms = int((time.time() - start) * 1000)
        tokens_used = getattr(outcome, "tokens_used", None)
        model_used = getattr(outcome, "model_used", None)
        self.mark_completed(item.id, elapsed_ms, tokens_used, model_used)
        if self.metrics:
            self.metrics.record_classification(True, elapsed_ms, tokens_used=tokens_used or 0)

        logger.info(f"Processed document {item.document_id} in {elapsed_ms}ms")
        return ProcessingResult(
            item_id=item.id,
            document_id=item.document_id,
            success=True,
            processing_time_ms=elapsed_ms,
            tokens_used=tokens_used,
        )

    # =========================================================================
    # Reads and housekeeping
    # =========================================================================

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        return self.store.get(item_id)

    def get_item_for_document(self, document_id: str) -> Optional[QueueItem]:
        """Most recently created item for a document."""
        return self.store.latest_for_document(document_id)

    def list_case_items(self, case_id: str) -> list[QueueItem]:
        return self.store.list_items(case_id=case_id)

    def stats(self, case_id: Optional[str] = None) -> QueueStats:
        """Per-status counts, for one case or the whole queue."""
        return QueueStats.from_items(self.store.list_items(case_id=case_id))

    def cleanup(self, older_than_days: int = 7) -> int:
        """Delete terminal items created before the cutoff. Returns count removed."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        removed = self.store.delete_terminal_before(cutoff)
        logger.info(f"Cleaned up {removed} queue items older than {older_than_days} days")
        return removed

    def cancel_case(self, case_id: str) -> int:
        """Remove pending and failed items for a case. Processing items are left alone."""
        removed = self.store.delete_case_items(
            case_id, statuses=(QueueStatus.PENDING, QueueStatus.FAILED)
        )
        logger.info(f"Cancelled {removed} queue items for case {case_id}")
        return removed

    def _require(self, item_id: str) -> QueueItem:
        item = self.store.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item
