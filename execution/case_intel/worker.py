"""
Batch worker for the processing queue.

One run is triggered periodically (cron, scheduler or process_queue.py) and
drains the queue until either the document cap or the wall-clock budget is
reached. In-flight work is never interrupted; the budget only stops new
claims. On the hourly run terminal items past retention are garbage-collected.
"""

import os
import time
import logging
from typing import Callable, Optional
from dataclasses import dataclass, field
from datetime import datetime

from .processing_queue import ProcessingQueue, ProcessingResult, QueueStats, utcnow

logger = logging.getLogger(__name__)

MAX_DOCS_PER_RUN = 5
TIMEOUT_SAFETY_SECONDS = 55.0


@dataclass
class WorkerConfig:
    """Limits for one batch run."""
    max_documents: int = MAX_DOCS_PER_RUN
    time_budget_seconds: float = TIMEOUT_SAFETY_SECONDS
    cleanup_retention_days: int = 7
    model: Optional[str] = None

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            max_documents=int(os.getenv("WORKER_MAX_DOCUMENTS", str(MAX_DOCS_PER_RUN))),
            time_budget_seconds=float(os.getenv("WORKER_TIME_BUDGET_SECONDS", str(TIMEOUT_SAFETY_SECONDS))),
            model=os.getenv("OPENAI_MODEL_CLASSIFICATION", "gpt-4o-mini"),
        )


@dataclass
class BatchReport:
    """Summary of one batch run."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    total_time_ms: int = 0
    model: Optional[str] = None
    cleaned_up: Optional[int] = None
    stopped_reason: str = "queue_empty"
    queue_stats: Optional[QueueStats] = None
    results: list[ProcessingResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "total_time_ms": self.total_time_ms,
            "model": self.model,
            "cleaned_up": self.cleaned_up,
            "stopped_reason": self.stopped_reason,
            "queue_stats": self.queue_stats.to_dict() if self.queue_stats else None,
            "results": [r.to_dict() for r in self.results],
        }


def run_batch(
    queue: ProcessingQueue,
    config: Optional[WorkerConfig] = None,
    force_cleanup: bool = False,
    now: Optional[datetime] = None,
    clock: Callable[[], float] = time.monotonic,
) -> BatchReport:
    """
    Process queued documents until the cap or the time budget is hit.

    Args:
        queue: ProcessingQueue with a classification entrypoint
        config: Run limits
        force_cleanup: Run retention cleanup even off the hourly marker
        now: Wall-clock time used for the hourly marker (default: utcnow())
        clock: Monotonic clock for the time budget

    Returns:
        BatchReport with per-document results and final queue stats
    """
    config = config or WorkerConfig()
    now = now or utcnow()
    start = clock()
    report = BatchReport(model=config.model)

    logger.info(
        f"Starting batch run (max {config.max_documents} documents, "
        f"{config.time_budget_seconds:.0f}s budget, model={config.model})"
    )

    while True:
        if report.processed >= config.max_documents:
            report.stopped_reason = "max_documents"
            break

        elapsed = clock() - start
        if elapsed > config.time_budget_seconds:
            logger.info(f"Time budget reached after {elapsed:.1f}s")
            report.stopped_reason = "time_budget"
            break

        result = queue.process_next()
        if result is None:
            logger.info("Queue empty, no more documents to process")
            report.stopped_reason = "queue_empty"
            break

        report.processed += 1
        if result.success:
            report.successful += 1
        else:
            report.failed += 1
        report.results.append(result)

        logger.info(
            f"Processed document {result.document_id}: "
            f"{'success' if result.success else 'failed'} ({result.processing_time_ms}ms)"
        )

    if force_cleanup or now.minute == 0:
        report.cleaned_up = queue.cleanup(config.cleanup_retention_days)

    report.queue_stats = queue.stats()
    report.total_time_ms = int((clock() - start) * 1000)

    logger.info(
        f"Batch completed: {report.processed} processed, {report.successful} successful, "
        f"{report.failed} failed in {report.total_time_ms}ms"
    )
    return report
