"""
Pipeline Metrics

In-process counters for classification jobs, chunk indexing and search,
exposed through the API's /metrics endpoint and the worker's batch log.
"""

import time
import logging
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class SearchMetrics:
    """Metrics for a single search."""
    case_id: str
    query_text: str
    mode: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    results_count: int = 0
    degraded: bool = False
    error: Optional[str] = None


@dataclass
class PipelineMetrics:
    """Aggregated pipeline metrics."""
    # Classification jobs
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    tokens_used: int = 0
    total_processing_ms: float = 0

    # Indexing
    documents_indexed: int = 0
    documents_skipped: int = 0
    chunks_indexed: int = 0
    total_indexing_ms: float = 0

    # Search
    total_searches: int = 0
    failed_searches: int = 0
    degraded_searches: int = 0
    searches_by_mode: dict = field(default_factory=lambda: defaultdict(int))
    latencies: list = field(default_factory=list)

    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def job_success_rate(self) -> float:
        if self.jobs_processed == 0:
            return 0
        return self.jobs_succeeded / self.jobs_processed

    @property
    def avg_processing_ms(self) -> float:
        if self.jobs_processed == 0:
            return 0
        return self.total_processing_ms / self.jobs_processed

    @property
    def avg_search_latency_ms(self) -> float:
        if not self.latencies:
            return 0
        return float(np.mean(self.latencies))

    @property
    def p95_search_latency_ms(self) -> float:
        if not self.latencies:
            return 0
        return float(np.percentile(self.latencies, 95))

    @property
    def p99_search_latency_ms(self) -> float:
        if not self.latencies:
            return 0
        return float(np.percentile(self.latencies, 99))

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "classification": {
                "processed": self.jobs_processed,
                "succeeded": self.jobs_succeeded,
                "failed": self.jobs_failed,
                "success_rate": f"{self.job_success_rate:.2%}",
                "tokens_used": self.tokens_used,
                "avg_processing_ms": round(self.avg_processing_ms, 2),
            },
            "indexing": {
                "documents": self.documents_indexed,
                "skipped": self.documents_skipped,
                "chunks": self.chunks_indexed,
                "avg_time_ms": round(
                    self.total_indexing_ms / max(self.documents_indexed, 1), 2
                ),
            },
            "search": {
                "total": self.total_searches,
                "failed": self.failed_searches,
                "degraded": self.degraded_searches,
                "by_mode": dict(self.searches_by_mode),
                "latency_ms": {
                    "avg": round(self.avg_search_latency_ms, 2),
                    "p95": round(self.p95_search_latency_ms, 2),
                    "p99": round(self.p99_search_latency_ms, 2),
                },
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates pipeline metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_search(case_id, query, "hybrid") as tracker:
            results = engine.search(...)
            tracker.set_results(len(results))

        collector.record_classification(success=True, duration_ms=820, tokens_used=950)
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = PipelineMetrics()
        self._search_history: list[SearchMetrics] = []
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        self.metrics = PipelineMetrics()
        self._search_history = []
        self._start_time = datetime.now()

    class SearchTracker:
        """Context manager for tracking search metrics."""

        def __init__(self, collector: "MetricsCollector", case_id: str, query_text: str, mode: str):
            self.collector = collector
            self.search = SearchMetrics(
                case_id=case_id,
                query_text=query_text[:200],
                mode=mode,
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.search.end_time = time.time()
            self.search.latency_ms = (self.search.end_time - self.search.start_time) * 1000

            if exc_type:
                self.search.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_search(self.search)
            return False  # Don't suppress exceptions

        def set_results(self, count: int, degraded: bool = False):
            self.search.results_count = count
            self.search.degraded = degraded

    def track_search(self, case_id: str, query_text: str, mode: str) -> SearchTracker:
        return self.SearchTracker(self, case_id, query_text, mode)

    def _record_search(self, search: SearchMetrics):
        m = self.metrics
        m.total_searches += 1
        m.searches_by_mode[search.mode] += 1
        if search.error:
            m.failed_searches += 1
        if search.degraded:
            m.degraded_searches += 1

        m.latencies.append(search.latency_ms)
        if len(m.latencies) > self._max_history:
            m.latencies = m.latencies[-self._max_history:]

        self._search_history.append(search)
        if len(self._search_history) > self._max_history:
            self._search_history = self._search_history[-self._max_history:]

    def _record_error(self, error_type: str):
        self.metrics.errors_by_type[error_type] += 1

    def record_classification(
        self,
        success: bool,
        duration_ms: float,
        tokens_used: int = 0,
        error_type: Optional[str] = None,
    ):
        """Record one classification job outcome."""
        m = self.metrics
        m.jobs_processed += 1
        m.total_processing_ms += duration_ms
        m.tokens_used += tokens_used
        if success:
            m.jobs_succeeded += 1
        else:
            m.jobs_failed += 1
            if error_type:
                self._record_error(error_type)

    def record_indexing(self, chunks_count: int, duration_ms: float, skipped: bool = False):
        """Record one document indexing outcome."""
        m = self.metrics
        if skipped:
            m.documents_skipped += 1
            return
        m.documents_indexed += 1
        m.chunks_indexed += chunks_count
        m.total_indexing_ms += duration_ms

    def get_metrics(self) -> PipelineMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        return self.metrics.to_dict()

    def get_recent_searches(self, limit: int = 10) -> list[SearchMetrics]:
        return self._search_history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
