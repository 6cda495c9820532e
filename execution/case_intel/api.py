"""
FastAPI Backend for the Case Intelligence Pipeline

Exposes the processing queue, chunk indexer, hybrid search and discovery
matcher over REST. Case/document CRUD and authentication live in the
surrounding product; this service only reads the document store.

Run with: uvicorn execution.case_intel.api:app --host 0.0.0.0 --port 8000
"""

import os
import logging
import threading
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .api_models import (
    HealthResponse,
    EnqueueRequest, EnqueueResponse, QueueItemInfo,
    ProcessRequest, BatchReportResponse, QueueStatsResponse,
    CleanupRequest, CleanupResponse,
    IndexCaseRequest, IndexCaseResponse,
    SearchRequest, SearchResponseModel,
    DiscoveryMatchRequest, DiscoveryMatchResponse,
    ImportPreviewRequest, ImportPreviewResponse,
)
from .discovery import DiscoveryMatcher, DiscoveryRequest, InvalidDiscoveryRequestError, detect_category
from .discovery_import import parse_discovery_text, validate_import
from .metrics import get_metrics_collector
from .processing_queue import QueueItemNotFoundError
from .search import SearchError, SearchFilters

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

app = FastAPI(
    title="Case Intelligence API",
    description="Document classification queue, semantic indexing, hybrid search and discovery matching",
    version=API_VERSION,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container - lazily builds and caches pipeline services
# =============================================================================

class ServiceContainer:
    """
    Singleton that caches the store, queue and pipeline services.

    Handlers run on FastAPI's threadpool, so first-use construction is
    serialized by a reentrant lock (get_queue builds the store and pipeline).
    """

    def __init__(self):
        self._store = None
        self._embeddings = None
        self._pipeline = None
        self._queue = None
        self._matcher = None
        self._lock = threading.RLock()

    def get_store(self):
        with self._lock:
            if self._store is None:
                from .vector_store import VectorStore
                self._store = VectorStore()
                self._store.connect()
                self._store.initialize_schema()
            return self._store

    def get_embeddings(self):
        with self._lock:
            if self._embeddings is None:
                from .embeddings import get_embedding_service
                self._embeddings = get_embedding_service()
            return self._embeddings

    def get_pipeline(self):
        with self._lock:
            if self._pipeline is None:
                from .classifier import LLMClassifier
                from .extraction import LocalBlobStore
                from .pipeline import ClassificationPipeline
                self._pipeline = ClassificationPipeline(
                    self.get_store(), LocalBlobStore(), LLMClassifier()
                )
            return self._pipeline

    def get_queue(self):
        with self._lock:
            if self._queue is None:
                from .processing_queue import ProcessingQueue
                from .queue_store import PostgresQueueStore

                queue_store = PostgresQueueStore(self.get_store())
                queue_store.initialize_schema()
                self._queue = ProcessingQueue(
                    queue_store,
                    classify=self.get_pipeline().classify_and_store,
                    metrics=get_metrics_collector(),
                )
            return self._queue

    def get_indexer(self):
        from .indexer import ChunkIndexer
        return ChunkIndexer(self.get_store(), self.get_embeddings(), metrics=get_metrics_collector())

    def get_search_engine(self):
        from .search import HybridSearchEngine
        return HybridSearchEngine(self.get_store(), self.get_embeddings(), metrics=get_metrics_collector())

    def get_matcher(self) -> DiscoveryMatcher:
        with self._lock:
            if self._matcher is None:
                self._matcher = DiscoveryMatcher()
            return self._matcher


_container = ServiceContainer()


def _to_discovery_request(model) -> DiscoveryRequest:
    try:
        return DiscoveryRequest(
            id=model.id,
            type=model.type,
            number=model.number,
            text=model.text,
            category_hint=model.category_hint,
        )
    except InvalidDiscoveryRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    try:
        _container.get_store()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(
        status="ok",
        version=API_VERSION,
        database=db_status,
    )


@app.get("/api/v1/metrics")
def get_metrics():
    """Pipeline counters and search latency percentiles."""
    collector = get_metrics_collector()
    return {
        **collector.get_metrics_dict(),
        "uptime_seconds": int(collector.get_uptime().total_seconds()),
    }


# -----------------------------------------------------------------------------
# Processing queue
# -----------------------------------------------------------------------------

@app.post("/api/v1/queue/enqueue", response_model=EnqueueResponse)
def enqueue_documents(request: EnqueueRequest):
    """Queue documents for classification (idempotent per active document)."""
    queue = _container.get_queue()
    items = queue.enqueue_batch(
        request.document_ids, request.case_id, request.owner_id, priority=request.priority
    )
    return EnqueueResponse(items=[QueueItemInfo(**item.to_dict()) for item in items])


@app.post("/api/v1/queue/process", response_model=BatchReportResponse)
def process_queue(request: Optional[ProcessRequest] = None):
    """Run one worker batch (what the periodic trigger calls)."""
    from .worker import WorkerConfig, run_batch

    request = request or ProcessRequest()
    config = WorkerConfig.from_env()
    if request.max_documents is not None:
        config.max_documents = request.max_documents

    report = run_batch(_container.get_queue(), config, force_cleanup=request.force_cleanup)
    return BatchReportResponse(**report.to_dict())


@app.get("/api/v1/queue/stats", response_model=QueueStatsResponse)
def queue_stats(case_id: Optional[str] = None):
    """Per-status counts for the whole queue or one case."""
    return QueueStatsResponse(**_container.get_queue().stats(case_id).to_dict())


@app.get("/api/v1/queue/items/{item_id}", response_model=QueueItemInfo)
def get_queue_item(item_id: str):
    item = _container.get_queue().get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=str(QueueItemNotFoundError(item_id)))
    return QueueItemInfo(**item.to_dict())


@app.post("/api/v1/queue/cleanup", response_model=CleanupResponse)
def cleanup_queue(request: Optional[CleanupRequest] = None):
    """Delete terminal items older than the retention window."""
    request = request or CleanupRequest()
    return CleanupResponse(removed=_container.get_queue().cleanup(request.older_than_days))


@app.get("/api/v1/cases/{case_id}/processing-status")
def case_processing_status(case_id: str):
    """Queue items and counts for one case."""
    queue = _container.get_queue()
    return {
        "case_id": case_id,
        "stats": queue.stats(case_id).to_dict(),
        "items": [item.to_dict() for item in queue.list_case_items(case_id)],
    }


@app.delete("/api/v1/cases/{case_id}/queue")
def cancel_case_queue(case_id: str):
    """Drop pending and failed queue items for a case."""
    removed = _container.get_queue().cancel_case(case_id)
    return {"case_id": case_id, "removed": removed}


# -----------------------------------------------------------------------------
# Indexing and search
# -----------------------------------------------------------------------------

@app.post("/api/v1/cases/{case_id}/index", response_model=IndexCaseResponse)
def index_case(case_id: str, request: IndexCaseRequest):
    """Embed every classified document in the case that has no chunks yet."""
    indexer = _container.get_indexer()
    pipeline = _container.get_pipeline()
    try:
        report = indexer.index_case(
            case_id, request.owner_id, pipeline.load_text, reindex=request.reindex
        )
    except Exception as e:
        logger.error(f"Indexing case {case_id} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return IndexCaseResponse(
        case_id=report.case_id,
        indexed=report.indexed,
        skipped=report.skipped,
        failed=report.failed,
        total_chunks=report.total_chunks,
        errors=report.errors,
    )


@app.post("/api/v1/cases/{case_id}/search", response_model=SearchResponseModel)
def search_case(case_id: str, request: SearchRequest):
    """Hybrid full-text + semantic search over a case."""
    if not request.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")

    filters = SearchFilters(**request.filters.model_dump()) if request.filters else None
    engine = _container.get_search_engine()
    try:
        response = engine.run(
            case_id,
            request.query,
            mode=request.mode,
            filters=filters,
            limit=request.limit,
            min_similarity=request.min_similarity,
        )
    except SearchError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SearchResponseModel(**response.to_dict())


# -----------------------------------------------------------------------------
# Discovery
# -----------------------------------------------------------------------------

@app.post("/api/v1/cases/{case_id}/discovery/match", response_model=DiscoveryMatchResponse)
def match_discovery(case_id: str, request: DiscoveryMatchRequest):
    """Score the case's documents against discovery requests."""
    requests = [_to_discovery_request(r) for r in request.requests]
    documents = _container.get_store().list_documents(case_id)

    matcher = _container.get_matcher()
    results = matcher.match_many(requests, documents, min_score=request.min_score)
    stats = matcher.compliance_stats(results, len(documents))

    return DiscoveryMatchResponse(
        results=[r.to_dict() for r in results],
        stats=stats.to_dict(),
    )


@app.post("/api/v1/cases/{case_id}/discovery/import/preview", response_model=ImportPreviewResponse)
def preview_discovery_import(case_id: str, request: ImportPreviewRequest):
    """Parse pasted requests or CSV without saving anything."""
    validation = validate_import(request.text)
    parsed = [
        {
            "type": p.type,
            "number": p.number,
            "text": p.text,
            "category_hint": detect_category(p.text),
        }
        for p in parse_discovery_text(request.text)
    ]
    return ImportPreviewResponse(
        valid=validation.valid,
        count=validation.count,
        errors=validation.errors,
        requests=parsed,
    )
