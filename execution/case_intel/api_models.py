"""
Pydantic models for the Case Intelligence FastAPI backend.
"""

from typing import Optional
from datetime import date
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str


# =========================================================================
# Queue models
# =========================================================================

class EnqueueRequest(BaseModel):
    """Request body for queueing documents for classification."""
    case_id: str
    owner_id: str
    document_ids: list[str] = Field(..., min_length=1)
    priority: int = 0


class QueueItemInfo(BaseModel):
    """A queue item as returned by the API."""
    id: str
    document_id: str
    case_id: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    next_retry_at: Optional[str] = None


class EnqueueResponse(BaseModel):
    """Response body for enqueue."""
    items: list[QueueItemInfo]


class ProcessRequest(BaseModel):
    """Request body for triggering one worker batch."""
    max_documents: Optional[int] = Field(default=None, ge=1, le=50)
    force_cleanup: bool = False


class ProcessingResultInfo(BaseModel):
    """Outcome of processing one queue item."""
    item_id: str
    document_id: str
    success: bool
    processing_time_ms: int
    tokens_used: Optional[int] = None
    error: Optional[str] = None


class QueueStatsResponse(BaseModel):
    """Per-status queue counts."""
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


class BatchReportResponse(BaseModel):
    """Response body for a worker batch run."""
    processed: int
    successful: int
    failed: int
    total_time_ms: int
    model: Optional[str] = None
    cleaned_up: Optional[int] = None
    stopped_reason: str
    queue_stats: Optional[QueueStatsResponse] = None
    results: list[ProcessingResultInfo] = []


class CleanupRequest(BaseModel):
    """Request body for queue retention cleanup."""
    older_than_days: int = Field(default=7, ge=0)


class CleanupResponse(BaseModel):
    removed: int


# =========================================================================
# Indexing models
# =========================================================================

class IndexCaseRequest(BaseModel):
    """Request body for indexing a case's classified documents."""
    owner_id: str
    reindex: bool = False


class IndexCaseResponse(BaseModel):
    """Response body for case indexing."""
    case_id: str
    indexed: int
    skipped: int
    failed: int
    total_chunks: int
    errors: dict[str, str] = {}


# =========================================================================
# Search models
# =========================================================================

class SearchFiltersModel(BaseModel):
    """Document-level search filters."""
    categories: list[str] = []
    subtypes: list[str] = []
    min_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    max_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class SearchRequest(BaseModel):
    """Request body for hybrid search."""
    query: str = Field(..., max_length=2000)
    mode: str = "hybrid"
    filters: Optional[SearchFiltersModel] = None
    limit: Optional[int] = Field(default=None, ge=1)
    min_similarity: Optional[float] = Field(default=None, ge=0, le=1)


class SearchResultInfo(BaseModel):
    """One ranked search result."""
    id: str
    document_id: str
    file_name: str
    category: Optional[str] = None
    subtype: Optional[str] = None
    relevance_score: float
    match_type: str
    snippet: str
    highlights: list[str] = []
    metadata: Optional[dict] = None


class SearchTiming(BaseModel):
    full_text_ms: Optional[int] = None
    semantic_ms: Optional[int] = None
    total_ms: int = 0


class SearchResponseModel(BaseModel):
    """Response body for hybrid search."""
    query: str
    mode: str
    results: list[SearchResultInfo]
    total_results: int
    degraded: bool = False
    timing: SearchTiming


# =========================================================================
# Discovery models
# =========================================================================

class DiscoveryRequestModel(BaseModel):
    """A Request for Production or Interrogatory."""
    id: Optional[str] = None
    type: str
    number: int
    text: str
    category_hint: Optional[str] = None


class DiscoveryMatchRequest(BaseModel):
    """Request body for discovery matching."""
    requests: list[DiscoveryRequestModel] = Field(..., min_length=1)
    min_score: int = Field(default=30, ge=0, le=100)


class MatchedDocumentInfo(BaseModel):
    document_id: str
    file_name: str
    category: Optional[str] = None
    subtype: Optional[str] = None
    confidence: Optional[int] = None
    match_score: int
    match_reason: str
    match_reason_label: str


class MatchResultInfo(BaseModel):
    request: DiscoveryRequestModel
    status: str
    completion_percentage: int
    matching_documents: list[MatchedDocumentInfo]


class ComplianceStatsInfo(BaseModel):
    total_requests: int
    complete_requests: int
    partial_requests: int
    incomplete_requests: int
    overall_compliance_score: int
    documents_with_matches: int
    unmatched_documents: int
    total_documents: int


class DiscoveryMatchResponse(BaseModel):
    """Response body for discovery matching."""
    results: list[MatchResultInfo]
    stats: ComplianceStatsInfo


class ImportPreviewRequest(BaseModel):
    """Request body for previewing a discovery request import."""
    text: str = Field(..., max_length=200000)


class ImportPreviewResponse(BaseModel):
    """Parsed requests and validation errors for an import."""
    valid: bool
    count: int
    errors: list[str]
    requests: list[DiscoveryRequestModel]
