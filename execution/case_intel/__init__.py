"""
Case Intelligence - Document Intelligence Pipeline for Legal Case Files

This module provides:
- A durable, retryable classification queue with atomic claims
- Overlapping-window chunking and pgvector indexing of classified documents
- Hybrid full-text + semantic search with result fusion
- Heuristic matching of case documents to discovery requests

Layer 3 (Execution): this module and its submodules. Operational entry
points live in the repository root (process_queue.py, index_documents.py).
"""

from .processing_queue import ProcessingQueue, QueueConfig, QueueItem, QueueStatus
from .queue_store import InMemoryQueueStore, PostgresQueueStore
from .chunker import DocumentChunker
from .indexer import ChunkIndexer
from .search import HybridSearchEngine, SearchFilters, SearchMode
from .discovery import DiscoveryMatcher, DiscoveryRequest
from .vector_store import VectorStore

__all__ = [
    "ProcessingQueue",
    "QueueConfig",
    "QueueItem",
    "QueueStatus",
    "InMemoryQueueStore",
    "PostgresQueueStore",
    "DocumentChunker",
    "ChunkIndexer",
    "HybridSearchEngine",
    "SearchFilters",
    "SearchMode",
    "DiscoveryMatcher",
    "DiscoveryRequest",
    "VectorStore",
]

__version__ = "0.1.0"
