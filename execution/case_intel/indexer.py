"""
Chunk Indexer

Chunks a classified document's text, embeds every chunk and persists the
set, replacing whatever the document had before. Text that is too short to
carry signal is reported as a skip, not a failure.
"""

import time
import uuid
import logging
from typing import Callable, Optional
from dataclasses import dataclass, field

import numpy as np

from .chunker import ChunkConfig, DocumentChunker, TextChunk, apply_page_numbers, extract_page_markers

logger = logging.getLogger(__name__)

SKIP_REASON_SHORT_TEXT = "Not enough text to embed"


@dataclass
class Chunk:
    """A persisted, embedded chunk of a document."""
    id: str
    document_id: str
    case_id: str
    owner_id: str
    chunk_index: int
    content: str
    embedding: list[float]
    page_number: Optional[int] = None
    token_count: int = 0
    embedding_model: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "case_id": self.case_id,
            "owner_id": self.owner_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "page_number": self.page_number,
            "token_count": self.token_count,
            "embedding_model": self.embedding_model,
        }


@dataclass
class IndexResult:
    """Outcome of indexing one document."""
    document_id: str
    chunks_indexed: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "chunks_indexed": self.chunks_indexed,
            "skipped": self.skipped,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
        }


@dataclass
class CaseIndexReport:
    """Outcome of indexing every eligible document in a case."""
    case_id: str
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    total_chunks: int = 0
    results: list[IndexResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "indexed": self.indexed,
            "skipped": self.skipped,
            "failed": self.failed,
            "total_chunks": self.total_chunks,
            "results": [r.to_dict() for r in self.results],
            "errors": self.errors,
        }


@dataclass
class IndexerConfig:
    """Configuration for the chunk indexer."""
    min_text_chars: int = 100
    chunk: ChunkConfig = field(default_factory=ChunkConfig)


class ChunkIndexer:
    """
    Builds the semantic index for case documents.

    Args:
        store: Store with replace_document_chunks(), list_documents(), has_chunks()
        embedder: Embedding service (embed_documents / model_name)
        config: Indexer configuration
        metrics: Optional MetricsCollector
    """

    def __init__(self, store, embedder, config: Optional[IndexerConfig] = None, metrics=None):
        self.store = store
        self.embedder = embedder
        self.config = config or IndexerConfig()
        self.chunker = DocumentChunker(self.config.chunk)
        self.metrics = metrics

    def chunk(self, text: str) -> list[TextChunk]:
        """Chunk text and attribute pages (best effort)."""
        chunks = self.chunker.split(text)
        try:
            apply_page_numbers(chunks, extract_page_markers(text))
        except Exception as e:
            logger.warning(f"Page attribution failed, continuing without pages: {e}")
        return chunks

    def index(
        self,
        document_id: str,
        case_id: str,
        owner_id: str,
        chunks: list[TextChunk],
    ) -> IndexResult:
        """
        Embed and persist chunks for a document, replacing its old chunks.

        Raises:
            ValueError: If the embedder returns a different number of vectors
        """
        start = time.time()

        texts = [c.content for c in chunks]
        embeddings = self.embedder.embed_documents(texts) if texts else []
        if len(embeddings) != len(texts):
            raise ValueError(
                f"Mismatch: {len(texts)} chunks, {len(embeddings)} embeddings"
            )
        if embeddings:
            dims = {np.asarray(e).shape for e in embeddings}
            if len(dims) != 1:
                raise ValueError(f"Inconsistent embedding shapes: {sorted(dims)}")

        model_name = getattr(self.embedder, "model_name", None)
        rows = [
            Chunk(
                id=str(uuid.uuid4()),
                document_id=document_id,
                case_id=case_id,
                owner_id=owner_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=list(embedding),
                page_number=chunk.page_number,
                token_count=chunk.token_count,
                embedding_model=model_name,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        inserted = self.store.replace_document_chunks(document_id, rows)
        duration_ms = int((time.time() - start) * 1000)

        if self.metrics:
            self.metrics.record_indexing(inserted, duration_ms)
        logger.info(f"Indexed {inserted} chunks for document {document_id} in {duration_ms}ms")

        return IndexResult(
            document_id=document_id,
            chunks_indexed=inserted,
            duration_ms=duration_ms,
        )

    def index_text(
        self,
        document_id: str,
        case_id: str,
        owner_id: str,
        text: str,
    ) -> IndexResult:
        """Chunk and index extracted text; short text is reported as a skip."""
        if len(text.strip()) < self.config.min_text_chars:
            logger.info(f"Skipping {document_id}: {SKIP_REASON_SHORT_TEXT}")
            if self.metrics:
                self.metrics.record_indexing(0, 0, skipped=True)
            return IndexResult(
                document_id=document_id,
                skipped=True,
                reason=SKIP_REASON_SHORT_TEXT,
            )

        return self.index(document_id, case_id, owner_id, self.chunk(text))

    def index_case(
        self,
        case_id: str,
        owner_id: str,
        load_text: Callable,
        reindex: bool = False,
    ) -> CaseIndexReport:
        """
        Index every classified document in a case.

        Args:
            case_id: Case to index
            owner_id: Owner recorded on the chunk rows
            load_text: Callable(document) -> str (or an object with .text)
            reindex: Also re-index documents that already have chunks

        Per-document failures are recorded in the report; the batch continues.
        """
        report = CaseIndexReport(case_id=case_id)

        documents = [d for d in self.store.list_documents(case_id) if d.is_classified]
        if not reindex:
            documents = [d for d in documents if not self.store.has_chunks(d.id)]

        logger.info(f"Indexing {len(documents)} documents for case {case_id}")

        for document in documents:
            try:
                loaded = load_text(document)
                text = loaded if isinstance(loaded, str) else loaded.text
                result = self.index_text(document.id, case_id, owner_id, text)
            except Exception as e:
                logger.error(f"Indexing failed for {document.id}: {e}")
                report.failed += 1
                report.errors[document.id] = str(e)
                continue

            report.results.append(result)
            if result.skipped:
                report.skipped += 1
            else:
                report.indexed += 1
                report.total_chunks += result.chunks_indexed

        logger.info(
            f"Case {case_id}: indexed {report.indexed}, skipped {report.skipped}, "
            f"failed {report.failed} ({report.total_chunks} chunks)"
        )
        return report
