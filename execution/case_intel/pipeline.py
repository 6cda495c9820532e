"""
Classification Pipeline

The per-document classification entrypoint the processing queue calls:
fetch blob -> extract text -> classify -> enrich metadata -> store.

Running it twice for the same document simply overwrites the previous
classification, so queue retries are safe.
"""

import time
import logging
from typing import Optional
from dataclasses import dataclass, field

from .classifier import (
    Classifier,
    ClassificationContext,
    ClassificationError,
    calculate_confidence,
    extract_metadata,
)
from .extraction import ExtractedText, TextExtractor

logger = logging.getLogger(__name__)

# Final confidence below this flags the document for human review
REVIEW_THRESHOLD = 0.8


@dataclass
class ClassificationOutcome:
    """What a classification run stored, plus usage for the queue."""
    document_id: str
    category: str
    subtype: str
    confidence: float
    needs_review: bool
    metadata: dict = field(default_factory=dict)
    tokens_used: int = 0
    model_used: Optional[str] = None
    processing_time_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "category": self.category,
            "subtype": self.subtype,
            "confidence": self.confidence,
            "needs_review": self.needs_review,
            "metadata": self.metadata,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
            "processing_time_ms": self.processing_time_ms,
        }


class ClassificationPipeline:
    """
    Extracts, classifies and stores one document.

    Args:
        store: Document store with get_document() and update_classification()
        blob_store: Object with fetch(document) -> bytes
        classifier: Classifier implementation
        extractor: TextExtractor (default PyMuPDF-based)
    """

    def __init__(
        self,
        store,
        blob_store,
        classifier: Classifier,
        extractor: Optional[TextExtractor] = None,
    ):
        self.store = store
        self.blob_store = blob_store
        self.classifier = classifier
        self.extractor = extractor or TextExtractor()

    def load_text(self, document) -> ExtractedText:
        """Fetch and extract a document's text. Raises ExtractionError."""
        blob = self.blob_store.fetch(document)
        return self.extractor.extract(blob, document.mime_type or "application/pdf")

    def classify_and_store(self, document_id: str, owner_id: Optional[str] = None) -> ClassificationOutcome:
        """
        Run the full classification pipeline for a document.

        Raises:
            ClassificationError: Unknown document or classifier failure
            ExtractionError: Unreadable blob
        """
        start = time.time()

        document = self.store.get_document(document_id)
        if document is None:
            raise ClassificationError("Document not found", document_id)

        extracted = self.load_text(document)

        result = self.classifier.classify(
            extracted.text,
            ClassificationContext(
                document_id=document_id,
                case_id=document.case_id,
                file_name=document.file_name,
            ),
        )

        try:
            heuristics = extract_metadata(extracted.text, result.category)
        except Exception as e:
            logger.warning(f"Heuristic metadata failed for {document_id}: {e}")
            heuristics = {}

        metadata = {
            **result.metadata,
            **heuristics,
            "pages": extracted.page_count,
            "wordCount": extracted.word_count,
            "isScanned": extracted.is_scanned,
        }

        text_quality = 1.0 if extracted.word_count > 100 else extracted.word_count / 100
        final_confidence = calculate_confidence(result.category, result.subtype, text_quality)
        confidence = min(result.confidence, final_confidence)
        needs_review = final_confidence < REVIEW_THRESHOLD or result.needs_review

        self.store.update_classification(
            document_id,
            category=result.category,
            subtype=result.subtype,
            confidence=round(confidence * 100),
            metadata=metadata,
            needs_review=needs_review,
        )

        elapsed_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Stored classification for {document_id}: {result.category}/{result.subtype} "
            f"in {elapsed_ms}ms (review={needs_review})"
        )

        return ClassificationOutcome(
            document_id=document_id,
            category=result.category,
            subtype=result.subtype,
            confidence=confidence,
            needs_review=needs_review,
            metadata=metadata,
            tokens_used=result.tokens_used,
            model_used=result.model_used,
            processing_time_ms=elapsed_ms,
        )
