"""
Text Acquisition

Turns a stored document blob into plain text for classification and
indexing. PDFs are read with PyMuPDF; each page is prefixed with a
``[Page N]`` marker so the chunker can attribute chunks to pages later.

Image OCR is not performed here: images come back as empty, scanned text
and the classifier falls back to the file name.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from dataclasses import dataclass

from .documents import Document

logger = logging.getLogger(__name__)

# PDFs with fewer words than this are treated as scanned images
SCANNED_WORD_THRESHOLD = 50


class ExtractionError(Exception):
    """Raised when a document's content cannot be read."""

    def __init__(self, message: str, mime_type: Optional[str] = None):
        super().__init__(message)
        self.mime_type = mime_type


@dataclass
class ExtractedText:
    """Result of text extraction."""
    text: str
    page_count: int
    is_scanned: bool
    word_count: int = 0

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "page_count": self.page_count,
            "is_scanned": self.is_scanned,
            "word_count": self.word_count,
        }


class TextExtractor:
    """Extracts text from PDF, plain-text and image blobs."""

    def extract(self, blob: bytes, mime_type: str) -> ExtractedText:
        """
        Extract text from a document blob.

        Args:
            blob: Raw file bytes
            mime_type: MIME type, e.g. "application/pdf" or "text/plain"

        Returns:
            ExtractedText

        Raises:
            ExtractionError: If the content is unreadable or the type unsupported
        """
        mime_type = _normalize_mime_type(mime_type)

        if mime_type == "application/pdf":
            return self._extract_pdf(blob)

        if mime_type.startswith("text/"):
            try:
                text = blob.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ExtractionError(f"Text file is not valid UTF-8: {e}", mime_type)
            return ExtractedText(
                text=text,
                page_count=1,
                is_scanned=False,
                word_count=len(text.split()),
            )

        if mime_type.startswith("image/"):
            logger.info(f"No OCR for {mime_type}; returning empty scanned text")
            return ExtractedText(text="", page_count=1, is_scanned=True, word_count=0)

        raise ExtractionError(f"Unsupported file type: {mime_type}", mime_type)

    def _extract_pdf(self, blob: bytes) -> ExtractedText:
        """Extract PDF text page by page with [Page N] markers."""
        import fitz  # PyMuPDF

        try:
            with fitz.open(stream=blob, filetype="pdf") as doc:
                page_count = len(doc)
                parts = []
                for page_num in range(page_count):
                    page_text = doc[page_num].get_text().strip()
                    parts.append(f"[Page {page_num + 1}]\n{page_text}")
        except Exception as e:
            raise ExtractionError(f"Unreadable PDF: {e}", "application/pdf") from e

        text = "\n\n".join(parts)
        word_count = sum(len(p.split()) - 2 for p in parts)
        is_scanned = word_count < SCANNED_WORD_THRESHOLD

        logger.debug(f"PDF extracted: {page_count} pages, {word_count} words")
        return ExtractedText(
            text=text,
            page_count=page_count,
            is_scanned=is_scanned,
            word_count=max(word_count, 0),
        )


def _normalize_mime_type(mime_type: Optional[str]) -> str:
    """Accept bare extensions ("pdf") as well as full MIME types."""
    if not mime_type:
        return "application/pdf"
    mime_type = mime_type.lower().strip()
    if "/" in mime_type:
        return mime_type
    aliases = {
        "pdf": "application/pdf",
        "txt": "text/plain",
        "text": "text/plain",
        "png": "image/png",
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
    }
    return aliases.get(mime_type, f"application/{mime_type}")


class LocalBlobStore:
    """
    Reads document blobs from a local directory.

    ``document.storage_path`` is resolved relative to ``root``
    (defaults to the DOCUMENT_ROOT environment variable).
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or os.getenv("DOCUMENT_ROOT", "documents"))

    def fetch(self, document: Document) -> bytes:
        if not document.storage_path:
            raise ExtractionError(f"Document {document.id} has no storage path")

        path = self.root / document.storage_path
        try:
            return path.read_bytes()
        except OSError as e:
            raise ExtractionError(f"Failed to read {path}: {e}") from e
