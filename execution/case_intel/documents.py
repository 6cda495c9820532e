"""
Case Documents

Read-side model of a case document as the pipeline sees it. Documents are
owned by the surrounding CRUD layer; the pipeline only reads them and writes
classification results back through the store.
"""

import json
import logging
from datetime import date, datetime
from typing import Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# Categories and subtypes the classifier is allowed to assign
DOCUMENT_CATEGORIES: dict[str, list[str]] = {
    "Financial": [
        "Bank Statement",
        "Pay Stub",
        "Tax Return",
        "Investment Statement",
        "Credit Card Statement",
        "Loan Document",
        "Financial Affidavit",
    ],
    "Medical": [
        "Medical Records",
        "Medical Bills",
        "Insurance Claim",
        "Prescription Records",
        "Lab Results",
        "Doctor Notes",
    ],
    "Legal": [
        "Court Order",
        "Petition",
        "Motion",
        "Subpoena",
        "Affidavit",
        "Contract",
        "Agreement",
        "Judgment",
    ],
    "Communications": [
        "Email",
        "Text Messages",
        "Letter",
        "Social Media Posts",
    ],
    "Property": [
        "Deed",
        "Title",
        "Appraisal",
        "Property Tax Statement",
        "Mortgage Document",
    ],
    "Employment": [
        "Employment Contract",
        "W-2",
        "1099",
        "Performance Review",
        "Termination Letter",
    ],
    "Personal": [
        "ID Document",
        "Birth Certificate",
        "Marriage Certificate",
        "Divorce Decree",
        "Passport",
    ],
    "Other": [
        "Photograph",
        "Video",
        "Audio Recording",
        "Miscellaneous",
    ],
}


@dataclass
class Document:
    """A case document with its (optional) classification."""
    id: str
    case_id: str
    file_name: str
    category: Optional[str] = None
    subtype: Optional[str] = None
    confidence: Optional[int] = None  # 0-100
    metadata: dict = field(default_factory=dict)
    needs_review: bool = False

    # Storage-side fields
    owner_id: Optional[str] = None
    storage_path: Optional[str] = None
    mime_type: Optional[str] = None
    document_date: Optional[date] = None
    created_at: Optional[datetime] = None

    @property
    def is_classified(self) -> bool:
        return self.category is not None

    @classmethod
    def from_row(cls, row: dict) -> "Document":
        """Build a Document from a database row (RealDictCursor or plain dict)."""
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                logger.warning(f"Unparseable metadata on document {row.get('id')}")
                metadata = {}

        document_date = row.get("document_date")
        if isinstance(document_date, datetime):
            document_date = document_date.date()

        return cls(
            id=str(row["id"]),
            case_id=str(row["case_id"]),
            file_name=row.get("file_name") or "",
            category=row.get("category"),
            subtype=row.get("subtype"),
            confidence=row.get("confidence"),
            metadata=metadata,
            needs_review=bool(row.get("needs_review", False)),
            owner_id=str(row["owner_id"]) if row.get("owner_id") else None,
            storage_path=row.get("storage_path"),
            mime_type=row.get("mime_type"),
            document_date=document_date,
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "file_name": self.file_name,
            "category": self.category,
            "subtype": self.subtype,
            "confidence": self.confidence,
            "metadata": self.metadata,
            "needs_review": self.needs_review,
            "owner_id": self.owner_id,
            "storage_path": self.storage_path,
            "mime_type": self.mime_type,
            "document_date": self.document_date.isoformat() if self.document_date else None,
        }
