"""
Shared fixtures and test utilities for Case Intelligence tests.

Provides mock services, sample data, and reusable fixtures so that all tests
can run without API keys, databases, or external network access.
"""

import os
import sys
import uuid
import hashlib
from pathlib import Path
from datetime import date

import numpy as np
import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

CASE_ID = "11111111-1111-1111-1111-111111111111"
OTHER_CASE_ID = "22222222-2222-2222-2222-222222222222"
OWNER_ID = "user_test_owner"

# ---------------------------------------------------------------------------
# Sample extracted text (PyMuPDF-style page markers)
# ---------------------------------------------------------------------------
SAMPLE_STATEMENT_TEXT = """[Page 1]
Bank of America
Account Statement for January 2024
Account Number: ****4821
Statement Period: 01/01/2024 - 01/31/2024

Beginning balance on January 1, 2024 was $12,480.22. Deposits and other
additions totalled $6,200.00. Withdrawals and other subtractions totalled
$4,915.37. Ending balance on January 31, 2024 was $13,764.85.

[Page 2]
Deposits and other additions

01/05/2024 Direct deposit from Acme Logistics payroll $3,100.00
01/19/2024 Direct deposit from Acme Logistics payroll $3,100.00

Withdrawals and other subtractions

01/03/2024 Mortgage payment to Wells Fargo Home Mortgage $2,450.00
01/12/2024 Transfer to savings account ending 9912 $1,000.00
01/22/2024 Tuition payment to Lincoln Elementary School $1,465.37

[Page 3]
Important information about your account. Please examine this statement
upon receipt and report any errors within sixty days. Interest was not paid
on this account during the statement period.
"""


@pytest.fixture
def sample_statement_text():
    """Return the sample bank statement text with [Page N] markers."""
    return SAMPLE_STATEMENT_TEXT


def make_document(
    file_name="BofA_Jan2024.pdf",
    category="Financial",
    subtype="Bank Statement",
    confidence=92,
    metadata=None,
    case_id=CASE_ID,
    document_id=None,
    document_date=None,
    **kwargs,
):
    """Build a Document with sensible defaults."""
    from execution.case_intel.documents import Document
    return Document(
        id=document_id or str(uuid.uuid4()),
        case_id=case_id,
        file_name=file_name,
        category=category,
        subtype=subtype,
        confidence=confidence,
        metadata=metadata if metadata is not None else {},
        owner_id=kwargs.pop("owner_id", OWNER_ID),
        document_date=document_date,
        **kwargs,
    )


@pytest.fixture
def document_factory():
    return make_document


@pytest.fixture
def sample_documents():
    """A small case: three classified documents and one unclassified."""
    return [
        make_document(
            file_name="BofA_Jan2024.pdf",
            category="Financial",
            subtype="Bank Statement",
            metadata={"startDate": "2024-01-01", "endDate": "2024-01-31"},
            document_date=date(2024, 1, 31),
            document_id="doc-bank-jan",
        ),
        make_document(
            file_name="2023_W2_AcmeLogistics.pdf",
            category="Financial",
            subtype="Tax Return",
            metadata={"summary": "W-2 wage and tax statement from Acme Logistics"},
            document_date=date(2024, 1, 15),
            document_id="doc-w2",
        ),
        make_document(
            file_name="Custody_Order_2022.pdf",
            category="Legal",
            subtype="Court Order",
            metadata={"summary": "Temporary custody order and parenting schedule"},
            document_date=date(2022, 6, 1),
            document_id="doc-custody",
        ),
        make_document(
            file_name="scan_0001.jpg",
            category=None,
            subtype=None,
            confidence=None,
            document_id="doc-unclassified",
        ),
    ]


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=8, model_name="mock-embedding-model"):
        self._dimensions = dimensions
        self._model_name = model_name
        self._call_count = 0
        self.vectors = {}  # explicit text -> vector overrides

    def embed_documents(self, texts):
        return [self._vector(t) for t in texts]

    def embed_query(self, query):
        self._call_count += 1
        return self._vector(query)

    def _vector(self, text):
        if text in self.vectors:
            return list(self.vectors[text])
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions

    @property
    def model_name(self):
        return self._model_name


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Mock document store (no database needed)
# ---------------------------------------------------------------------------

def _cosine(a, b) -> float:
    a_arr = np.array(a, dtype=float)
    b_arr = np.array(b, dtype=float)
    denom = np.linalg.norm(a_arr) * np.linalg.norm(b_arr)
    if denom == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / denom)


class MockDocumentStore:
    """
    In-memory stand-in for VectorStore.

    Implements the document, chunk and retrieval-candidate methods with the
    same semantics as the SQL (substring match, cosine similarity, filters).
    Set apply_filters=False to simulate a store that ignores pushed-down
    filters.
    """

    def __init__(self, documents=None, apply_filters=True):
        self._documents = {}
        self._chunks = {}
        self.apply_filters = apply_filters
        self.classification_updates = []
        for doc in documents or []:
            self.upsert_document(doc)

    def connect(self):
        pass

    def initialize_schema(self):
        pass

    def close(self):
        pass

    # Documents

    def upsert_document(self, document):
        self._documents[document.id] = document

    def get_document(self, document_id):
        return self._documents.get(document_id)

    def list_documents(self, case_id):
        return [d for d in self._documents.values() if d.case_id == case_id]

    def update_classification(self, document_id, category, subtype, confidence, metadata, needs_review):
        doc = self._documents.get(document_id)
        self.classification_updates.append({
            "document_id": document_id,
            "category": category,
            "subtype": subtype,
            "confidence": confidence,
            "metadata": metadata,
            "needs_review": needs_review,
        })
        if doc is not None:
            doc.category = category
            doc.subtype = subtype
            doc.confidence = confidence
            doc.metadata = metadata
            doc.needs_review = needs_review

    # Chunks

    def has_chunks(self, document_id):
        return bool(self._chunks.get(document_id))

    def replace_document_chunks(self, document_id, chunks):
        self._chunks[document_id] = list(chunks)
        return len(chunks)

    def get_document_chunks(self, document_id):
        return [c.to_dict() for c in sorted(self._chunks.get(document_id, []), key=lambda c: c.chunk_index)]

    def add_chunk(self, document_id, content, embedding, chunk_index=None, page_number=None):
        """Test helper: attach a chunk directly."""
        from execution.case_intel.indexer import Chunk
        doc = self._documents[document_id]
        existing = self._chunks.setdefault(document_id, [])
        chunk = Chunk(
            id=str(uuid.uuid4()),
            document_id=document_id,
            case_id=doc.case_id,
            owner_id=doc.owner_id or OWNER_ID,
            chunk_index=len(existing) if chunk_index is None else chunk_index,
            content=content,
            embedding=list(embedding),
            page_number=page_number,
        )
        existing.append(chunk)
        return chunk

    # Retrieval candidates

    def _passes(self, doc, filters):
        if not self.apply_filters or filters is None:
            return True
        return filters.matches(doc)

    def search_filenames(self, case_id, terms, filters=None, limit=50):
        results = []
        for doc in self._documents.values():
            if doc.case_id != case_id or doc.category is None:
                continue
            name = doc.file_name.lower()
            if any(t.lower() in name for t in terms) and self._passes(doc, filters):
                results.append(doc)
        return results[:limit]

    def search_chunk_content(self, case_id, terms, filters=None, limit=50):
        from execution.case_intel.vector_store import ChunkHit
        hits = []
        for document_id, chunks in self._chunks.items():
            doc = self._documents[document_id]
            if doc.case_id != case_id or not self._passes(doc, filters):
                continue
            for chunk in chunks:
                content = chunk.content.lower()
                if any(t.lower() in content for t in terms):
                    hits.append(ChunkHit(
                        chunk_id=chunk.id,
                        chunk_index=chunk.chunk_index,
                        content=chunk.content,
                        document=doc,
                        page_number=chunk.page_number,
                    ))
        return hits[:limit]

    def semantic_search(self, case_id, query_embedding, min_similarity=0.7, filters=None, limit=50):
        from execution.case_intel.vector_store import ChunkHit
        hits = []
        for document_id, chunks in self._chunks.items():
            doc = self._documents[document_id]
            if doc.case_id != case_id or not self._passes(doc, filters):
                continue
            for chunk in chunks:
                similarity = _cosine(query_embedding, chunk.embedding)
                if similarity >= min_similarity:
                    hits.append(ChunkHit(
                        chunk_id=chunk.id,
                        chunk_index=chunk.chunk_index,
                        content=chunk.content,
                        document=doc,
                        page_number=chunk.page_number,
                        similarity=similarity,
                    ))
        hits.sort(key=lambda h: -h.similarity)
        return hits[:limit]


@pytest.fixture
def mock_document_store(sample_documents):
    return MockDocumentStore(sample_documents)


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.case_intel.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None


# ---------------------------------------------------------------------------
# Live credentials
# ---------------------------------------------------------------------------

def _credentials_available() -> bool:
    return all(os.getenv(k) for k in ("POSTGRES_URL", "OPENAI_API_KEY"))


skip_no_creds = pytest.mark.skipif(
    not _credentials_available(),
    reason="Missing POSTGRES_URL or OPENAI_API_KEY in .env",
)


@pytest.fixture(scope="session")
def live_store():
    """Real VectorStore connected to the database."""
    from execution.case_intel.vector_store import VectorStore
    store = VectorStore()
    store.connect()
    store.initialize_schema()
    yield store
    store.close()
