"""
Hybrid Search Engine for Case Documents

Combines two retrieval paths over a single case:

1. Full-text: substring candidates over file names and chunk content,
   scored by a base similarity plus exact-phrase and term-coverage bonuses
2. Semantic: cosine similarity between the query embedding and chunk
   embeddings, above a minimum similarity

Results are collapsed to one entry per document. In hybrid mode a document
found by both paths is marked "both", keeps the higher score and gets a 10%
boost when ranking (the stored score is not changed).
"""

import time
import logging
from enum import Enum
from datetime import date
from typing import Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Tokens ignored when building full-text terms
QUERY_STOPWORDS = frozenset({"and", "or", "not", "the", "a"})


class SearchMode(str, Enum):
    FULL_TEXT = "full-text"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class SearchError(Exception):
    """Raised when a search cannot be answered in the requested mode."""

    def __init__(self, message: str, mode: Optional[str] = None):
        self.mode = mode
        super().__init__(message)


@dataclass
class SearchFilters:
    """Document-level filters, applied in SQL and re-checked in Python."""
    categories: list[str] = field(default_factory=list)
    subtypes: list[str] = field(default_factory=list)
    min_confidence: Optional[int] = None
    max_confidence: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @property
    def is_empty(self) -> bool:
        return not (
            self.categories
            or self.subtypes
            or self.min_confidence is not None
            or self.max_confidence is not None
            or self.date_from is not None
            or self.date_to is not None
        )

    def matches(self, document) -> bool:
        """True if the document passes every filter that is set."""
        if self.categories and document.category not in self.categories:
            return False
        if self.subtypes and document.subtype not in self.subtypes:
            return False

        if self.min_confidence is not None or self.max_confidence is not None:
            if document.confidence is None:
                return False
            if self.min_confidence is not None and document.confidence < self.min_confidence:
                return False
            if self.max_confidence is not None and document.confidence > self.max_confidence:
                return False

        if self.date_from is not None or self.date_to is not None:
            if document.document_date is None:
                return False
            if self.date_from is not None and document.document_date < self.date_from:
                return False
            if self.date_to is not None and document.document_date > self.date_to:
                return False

        return True


@dataclass
class SearchConfig:
    """Configuration for hybrid search."""
    default_limit: int = 20
    max_limit: int = 50
    min_similarity: float = 0.7

    # Base similarity per full-text source
    filename_base_similarity: float = 0.5
    content_base_similarity: float = 0.6

    # Snippet context (chars either side of the first hit)
    filename_context_chars: int = 50
    content_context_chars: int = 100
    semantic_snippet_chars: int = 200
    fallback_snippet_chars: int = 150

    # Ranking boost for documents found by both paths
    both_boost: float = 1.1


@dataclass
class SearchResult:
    """One document in a ranked result list."""
    id: str
    document_id: str
    file_name: str
    relevance_score: float
    match_type: str
    snippet: str
    category: Optional[str] = None
    subtype: Optional[str] = None
    highlights: list[str] = field(default_factory=list)
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "file_name": self.file_name,
            "category": self.category,
            "subtype": self.subtype,
            "relevance_score": round(self.relevance_score, 4),
            "match_type": self.match_type,
            "snippet": self.snippet,
            "highlights": self.highlights,
            "metadata": self.metadata,
        }


@dataclass
class SearchResponse:
    """Ranked results plus timing for one search call."""
    query: str
    mode: str
    results: list[SearchResult]
    degraded: bool = False
    full_text_ms: Optional[int] = None
    semantic_ms: Optional[int] = None
    total_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "mode": self.mode,
            "results": [r.to_dict() for r in self.results],
            "total_results": len(self.results),
            "degraded": self.degraded,
            "timing": {
                "full_text_ms": self.full_text_ms,
                "semantic_ms": self.semantic_ms,
                "total_ms": self.total_ms,
            },
        }


# =============================================================================
# Scoring helpers
# =============================================================================

def extract_search_terms(query: str) -> list[str]:
    """Lowercase query terms longer than 2 chars, minus stopwords, in order."""
    if not query:
        return []
    terms = []
    for token in query.lower().replace('"', "").replace("'", "").split():
        if len(token) > 2 and token not in QUERY_STOPWORDS and token not in terms:
            terms.append(token)
    return terms


def extract_snippet(content: str, terms: list[str], context_chars: int = 50) -> str:
    """
    Text around the earliest term hit, with "..." where it was truncated.

    Returns an empty string when no term occurs in the content.
    """
    if not content or not terms:
        return ""

    lower = content.lower()
    hit_index = -1
    hit_term = ""
    for term in terms:
        idx = lower.find(term)
        if idx != -1 and (hit_index == -1 or idx < hit_index):
            hit_index = idx
            hit_term = term

    if hit_index == -1:
        return ""

    start = max(0, hit_index - context_chars)
    end = min(len(content), hit_index + len(hit_term) + context_chars)

    snippet = content[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet = snippet + "..."
    return snippet


def find_highlights(text: str, terms: list[str]) -> list[str]:
    """Distinct substrings of text (original case) that match a term, in text order."""
    if not text or not terms:
        return []

    lower = text.lower()
    found = []
    for term in terms:
        start = lower.find(term)
        while start != -1:
            found.append((start, text[start:start + len(term)]))
            start = lower.find(term, start + len(term))

    highlights = []
    for _, matched in sorted(found):
        if matched not in highlights:
            highlights.append(matched)
    return highlights


def calculate_relevance_score(text: str, query: str, base_similarity: float) -> float:
    """
    Full-text relevance in [0, 1].

    score = base * 0.5 + 0.25 (exact phrase present) + 0.25 * term coverage
    """
    if not text or not query:
        return base_similarity

    lower_text = text.lower()
    score = base_similarity * 0.5

    if query.strip().lower() in lower_text:
        score += 0.25

    terms = extract_search_terms(query)
    if terms:
        matched = sum(1 for t in terms if t in lower_text)
        score += (matched / len(terms)) * 0.25

    return min(1.0, max(0.0, score))


def _rank_key(result: SearchResult, both_boost: float) -> tuple:
    boosted = result.relevance_score * both_boost if result.match_type == "both" else result.relevance_score
    return (-boosted, result.file_name, result.document_id)


def combine_search_results(
    full_text_results: list[SearchResult],
    semantic_results: list[SearchResult],
    both_boost: float = 1.1,
) -> list[SearchResult]:
    """
    Merge the two result lists into one entry per document.

    A document present in both lists becomes match_type "both" with the
    higher score, the union of highlights and the longer snippet. "both"
    results are boosted for ordering only.
    """
    combined: dict[str, SearchResult] = {}

    for result in full_text_results:
        combined[result.document_id] = result

    for result in semantic_results:
        existing = combined.get(result.document_id)
        if existing is None:
            combined[result.document_id] = result
            continue

        highlights = list(existing.highlights)
        for h in result.highlights:
            if h not in highlights:
                highlights.append(h)

        combined[result.document_id] = SearchResult(
            id=existing.id,
            document_id=existing.document_id,
            file_name=existing.file_name,
            category=existing.category,
            subtype=existing.subtype,
            relevance_score=max(existing.relevance_score, result.relevance_score),
            match_type="both",
            snippet=result.snippet if len(result.snippet) > len(existing.snippet) else existing.snippet,
            highlights=highlights,
            metadata=existing.metadata if existing.metadata is not None else result.metadata,
        )

    return sorted(combined.values(), key=lambda r: _rank_key(r, both_boost))


def _keep_best(results: dict[str, SearchResult], candidate: SearchResult) -> None:
    existing = results.get(candidate.document_id)
    if existing is None or candidate.relevance_score > existing.relevance_score:
        results[candidate.document_id] = candidate


# =============================================================================
# Engine
# =============================================================================

class HybridSearchEngine:
    """
    Full-text + semantic search over one case's documents.

    Args:
        store: Store with search_filenames(), search_chunk_content(), semantic_search()
        embedder: Embedding service used to index the chunks (embed_query)
        config: Optional search configuration
        metrics: Optional MetricsCollector
    """

    def __init__(self, store, embedder=None, config: Optional[SearchConfig] = None, metrics=None):
        self.store = store
        self.embedder = embedder
        self.config = config or SearchConfig()
        self.metrics = metrics

    def search(
        self,
        case_id: str,
        query: str,
        mode=SearchMode.HYBRID,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> list[SearchResult]:
        """Ranked results, at most one per document."""
        return self.run(case_id, query, mode, filters, limit, min_similarity).results

    def run(
        self,
        case_id: str,
        query: str,
        mode=SearchMode.HYBRID,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> SearchResponse:
        """
        Execute a search and return results with timing.

        Raises:
            ValueError: Unknown search mode
            SearchError: Semantic mode and the query could not be embedded
        """
        mode = self._parse_mode(mode)
        query = (query or "").strip()
        if not query:
            return SearchResponse(query=query, mode=mode.value, results=[])

        if self.metrics:
            with self.metrics.track_search(case_id, query, mode.value) as tracker:
                response = self._run(case_id, query, mode, filters, limit, min_similarity)
                tracker.set_results(len(response.results), degraded=response.degraded)
            return response
        return self._run(case_id, query, mode, filters, limit, min_similarity)

    @staticmethod
    def _parse_mode(mode) -> SearchMode:
        try:
            return SearchMode(mode)
        except ValueError:
            raise ValueError(
                f"Invalid search mode: {mode!r}. "
                f"Expected one of {[m.value for m in SearchMode]}"
            ) from None

    def _run(
        self,
        case_id: str,
        query: str,
        mode: SearchMode,
        filters: Optional[SearchFilters],
        limit: Optional[int],
        min_similarity: Optional[float],
    ) -> SearchResponse:
        start = time.time()
        if limit is None:
            limit = self.config.default_limit
        limit = max(0, min(limit, self.config.max_limit))
        if min_similarity is None:
            min_similarity = self.config.min_similarity
        filters = filters or SearchFilters()

        response = SearchResponse(query=query, mode=mode.value, results=[])
        full_text: list[SearchResult] = []
        semantic: list[SearchResult] = []

        if mode in (SearchMode.FULL_TEXT, SearchMode.HYBRID):
            ft_start = time.time()
            full_text = self._full_text(case_id, query, filters, limit)
            response.full_text_ms = int((time.time() - ft_start) * 1000)

        if mode in (SearchMode.SEMANTIC, SearchMode.HYBRID):
            sem_start = time.time()
            try:
                semantic = self._semantic(case_id, query, filters, limit, min_similarity)
            except SearchError:
                if mode == SearchMode.SEMANTIC:
                    raise
                logger.warning(f"Semantic search unavailable, using full-text only for case {case_id}")
                response.degraded = True
            response.semantic_ms = int((time.time() - sem_start) * 1000)

        if mode == SearchMode.HYBRID:
            results = combine_search_results(full_text, semantic, self.config.both_boost)
        else:
            results = sorted(full_text or semantic, key=lambda r: _rank_key(r, 1.0))

        response.results = results[:limit]
        response.total_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Search '{query[:50]}' ({mode.value}) in case {case_id}: "
            f"{len(response.results)} results in {response.total_ms}ms"
        )
        return response

    # -------------------------------------------------------------------------
    # Full-text path
    # -------------------------------------------------------------------------

    def _full_text(
        self,
        case_id: str,
        query: str,
        filters: SearchFilters,
        limit: int,
    ) -> list[SearchResult]:
        terms = extract_search_terms(query)
        if not terms:
            return []

        cfg = self.config
        by_document: dict[str, SearchResult] = {}

        for doc in self.store.search_filenames(case_id, terms, filters, limit):
            if not filters.matches(doc):
                continue
            snippet = extract_snippet(doc.file_name, terms, cfg.filename_context_chars)
            _keep_best(by_document, SearchResult(
                id=doc.id,
                document_id=doc.id,
                file_name=doc.file_name,
                category=doc.category,
                subtype=doc.subtype,
                relevance_score=calculate_relevance_score(
                    doc.file_name, query, cfg.filename_base_similarity
                ),
                match_type=SearchMode.FULL_TEXT.value,
                snippet=snippet or doc.file_name,
                highlights=find_highlights(doc.file_name, terms),
                metadata=doc.metadata,
            ))

        for hit in self.store.search_chunk_content(case_id, terms, filters, limit):
            doc = hit.document
            if not filters.matches(doc):
                continue
            snippet = (
                extract_snippet(hit.content, terms, cfg.content_context_chars)
                or hit.content[:cfg.fallback_snippet_chars]
            )
            _keep_best(by_document, SearchResult(
                id=hit.chunk_id,
                document_id=doc.id,
                file_name=doc.file_name,
                category=doc.category,
                subtype=doc.subtype,
                relevance_score=calculate_relevance_score(
                    hit.content, query, cfg.content_base_similarity
                ),
                match_type=SearchMode.FULL_TEXT.value,
                snippet=snippet,
                highlights=find_highlights(snippet, terms),
                metadata={**(doc.metadata or {}), "page_number": hit.page_number},
            ))

        return list(by_document.values())

    # -------------------------------------------------------------------------
    # Semantic path
    # -------------------------------------------------------------------------

    def _embed_query(self, query: str) -> list[float]:
        if self.embedder is None:
            raise SearchError("No embedding service configured", mode=SearchMode.SEMANTIC.value)
        try:
            return self.embedder.embed_query(query)
        except Exception as e:
            logger.error(f"Query embedding failed: {e}")
            raise SearchError(f"Query embedding failed: {e}", mode=SearchMode.SEMANTIC.value) from e

    def _semantic(
        self,
        case_id: str,
        query: str,
        filters: SearchFilters,
        limit: int,
        min_similarity: float,
    ) -> list[SearchResult]:
        embedding = self._embed_query(query)
        by_document: dict[str, SearchResult] = {}

        for hit in self.store.semantic_search(case_id, embedding, min_similarity, filters, limit):
            doc = hit.document
            if not filters.matches(doc):
                continue
            _keep_best(by_document, SearchResult(
                id=hit.chunk_id,
                document_id=doc.id,
                file_name=doc.file_name,
                category=doc.category,
                subtype=doc.subtype,
                relevance_score=float(hit.similarity or 0.0),
                match_type=SearchMode.SEMANTIC.value,
                snippet=hit.content[:self.config.semantic_snippet_chars],
                highlights=[],
                metadata={**(doc.metadata or {}), "page_number": hit.page_number},
            ))

        return list(by_document.values())


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .vector_store import VectorStore
    from .embeddings import get_embedding_service

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 3:
        print("Usage: python -m execution.case_intel.search <case_id> <query...>")
        sys.exit(1)

    store = VectorStore()
    store.connect()
    engine = HybridSearchEngine(store, get_embedding_service())

    for i, result in enumerate(engine.search(sys.argv[1], " ".join(sys.argv[2:])), 1):
        print(f"\n{i}. {result.file_name} [{result.match_type}] (score: {result.relevance_score:.3f})")
        print(f"   {result.snippet}")
