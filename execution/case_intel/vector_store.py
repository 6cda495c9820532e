"""
Case Document Store with PostgreSQL + pgvector

Holds classified case documents and their embedded chunks, and answers the
two retrieval queries hybrid search needs:

- substring (ILIKE) candidates over file names and chunk content
- cosine-similarity candidates over chunk embeddings

Scoring and fusion live in search.py; this module only fetches rows.
The connection pool and retry helper are shared with PostgresQueueStore.
"""

import os
import json
import logging
from typing import Optional
from dataclasses import dataclass
from contextlib import contextmanager

from .documents import Document

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)


@dataclass
class StoreConfig:
    """Configuration for the document store."""
    connection_string: Optional[str] = None
    documents_table: str = "case_documents"
    chunks_table: str = "document_chunks"
    embedding_dimensions: int = 1536  # text-embedding-3-small
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True


@dataclass
class ChunkHit:
    """A chunk row joined to its owning document."""
    chunk_id: str
    chunk_index: int
    content: str
    document: Document
    page_number: Optional[int] = None
    similarity: Optional[float] = None

    @property
    def document_id(self) -> str:
        return self.document.id

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "document_id": self.document.id,
            "page_number": self.page_number,
            "similarity": self.similarity,
        }


_DOCUMENT_COLUMNS = """
    d.id AS document_id, d.case_id, d.owner_id, d.file_name, d.category, d.subtype,
    d.confidence, d.metadata, d.needs_review, d.storage_path, d.mime_type,
    d.document_date, d.created_at
"""


def _like_patterns(terms: list[str]) -> list[str]:
    """ILIKE patterns for substring matching, with LIKE wildcards escaped."""
    escaped = [t.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") for t in terms]
    return [f"%{t}%" for t in escaped]


def _filter_clause(filters, alias: str = "d") -> tuple[str, list]:
    """SQL conditions for SearchFilters (categories, subtypes, confidence, date range)."""
    if filters is None:
        return "", []

    conditions = []
    params = []
    if filters.categories:
        conditions.append(f"{alias}.category = ANY(%s)")
        params.append(list(filters.categories))
    if filters.subtypes:
        conditions.append(f"{alias}.subtype = ANY(%s)")
        params.append(list(filters.subtypes))
    if filters.min_confidence is not None:
        conditions.append(f"{alias}.confidence >= %s")
        params.append(filters.min_confidence)
    if filters.max_confidence is not None:
        conditions.append(f"{alias}.confidence <= %s")
        params.append(filters.max_confidence)
    if filters.date_from is not None:
        conditions.append(f"{alias}.document_date >= %s")
        params.append(filters.date_from)
    if filters.date_to is not None:
        conditions.append(f"{alias}.document_date <= %s")
        params.append(filters.date_to)

    if not conditions:
        return "", []
    return " AND " + " AND ".join(conditions), params


def _document_from_joined_row(row: dict) -> Document:
    return Document.from_row({**row, "id": row["document_id"]})


class VectorStore:
    """
    PostgreSQL store for case documents and embedded chunks.

    Features:
    - Cosine similarity search scoped to a case
    - ILIKE candidate lookup for full-text search
    - Atomic chunk replacement per document
    - Pooled connections with one retry on stale connections
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """
        Initialize the store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or StoreConfig(
            embedding_dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", "1536")),
        )
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/case_intel"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        from psycopg2.extras import RealDictCursor

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                conn = self._pool.getconn()
                try:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                finally:
                    self._pool.putconn(conn)
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                self._conn.autocommit = False
                with self._conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                self._conn.commit()
                logger.info("Connected to PostgreSQL with pgvector (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a connection from the pool, or the single connection."""
        if not self._conn and not self._pool:
            self.connect()

        if self._pool:
            return self._pool.getconn()

        if self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()
        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    @contextmanager
    def get_connection(self):
        """
        Context manager for a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._get_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                if self._pool:
                    self._pool.putconn(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    if not self._pool:
                        self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        docs = self.config.documents_table
        chunks = self.config.chunks_table

        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS {docs} (
            id UUID PRIMARY KEY,
            case_id UUID NOT NULL,
            owner_id TEXT,
            file_name TEXT NOT NULL,
            storage_path TEXT,
            mime_type TEXT,
            category TEXT,
            subtype TEXT,
            confidence INT,
            metadata JSONB DEFAULT '{{}}',
            needs_review BOOLEAN DEFAULT FALSE,
            document_date DATE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS {chunks} (
            id UUID PRIMARY KEY,
            document_id UUID NOT NULL REFERENCES {docs}(id) ON DELETE CASCADE,
            case_id UUID NOT NULL,
            owner_id TEXT,
            chunk_index INT NOT NULL,
            content TEXT NOT NULL,
            page_number INT,
            token_count INT,
            embedding_model VARCHAR(64),
            embedding VECTOR({self.config.embedding_dimensions}),
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_documents_case ON {docs}(case_id);
        CREATE INDEX IF NOT EXISTS idx_documents_category ON {docs}(case_id, category);
        CREATE INDEX IF NOT EXISTS idx_chunks_document ON {chunks}(document_id, chunk_index);
        CREATE INDEX IF NOT EXISTS idx_chunks_case ON {chunks}(case_id);
        CREATE INDEX IF NOT EXISTS idx_chunks_embedding
            ON {chunks} USING hnsw (embedding vector_cosine_ops);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()
            logger.info("Schema initialized successfully")

        self._execute_with_retry(_op, "initialize_schema")

    # =========================================================================
    # Documents
    # =========================================================================

    def upsert_document(self, document: Document) -> None:
        """Insert or update a document record."""
        sql = f"""
        INSERT INTO {self.config.documents_table}
            (id, case_id, owner_id, file_name, storage_path, mime_type,
             category, subtype, confidence, metadata, needs_review, document_date)
        VALUES
            (%s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
            file_name = EXCLUDED.file_name,
            storage_path = EXCLUDED.storage_path,
            mime_type = EXCLUDED.mime_type,
            document_date = EXCLUDED.document_date
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    document.id,
                    document.case_id,
                    document.owner_id,
                    document.file_name,
                    document.storage_path,
                    document.mime_type,
                    document.category,
                    document.subtype,
                    document.confidence,
                    json.dumps(document.metadata or {}),
                    document.needs_review,
                    document.document_date,
                ))
                conn.commit()

        self._execute_with_retry(_op, "upsert_document")

    def get_document(self, document_id: str) -> Optional[Document]:
        sql = f"SELECT * FROM {self.config.documents_table} WHERE id = %s::uuid"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                row = cur.fetchone()
            conn.commit()
            return Document.from_row(dict(row)) if row else None

        return self._execute_with_retry(_op, "get_document")

    def list_documents(self, case_id: str) -> list[Document]:
        sql = f"""
        SELECT * FROM {self.config.documents_table}
        WHERE case_id = %s::uuid
        ORDER BY created_at, id
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (case_id,))
                rows = cur.fetchall()
            conn.commit()
            return [Document.from_row(dict(r)) for r in rows]

        return self._execute_with_retry(_op, "list_documents")

    def update_classification(
        self,
        document_id: str,
        category: str,
        subtype: str,
        confidence: int,
        metadata: dict,
        needs_review: bool,
    ) -> None:
        """Overwrite a document's classification (idempotent)."""
        sql = f"""
        UPDATE {self.config.documents_table}
        SET category = %s, subtype = %s, confidence = %s, metadata = %s, needs_review = %s
        WHERE id = %s::uuid
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    category, subtype, confidence, json.dumps(metadata or {}),
                    needs_review, document_id,
                ))
                updated = cur.rowcount
                conn.commit()
            if not updated:
                logger.warning(f"update_classification: document {document_id} not found")

        self._execute_with_retry(_op, "update_classification")

    # =========================================================================
    # Chunks
    # =========================================================================

    def has_chunks(self, document_id: str) -> bool:
        sql = f"SELECT 1 FROM {self.config.chunks_table} WHERE document_id = %s::uuid LIMIT 1"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                row = cur.fetchone()
            conn.commit()
            return row is not None

        return self._execute_with_retry(_op, "has_chunks")

    def replace_document_chunks(self, document_id: str, chunks: list) -> int:
        """
        Delete a document's chunks and insert the new set in one transaction.

        Args:
            document_id: Owning document
            chunks: indexer.Chunk objects with embeddings

        Returns:
            Number of chunks inserted
        """
        from psycopg2.extras import execute_values

        delete_sql = f"DELETE FROM {self.config.chunks_table} WHERE document_id = %s::uuid"
        insert_sql = f"""
        INSERT INTO {self.config.chunks_table}
            (id, document_id, case_id, owner_id, chunk_index, content,
             page_number, token_count, embedding_model, embedding)
        VALUES %s
        """
        values = [
            (
                chunk.id,
                chunk.document_id,
                chunk.case_id,
                chunk.owner_id,
                chunk.chunk_index,
                chunk.content,
                chunk.page_number,
                chunk.token_count,
                chunk.embedding_model,
                chunk.embedding,
            )
            for chunk in chunks
        ]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(delete_sql, (document_id,))
                removed = cur.rowcount
                if values:
                    execute_values(
                        cur,
                        insert_sql,
                        values,
                        template="(%s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s::vector)",
                        page_size=500,
                    )
                conn.commit()
            logger.info(
                f"Replaced chunks for {document_id}: removed {removed}, inserted {len(values)}"
            )
            return len(values)

        return self._execute_with_retry(_op, "replace_document_chunks")

    def get_document_chunks(self, document_id: str) -> list[dict]:
        sql = f"""
        SELECT id, chunk_index, content, page_number, token_count, embedding_model
        FROM {self.config.chunks_table}
        WHERE document_id = %s::uuid
        ORDER BY chunk_index
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (document_id,))
                rows = cur.fetchall()
            conn.commit()
            return [dict(r) for r in rows]

        return self._execute_with_retry(_op, "get_document_chunks")

    # =========================================================================
    # Retrieval candidates
    # =========================================================================

    def search_filenames(
        self,
        case_id: str,
        terms: list[str],
        filters=None,
        limit: int = 50,
    ) -> list[Document]:
        """Classified documents whose file name contains any term."""
        if not terms:
            return []
        filter_sql, filter_params = _filter_clause(filters)
        sql = f"""
        SELECT d.* FROM {self.config.documents_table} d
        WHERE d.case_id = %s::uuid
          AND d.category IS NOT NULL
          AND d.file_name ILIKE ANY(%s)
          {filter_sql}
        ORDER BY d.created_at DESC
        LIMIT %s
        """
        params = [case_id, _like_patterns(terms)] + filter_params + [limit]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [Document.from_row(dict(r)) for r in rows]

        return self._execute_with_retry(_op, "search_filenames")

    def search_chunk_content(
        self,
        case_id: str,
        terms: list[str],
        filters=None,
        limit: int = 50,
    ) -> list[ChunkHit]:
        """Chunks whose content contains any term, joined to their document."""
        if not terms:
            return []
        filter_sql, filter_params = _filter_clause(filters)
        sql = f"""
        SELECT c.id AS chunk_id, c.chunk_index, c.content, c.page_number, {_DOCUMENT_COLUMNS}
        FROM {self.config.chunks_table} c
        JOIN {self.config.documents_table} d ON d.id = c.document_id
        WHERE c.case_id = %s::uuid
          AND c.content ILIKE ANY(%s)
          {filter_sql}
        ORDER BY d.id, c.chunk_index
        LIMIT %s
        """
        params = [case_id, _like_patterns(terms)] + filter_params + [limit]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [
                ChunkHit(
                    chunk_id=str(r["chunk_id"]),
                    chunk_index=r["chunk_index"],
                    content=r["content"],
                    page_number=r["page_number"],
                    document=_document_from_joined_row(dict(r)),
                )
                for r in rows
            ]

        return self._execute_with_retry(_op, "search_chunk_content")

    def semantic_search(
        self,
        case_id: str,
        query_embedding: list[float],
        min_similarity: float = 0.7,
        filters=None,
        limit: int = 50,
    ) -> list[ChunkHit]:
        """Chunks with cosine similarity >= min_similarity, best first."""
        filter_sql, filter_params = _filter_clause(filters)
        sql = f"""
        SELECT c.id AS chunk_id, c.chunk_index, c.content, c.page_number, {_DOCUMENT_COLUMNS},
               1 - (c.embedding <=> %s::vector) AS similarity
        FROM {self.config.chunks_table} c
        JOIN {self.config.documents_table} d ON d.id = c.document_id
        WHERE c.case_id = %s::uuid
          AND 1 - (c.embedding <=> %s::vector) >= %s
          {filter_sql}
        ORDER BY c.embedding <=> %s::vector
        LIMIT %s
        """
        params = (
            [query_embedding, case_id, query_embedding, min_similarity]
            + filter_params
            + [query_embedding, limit]
        )

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [
                ChunkHit(
                    chunk_id=str(r["chunk_id"]),
                    chunk_index=r["chunk_index"],
                    content=r["content"],
                    page_number=r["page_number"],
                    similarity=float(r["similarity"]),
                    document=_document_from_joined_row(dict(r)),
                )
                for r in rows
            ]

        return self._execute_with_retry(_op, "semantic_search")
