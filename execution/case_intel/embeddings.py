"""
Embedding Service

Provides embeddings via OpenAI (text-embedding-3-small, default) or
Voyage AI. The same service instance must be used for chunk indexing and
query embedding; similarity between vectors from different models is
meaningless, which is why every stored chunk records its model name.

Architecture:
    BaseEmbeddingService  -- shared caching, batching, embed_documents, embed_query
        OpenAIEmbeddingService    -- OpenAI embeddings API
        VoyageEmbeddingService    -- Voyage AI (voyage-law-2)
"""

import os
import json
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai" or "voyage"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    max_tokens_per_batch: int = 100000
    chars_per_token: float = 4.0
    cache_dir: Optional[str] = None
    use_cache: bool = True


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Provides shared functionality:
    - Batched embedding with progress logging
    - Memory and file-based caching
    - Document vs query input type distinction

    Subclasses implement:
    - _init_client(): Initialize the provider-specific API client
    - _call_api(texts, input_type): Return one vector per text
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache = {}

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _call_api(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _call_api()")

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batches = []
        current_batch = []
        current_tokens = 0
        cpt = self.config.chars_per_token

        for text in texts:
            est_tokens = len(text) / cpt
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def _require_client(self) -> None:
        if not self._client:
            raise RuntimeError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for document chunks.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, one per input text
        """
        if not texts:
            return []
        self._require_client()

        batches = self._create_batches(texts)
        logger.info(
            f"Embedding {len(texts)} chunks in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(self._embed_batch(batch, input_type=self._doc_input_type))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return embeddings

    def embed_query(self, query: str) -> list[float]:
        """Generate (cached) embedding for a search query."""
        self._require_client()

        result = self._embed_batch([query], input_type=self._query_input_type)
        return result[0] if result else []

    def _embed_batch(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Embed a batch, serving what we can from cache."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._get_cached(self._get_cache_key(text, input_type))
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            try:
                vectors = self._call_api(uncached_texts, input_type)
            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise

            if len(vectors) != len(uncached_texts):
                raise ValueError(
                    f"{self._provider_name} returned {len(vectors)} embeddings "
                    f"for {len(uncached_texts)} texts"
                )

            for idx, embedding in zip(uncached_indices, vectors):
                self._set_cached(self._get_cache_key(texts[idx], input_type), embedding)
                results.append((idx, embedding))

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _get_cache_key(self, text: str, input_type: str) -> str:
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                        self._cache[key] = embedding
                        return embedding
                except Exception as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except Exception as e:
                logger.warning(f"Failed to cache embedding: {e}")


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using OpenAI's embeddings API.

    text-embedding-3-small: 1536 dimensions, symmetric (no input types).
    """

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        api_key = os.getenv("OPENAI_API_KEY")

        if not api_key:
            logger.warning(
                "OPENAI_API_KEY not found. Embeddings will fail. "
                "Set the environment variable or use a different provider."
            )
            return

        from openai import OpenAI
        self._client = OpenAI(api_key=api_key)
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _call_api(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embeddings.create(
            model=self.config.model,
            input=texts,
        )
        ordered = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in ordered]


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI's voyage-law-2 model.

    voyage-law-2 provides 1024-dimensional embeddings tuned for legal text,
    with different input types for documents vs queries.
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        api_key = os.getenv("VOYAGE_API_KEY")

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your API key at https://dash.voyageai.com/"
            )
            return

        import voyageai
        self._client = voyageai.Client(api_key=api_key)
        logger.info(f"Voyage AI client initialized with model {self.config.model}")

    def _call_api(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(
            texts=texts,
            model=self.config.model,
            input_type=input_type,
        )
        return response.embeddings


def get_embedding_service(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    cache_dir: Optional[str] = None,
) -> BaseEmbeddingService:
    """
    Factory function to get the configured embedding service.

    Args:
        provider: "openai" (default) or "voyage"; falls back to EMBEDDING_PROVIDER
        model: Model name override; falls back to EMBEDDING_MODEL

    Returns:
        Configured embedding service
    """
    provider = (provider or os.getenv("EMBEDDING_PROVIDER", "openai")).lower()
    model = model or os.getenv("EMBEDDING_MODEL")

    if provider == "voyage":
        config = EmbeddingConfig(
            provider="voyage",
            model=model or "voyage-law-2",
            dimensions=1024,
            batch_size=128,
            chars_per_token=2.0,
            cache_dir=cache_dir,
        )
        return VoyageEmbeddingService(config)

    if provider != "openai":
        raise ValueError(f"Unknown embedding provider: {provider}")

    config = EmbeddingConfig(
        provider="openai",
        model=model or "text-embedding-3-small",
        dimensions=3072 if model == "text-embedding-3-large" else 1536,
        cache_dir=cache_dir,
    )
    return OpenAIEmbeddingService(config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()
    print(f"Using embedding model: {service.model_name}")

    query = " ".join(sys.argv[1:]) or "bank statements for January 2024"
    embedding = service.embed_query(query)
    print(f"Query: {query}")
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
