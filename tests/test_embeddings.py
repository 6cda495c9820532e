"""
Tests for execution/case_intel/embeddings.py

Covers: EmbeddingConfig, OpenAIEmbeddingService, VoyageEmbeddingService,
        get_embedding_service() factory, caching behaviour, batching.

All external API calls are mocked.
"""

from types import SimpleNamespace
from unittest.mock import patch, MagicMock

import pytest


def _openai_response(vectors):
    # API may return items out of order; the service sorts by index
    data = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    return SimpleNamespace(data=list(reversed(data)))


def _openai_service(monkeypatch, **config):
    from execution.case_intel.embeddings import EmbeddingConfig, OpenAIEmbeddingService
    monkeypatch.setenv("OPENAI_API_KEY", "fake-key")
    client = MagicMock()
    with patch("openai.OpenAI", return_value=client):
        svc = OpenAIEmbeddingService(EmbeddingConfig(**config))
    return svc, client


# ---------------------------------------------------------------------------
# EmbeddingConfig
# ---------------------------------------------------------------------------

class TestEmbeddingConfig:

    def test_defaults(self):
        from execution.case_intel.embeddings import EmbeddingConfig
        cfg = EmbeddingConfig()
        assert cfg.provider == "openai"
        assert cfg.model == "text-embedding-3-small"
        assert cfg.dimensions == 1536
        assert cfg.use_cache is True
        assert cfg.cache_dir is None


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class TestOpenAIEmbeddingService:

    def test_embed_documents_preserves_order(self, monkeypatch):
        svc, client = _openai_service(monkeypatch, use_cache=False)
        client.embeddings.create.return_value = _openai_response([[0.1], [0.2], [0.3]])

        assert svc.embed_documents(["a", "b", "c"]) == [[0.1], [0.2], [0.3]]
        kwargs = client.embeddings.create.call_args[1]
        assert kwargs["model"] == "text-embedding-3-small"
        assert kwargs["input"] == ["a", "b", "c"]

    def test_embed_documents_empty_list(self, monkeypatch):
        svc, client = _openai_service(monkeypatch)
        assert svc.embed_documents([]) == []
        client.embeddings.create.assert_not_called()

    def test_query_is_cached(self, monkeypatch):
        svc, client = _openai_service(monkeypatch)
        client.embeddings.create.return_value = _openai_response([[0.5, 0.5]])

        assert svc.embed_query("bank statements") == [0.5, 0.5]
        assert svc.embed_query("bank statements") == [0.5, 0.5]
        assert client.embeddings.create.call_count == 1

    def test_raises_without_client(self, monkeypatch):
        from execution.case_intel.embeddings import OpenAIEmbeddingService
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        svc = OpenAIEmbeddingService()
        with pytest.raises(RuntimeError, match="OpenAI client not initialized"):
            svc.embed_query("test")

    def test_count_mismatch_raises(self, monkeypatch):
        svc, client = _openai_service(monkeypatch, use_cache=False)
        client.embeddings.create.return_value = _openai_response([[0.1]])
        with pytest.raises(ValueError):
            svc.embed_documents(["a", "b"])

    def test_api_error_propagates(self, monkeypatch):
        svc, client = _openai_service(monkeypatch, use_cache=False)
        client.embeddings.create.side_effect = RuntimeError("429 Too Many Requests")
        with pytest.raises(RuntimeError, match="429"):
            svc.embed_query("test")

    def test_model_name(self, monkeypatch):
        svc, _ = _openai_service(monkeypatch, model="text-embedding-3-large", dimensions=3072)
        assert svc.model_name == "text-embedding-3-large"
        assert svc.dimensions == 3072


# ---------------------------------------------------------------------------
# Voyage
# ---------------------------------------------------------------------------

class TestVoyageEmbeddingService:

    def test_input_types(self, monkeypatch):
        from execution.case_intel.embeddings import EmbeddingConfig, VoyageEmbeddingService
        monkeypatch.setenv("VOYAGE_API_KEY", "fake-key")
        mock_voyage = MagicMock()
        client = mock_voyage.Client.return_value
        client.embed.return_value = SimpleNamespace(embeddings=[[1.0, 0.0]])

        with patch.dict("sys.modules", {"voyageai": mock_voyage}):
            svc = VoyageEmbeddingService(EmbeddingConfig(provider="voyage", model="voyage-law-2", use_cache=False))

        svc.embed_documents(["chunk"])
        assert client.embed.call_args[1]["input_type"] == "document"
        svc.embed_query("query")
        assert client.embed.call_args[1]["input_type"] == "query"

    def test_raises_without_client(self, monkeypatch):
        from execution.case_intel.embeddings import VoyageEmbeddingService
        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
        svc = VoyageEmbeddingService()
        with pytest.raises(RuntimeError, match="Voyage AI client not initialized"):
            svc.embed_documents(["x"])


# ---------------------------------------------------------------------------
# Caching and batching
# ---------------------------------------------------------------------------

class TestCachingAndBatching:

    def test_cache_key_differs_by_input_type(self, monkeypatch):
        svc, _ = _openai_service(monkeypatch)
        assert svc._get_cache_key("x", "document") != svc._get_cache_key("x", "query")
        assert svc._get_cache_key("x", "query") == svc._get_cache_key("x", "query")

    def test_file_cache_round_trip(self, monkeypatch, tmp_path):
        svc, _ = _openai_service(monkeypatch, cache_dir=str(tmp_path))
        svc._set_cached("abc", [0.1, 0.2])
        assert (tmp_path / "abc.json").exists()

        svc._cache.clear()
        assert svc._get_cached("abc") == [0.1, 0.2]

    def test_cache_disabled(self, monkeypatch):
        svc, _ = _openai_service(monkeypatch, use_cache=False)
        svc._set_cached("abc", [0.1])
        assert svc._get_cached("abc") is None

    def test_batches_respect_count_and_tokens(self, monkeypatch):
        svc, _ = _openai_service(monkeypatch, batch_size=2, max_tokens_per_batch=10, chars_per_token=1.0)
        batches = svc._create_batches(["aaaa", "bbbb", "cccc", "dddddddd", "ee"])
        assert batches == [["aaaa", "bbbb"], ["cccc"], ["dddddddd", "ee"]]

    def test_partial_cache_hit_only_sends_uncached(self, monkeypatch):
        svc, client = _openai_service(monkeypatch)
        svc._set_cached(svc._get_cache_key("a", "document"), [9.0])
        client.embeddings.create.return_value = _openai_response([[2.0]])

        assert svc.embed_documents(["a", "b"]) == [[9.0], [2.0]]
        assert client.embeddings.create.call_args[1]["input"] == ["b"]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

class TestGetEmbeddingService:

    def test_openai_by_default(self, monkeypatch):
        from execution.case_intel.embeddings import get_embedding_service, OpenAIEmbeddingService
        monkeypatch.delenv("EMBEDDING_PROVIDER", raising=False)
        monkeypatch.delenv("EMBEDDING_MODEL", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        svc = get_embedding_service()
        assert isinstance(svc, OpenAIEmbeddingService)
        assert svc.model_name == "text-embedding-3-small"

    def test_voyage(self, monkeypatch):
        from execution.case_intel.embeddings import get_embedding_service, VoyageEmbeddingService
        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
        monkeypatch.delenv("EMBEDDING_MODEL", raising=False)
        svc = get_embedding_service(provider="voyage")
        assert isinstance(svc, VoyageEmbeddingService)
        assert svc.dimensions == 1024

    def test_large_model_dimensions(self, monkeypatch):
        from execution.case_intel.embeddings import get_embedding_service
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        svc = get_embedding_service(provider="openai", model="text-embedding-3-large")
        assert svc.dimensions == 3072

    def test_unknown_provider(self):
        from execution.case_intel.embeddings import get_embedding_service
        with pytest.raises(ValueError):
            get_embedding_service(provider="cohere")
