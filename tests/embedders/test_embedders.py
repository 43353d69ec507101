"""
Unit tests for semantic_index.embedders

HTTP and the OpenAI SDK are mocked throughout; retries never sleep.
"""

from __future__ import annotations

import sys
from unittest.mock import MagicMock, patch

import pytest


def _response(payload, status=200):
    resp = MagicMock()
    resp.json.return_value = payload
    if status >= 400:
        import requests
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status} Client Error"
        )
    else:
        resp.raise_for_status.return_value = None
    return resp


class TestOllamaEmbedder:
    def test_embed_posts_to_api_embed(self):
        from semantic_index.embedders import OllamaEmbedder
        emb = OllamaEmbedder("http://localhost:11434/api/generate", "nomic-embed-text")
        with patch("semantic_index.embedders.ollama.requests.post",
                   return_value=_response({"embeddings": [[0.1, 0.2, 0.3]]})) as post:
            vec = emb.embed("def f(): pass")
        url = post.call_args[0][0]
        assert url == "http://localhost:11434/api/embed"
        assert post.call_args[1]["json"] == {"model": "nomic-embed-text", "input": "def f(): pass"}
        assert vec.tolist() == pytest.approx([0.1, 0.2, 0.3])

    def test_model_version_default_and_mismatch(self):
        from semantic_index.embedders import OllamaEmbedder
        from semantic_index.errors import ModelVersionMismatch
        emb = OllamaEmbedder("http://localhost:11434", "nomic-embed-text")
        assert emb.model_version == "ollama:nomic-embed-text"
        with pytest.raises(ModelVersionMismatch):
            emb("text", "openai:other")

    def test_retries_then_succeeds(self):
        from semantic_index.embedders import OllamaEmbedder
        emb = OllamaEmbedder("http://localhost:11434", "m", max_retries=3, retry_delay=0.01)
        responses = [_response({}, status=500), _response({"embeddings": [[1.0]]})]
        with patch("semantic_index.embedders.ollama.requests.post", side_effect=responses), \
                patch("semantic_index.embedders.base.time.sleep") as sleep:
            vec = emb("x", emb.model_version)
        assert vec.tolist() == [1.0]
        assert sleep.call_count == 1

    def test_exhausted_retries_raise_compute_failed(self):
        from semantic_index.embedders import OllamaEmbedder
        from semantic_index.errors import ComputeFailed
        emb = OllamaEmbedder("http://localhost:11434", "m", max_retries=3, retry_delay=1.0)
        with patch("semantic_index.embedders.ollama.requests.post",
                   return_value=_response({}, status=429)), \
                patch("semantic_index.embedders.base.time.sleep") as sleep:
            with pytest.raises(ComputeFailed):
                emb.embed("x")
        assert sleep.call_count == 2
        # 429 doubles the wait: 2s then 4s, plus at most 10% jitter
        waits = [c[0][0] for c in sleep.call_args_list]
        assert 2.0 <= waits[0] <= 2.2
        assert 4.0 <= waits[1] <= 4.4

    def test_empty_embedding_retried(self):
        from semantic_index.embedders import OllamaEmbedder
        from semantic_index.errors import ComputeFailed
        emb = OllamaEmbedder("http://localhost:11434", "m", max_retries=2, retry_delay=0.0)
        with patch("semantic_index.embedders.ollama.requests.post",
                   return_value=_response({"embeddings": []})), \
                patch("semantic_index.embedders.base.time.sleep"):
            with pytest.raises(ComputeFailed):
                emb.embed("x")

    def test_wrong_dimension_fails_without_retry(self):
        from semantic_index.embedders import OllamaEmbedder
        from semantic_index.errors import ComputeFailed
        emb = OllamaEmbedder("http://localhost:11434", "m", dimension=4, max_retries=3)
        with patch("semantic_index.embedders.ollama.requests.post",
                   return_value=_response({"embeddings": [[1.0, 2.0]]})) as post, \
                patch("semantic_index.embedders.base.time.sleep"):
            with pytest.raises(ComputeFailed):
                emb.embed("x")
        assert post.call_count == 1


class TestOpenAIEmbedder:
    def test_embed_uses_sdk_client(self):
        from semantic_index.embedders import OpenAIEmbedder
        fake_openai = MagicMock()
        item = MagicMock()
        item.embedding = [0.5, 0.5]
        fake_openai.OpenAI.return_value.embeddings.create.return_value.data = [item]
        emb = OpenAIEmbedder("https://api.openai.com/v1/", "text-embedding-3-small", "sk-test")
        with patch.dict(sys.modules, {"openai": fake_openai}):
            vec = emb.embed("query")
        assert vec.tolist() == [0.5, 0.5]
        fake_openai.OpenAI.assert_called_once_with(
            api_key="sk-test", base_url="https://api.openai.com/v1",
        )
        create = fake_openai.OpenAI.return_value.embeddings.create
        create.assert_called_once_with(model="text-embedding-3-small", input=["query"])

    def test_missing_api_key(self):
        from semantic_index.embedders import OpenAIEmbedder
        from semantic_index.errors import ComputeFailed
        emb = OpenAIEmbedder("https://api.openai.com/v1", "m", "", max_retries=1)
        with patch.dict(sys.modules, {"openai": MagicMock()}):
            with pytest.raises(ComputeFailed) as info:
                emb.embed("x")
        assert "OPENAI_API_KEY" in info.value.reason


class TestCreateEmbedder:
    def test_selects_provider(self):
        from semantic_index.config import Config
        from semantic_index.embedders import OllamaEmbedder, OpenAIEmbedder, create_embedder
        cfg = Config({"embedding_provider": "ollama", "embedding_dimension": 8})
        emb = create_embedder(cfg)
        assert isinstance(emb, OllamaEmbedder)
        assert emb.dimension == 8
        assert emb.model_version == cfg.MODEL_VERSION

        cfg = Config({"embedding_provider": "openai", "embedding_model": "text-embedding-3-small"})
        assert isinstance(create_embedder(cfg), OpenAIEmbedder)

    def test_unknown_provider(self):
        from semantic_index.config import Config
        from semantic_index.embedders import create_embedder
        with pytest.raises(ValueError):
            create_embedder(Config({"embedding_provider": "carrier-pigeon"}))
