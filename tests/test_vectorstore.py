"""Tests for the vectorstore module and the ChromaDB similarity index."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from knowledge_pipeline.faqs.similarity import ChromaSimilarityIndex, SimilarityMatch
from knowledge_pipeline.vectorstore.client import ChromaClient
from knowledge_pipeline.vectorstore.embeddings import (
    BaseEmbeddings,
    OllamaEmbeddings,
    SentenceTransformerEmbeddings,
    get_available_embedding_providers,
    get_embeddings,
)


class TestEmbeddings:
    """Tests for embedding providers."""

    def test_get_available_providers(self):
        providers = get_available_embedding_providers()
        assert "sentence-transformer" in providers
        assert "ollama" in providers

    def test_get_embeddings_sentence_transformer(self):
        """The model is not loaded until the first embed call."""
        embeddings = get_embeddings("sentence-transformer")
        assert isinstance(embeddings, SentenceTransformerEmbeddings)
        assert embeddings._model is None

    def test_get_embeddings_unknown_raises(self):
        with pytest.raises(ValueError) as exc_info:
            get_embeddings("unknown_provider")
        assert "unknown_provider" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_embed_single(self):
        class Fixed(BaseEmbeddings):
            provider_name = "fixed"

            async def embed(self, texts):
                return [[float(len(t))] for t in texts]

        assert await Fixed().embed_single("four") == [4.0]

    @pytest.mark.asyncio
    async def test_ollama_embeds_batch_in_one_call(self):
        response = MagicMock()
        response.json.return_value = {"embeddings": [[0.1], [0.2]]}
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = AsyncMock()
            mock_client.post = AsyncMock(return_value=response)
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=None)
            mock_client_class.return_value = mock_client

            result = await OllamaEmbeddings(base_url="http://ollama:11434", model="mxbai").embed(["a", "b"])

        assert result == [[0.1], [0.2]]
        mock_client.post.assert_awaited_once_with(
            "http://ollama:11434/api/embed", json={"model": "mxbai", "input": ["a", "b"]}
        )


class TestChromaClient:
    """Tests for ChromaDB client."""

    def test_init_defaults(self):
        client = ChromaClient()
        assert client.host == "chromadb"
        assert client.port == 8000
        assert client.collection_name == "faqs"

    @pytest.mark.asyncio
    async def test_query_runs_against_collection(self):
        client = ChromaClient(collection_name="test-faqs")
        collection = MagicMock()
        collection.query.return_value = {"ids": [["1"]], "distances": [[0.1]]}
        client._collection = collection

        result = await client.query([0.1, 0.2], n_results=3)

        assert result["ids"] == [["1"]]
        collection.query.assert_called_once_with(
            query_embeddings=[[0.1, 0.2]],
            n_results=3,
            include=["documents", "metadatas", "distances"],
        )

    @pytest.mark.asyncio
    async def test_check_health_failure(self):
        client = ChromaClient()
        client._client = MagicMock()
        client._client.heartbeat.side_effect = ConnectionError("refused")

        assert await client.check_health() is False


@pytest.fixture
def chroma():
    client = MagicMock(spec=ChromaClient)
    client.query = AsyncMock()
    client.upsert = AsyncMock()
    client.delete = AsyncMock()
    client.check_health = AsyncMock(return_value=True)
    return client


@pytest.fixture
def embeddings():
    embeddings = MagicMock(spec=BaseEmbeddings)
    embeddings.embed_single = AsyncMock(return_value=[0.5, 0.5])
    return embeddings


class TestChromaSimilarityIndex:
    @pytest.mark.asyncio
    async def test_scores_from_distances(self, chroma, embeddings):
        """Scores are 1 - distance, clipped and sorted best first."""
        chroma.query.return_value = {
            "ids": [["7", "3", "9"]],
            "distances": [[0.4, 0.05, 1.3]],
            "metadatas": [[{"faq_id": 7}, {"faq_id": 3}, {"faq_id": 9}]],
        }
        index = ChromaSimilarityIndex(chroma, embeddings)

        matches = await index.find_similar("Q: reset? A: settings", top_k=3)

        assert [m.faq_id for m in matches] == [3, 7, 9]
        assert [m.score for m in matches] == pytest.approx([0.95, 0.6, 0.0])
        chroma.query.assert_awaited_once_with([0.5, 0.5], n_results=3)

    @pytest.mark.asyncio
    async def test_empty_collection(self, chroma, embeddings):
        chroma.query.return_value = {"ids": [[]], "distances": [[]], "metadatas": [[]]}
        assert await ChromaSimilarityIndex(chroma, embeddings).find_similar("x", top_k=5) == []

    @pytest.mark.asyncio
    async def test_index_and_remove(self, chroma, embeddings):
        faq = SimpleNamespace(
            id=12, question="How do I reset?", answer="Use settings", category="accounts", status="approved"
        )
        index = ChromaSimilarityIndex(chroma, embeddings)

        await index.index_faq(faq)
        await index.remove_faq(12)

        kwargs = chroma.upsert.call_args.kwargs
        assert kwargs["ids"] == ["12"]
        assert kwargs["metadatas"] == [{"faq_id": 12, "category": "accounts", "status": "approved"}]
        chroma.delete.assert_awaited_once_with(["12"])


class TestSimilarityMatch:
    def test_faq_id_from_metadata_or_id(self):
        assert SimilarityMatch(id="x", score=1.0, metadata={"faq_id": 4}).faq_id == 4
        assert SimilarityMatch(id="5", score=1.0).faq_id == 5
        assert SimilarityMatch(id="not-a-number", score=1.0).faq_id is None
