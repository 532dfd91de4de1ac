"""Near-duplicate lookup against the indexed FAQ base."""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from knowledge_pipeline.faqs.models import faq_text
from knowledge_pipeline.vectorstore.client import ChromaClient
from knowledge_pipeline.vectorstore.embeddings import BaseEmbeddings, get_embeddings

logger = logging.getLogger(__name__)


@dataclass
class SimilarityMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def faq_id(self) -> int | None:
        value = self.metadata.get("faq_id", self.id)
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class SimilarityIndex(Protocol):
    """Vector search over FAQs. Eventually consistent with the database."""

    async def find_similar(self, text: str, top_k: int) -> list[SimilarityMatch]: ...

    async def index_faq(self, faq) -> None: ...

    async def remove_faq(self, faq_id: int) -> None: ...

    async def check_health(self) -> bool: ...


class ChromaSimilarityIndex:
    """SimilarityIndex over a ChromaDB collection in cosine space.

    Scores are 1 - cosine distance, clipped to [0, 1], best first.
    """

    def __init__(self, client: ChromaClient | None = None, embeddings: BaseEmbeddings | None = None):
        self.client = client or ChromaClient()
        self.embeddings = embeddings or get_embeddings()

    async def find_similar(self, text: str, top_k: int) -> list[SimilarityMatch]:
        embedding = await self.embeddings.embed_single(text)
        results = await self.client.query(embedding, n_results=top_k)

        ids = (results.get("ids") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0] or [{}] * len(ids)

        matches = [
            SimilarityMatch(id=match_id, score=min(1.0, max(0.0, 1.0 - distance)), metadata=metadata or {})
            for match_id, distance, metadata in zip(ids, distances, metadatas)
        ]
        return sorted(matches, key=lambda m: m.score, reverse=True)

    async def index_faq(self, faq) -> None:
        text = faq_text(faq.question, faq.answer)
        embedding = await self.embeddings.embed_single(text)
        await self.client.upsert(
            ids=[str(faq.id)],
            embeddings=[embedding],
            documents=[text],
            metadatas=[{"faq_id": faq.id, "category": faq.category, "status": faq.status}],
        )
        logger.debug(f"Indexed FAQ {faq.id}")

    async def remove_faq(self, faq_id: int) -> None:
        await self.client.delete([str(faq_id)])

    async def check_health(self) -> bool:
        return await self.client.check_health()
