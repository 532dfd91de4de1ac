"""ChromaDB client for the FAQ collection."""

import asyncio
import logging
from typing import Any

import chromadb
from chromadb.config import Settings as ChromaSettings

from knowledge_pipeline.config import settings

logger = logging.getLogger(__name__)


class ChromaClient:
    """Thin async wrapper over a ChromaDB HTTP collection (cosine space).

    The chromadb HTTP client is synchronous; every call is pushed to the
    default executor so it never blocks the event loop.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        use_ssl: bool | None = None,
        token: str | None = None,
        collection_name: str | None = None,
    ):
        self.host = host or settings.CHROMA_HOST
        self.port = port or settings.CHROMA_PORT
        self.use_ssl = use_ssl if use_ssl is not None else settings.CHROMA_USE_SSL
        self.token = token or settings.CHROMA_TOKEN
        self.collection_name = collection_name or settings.FAQ_COLLECTION
        self._client = None
        self._collection = None

    def _get_client(self):
        if self._client is None:
            protocol = "https" if self.use_ssl else "http"
            logger.info(f"Connecting to ChromaDB at {protocol}://{self.host}:{self.port}")
            client_kwargs: dict[str, Any] = {
                "host": self.host,
                "port": self.port,
                "ssl": self.use_ssl,
                "settings": ChromaSettings(anonymized_telemetry=False),
            }
            if self.token:
                client_kwargs["headers"] = {"Authorization": f"Bearer {self.token}"}
            self._client = chromadb.HttpClient(**client_kwargs)
        return self._client

    def _get_collection(self):
        if self._collection is None:
            self._collection = self._get_client().get_or_create_collection(
                name=self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
            logger.info(f"Using collection: {self.collection_name}")
        return self._collection

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict[str, Any]],
    ) -> None:
        collection = self._get_collection()
        await self._run(
            lambda: collection.upsert(
                ids=ids, embeddings=embeddings, documents=documents, metadatas=metadatas
            )
        )
        logger.debug(f"Upserted {len(ids)} entries into {self.collection_name}")

    async def delete(self, ids: list[str]) -> None:
        collection = self._get_collection()
        await self._run(lambda: collection.delete(ids=ids))

    async def query(self, query_embedding: list[float], n_results: int = 5) -> dict[str, Any]:
        """Nearest neighbours with ids, documents, metadatas and distances."""
        collection = self._get_collection()
        return await self._run(
            lambda: collection.query(
                query_embeddings=[query_embedding],
                n_results=n_results,
                include=["documents", "metadatas", "distances"],
            )
        )

    async def count(self) -> int:
        collection = self._get_collection()
        return await self._run(collection.count)

    async def check_health(self) -> bool:
        try:
            await self._run(self._get_client().heartbeat)
        except Exception as e:
            logger.error(f"ChromaDB health check failed: {e}")
            return False
        return True
