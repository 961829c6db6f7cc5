"""
Optional retrieval of context snippets for the chat prompt.

Retrieval is an enrichment step: the orchestrator runs it through
``best_effort`` so an outage, a missing collection or a malformed response
degrades to "no context" instead of failing the chat request.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, List, Sequence, TypeVar

from openai import AsyncOpenAI

from ..settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTEXT_SEPARATOR = "\n---\n"


async def best_effort(operation: Awaitable[T], default: T, what: str = "operation") -> T:
    """Await ``operation``; on any failure log it and return ``default``."""
    try:
        return await operation
    except Exception as e:
        logger.warning("%s failed, continuing without it: %s", what, e)
        return default


class Retriever(ABC):
    """Interface for context retrieval."""

    @abstractmethod
    async def query(self, text: str) -> List[str]:
        """Return zero or more context snippets relevant to ``text``."""
        pass


class ChromaRetriever(Retriever):
    """
    Embeds the query with OpenAI and searches a Chroma collection.

    Snippet text is read from the ``text`` metadata field of each match,
    falling back to the stored document.
    """

    def __init__(
        self,
        embeddings_client: AsyncOpenAI,
        collection: Any,
        embedding_model: str = "text-embedding-3-small",
        top_k: int = 3,
    ):
        self.embeddings_client = embeddings_client
        self.collection = collection
        self.embedding_model = embedding_model
        self.top_k = top_k

    async def embed_query(self, text: str) -> List[float]:
        response = await self.embeddings_client.embeddings.create(
            model=self.embedding_model,
            input=[text],
        )
        if not response.data:
            return []
        return list(response.data[0].embedding)

    async def query(self, text: str) -> List[str]:
        vector = await self.embed_query(text)
        if not vector:
            logger.info("Empty query embedding; no context retrieved")
            return []

        results = self.collection.query(
            query_embeddings=[vector],
            n_results=self.top_k,
        )

        # Chroma returns lists of lists (one per query embedding)
        metadatas = (results.get("metadatas") or [[]])[0] or []
        documents = (results.get("documents") or [[]])[0] or []

        snippets: List[str] = []
        for idx, metadata in enumerate(metadatas):
            snippet = (metadata or {}).get("text") or ""
            if not snippet and idx < len(documents):
                snippet = documents[idx] or ""
            if snippet:
                snippets.append(snippet)

        logger.debug("Retrieved %d context snippets", len(snippets))
        return snippets


def join_snippets(snippets: Sequence[str]) -> str:
    return CONTEXT_SEPARATOR.join(s for s in snippets if s)


def build_retriever(settings: Settings) -> Retriever | None:
    """Return a Chroma retriever when a collection is configured, else None."""
    if not settings.chroma_collection:
        return None
    if not settings.openai_api_key:
        logger.warning("CHROMA_COLLECTION is set but OPENAI_API_KEY is not; retrieval disabled")
        return None

    import chromadb

    if settings.chroma_host:
        client = chromadb.HttpClient(host=settings.chroma_host, port=settings.chroma_port)
    else:
        client = chromadb.PersistentClient(path=str(settings.chroma_path))
    collection = client.get_or_create_collection(name=settings.chroma_collection)

    logger.info("Retrieval enabled: collection=%s", settings.chroma_collection)
    return ChromaRetriever(
        embeddings_client=AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        ),
        collection=collection,
        embedding_model=settings.embedding_model,
        top_k=settings.retrieval_top_k,
    )
