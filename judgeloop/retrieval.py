"""Per-agent document chunk index with cosine similarity search."""

import logging
import threading
from typing import Optional, Sequence

import numpy as np
from pydantic import BaseModel

import config

from .schemas import AgentDocument, DocumentChunk, RagConfig

logger = logging.getLogger(__name__)


class RetrievedChunk(BaseModel):
    """A chunk returned by a similarity query."""

    chunk_id: str
    document_id: str
    content: str
    chunk_index: int
    similarity: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors (0.0 when either has zero norm)."""
    a_arr = np.asarray(a, dtype=float)
    b_arr = np.asarray(b, dtype=float)
    if a_arr.shape != b_arr.shape:
        raise ValueError(f"Embedding dimension mismatch: {a_arr.shape} vs {b_arr.shape}")
    norm = np.linalg.norm(a_arr) * np.linalg.norm(b_arr)
    if norm == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / norm)


class RetrievalIndex:
    """Stores per-agent document chunks and answers top-K similarity queries.

    Writes replace the agent's document list wholesale, so a query already
    running keeps iterating the snapshot it started with.
    """

    def __init__(self):
        self._documents: dict[str, tuple[AgentDocument, ...]] = {}
        self._lock = threading.Lock()

    def add_document(self, document: AgentDocument) -> None:
        """Add a document, replacing any earlier version with the same id."""
        with self._lock:
            current = self._documents.get(document.agent_id, ())
            kept = tuple(doc for doc in current if doc.id != document.id)
            self._documents[document.agent_id] = kept + (document,)
        logger.debug(
            f"[RAG_INDEXED] AgentID: {document.agent_id} | Document: {document.filename} "
            f"v{document.version} | Chunks: {document.chunk_count}"
        )

    def remove_document(self, agent_id: str, document_id: str) -> bool:
        with self._lock:
            current = self._documents.get(agent_id, ())
            kept = tuple(doc for doc in current if doc.id != document_id)
            self._documents[agent_id] = kept
            return len(kept) != len(current)

    def documents_for(self, agent_id: str) -> tuple[AgentDocument, ...]:
        return self._documents.get(agent_id, ())

    def has_documents(self, agent_id: str) -> bool:
        return any(doc.chunks for doc in self.documents_for(agent_id))

    def query(
        self,
        agent_id: str,
        query_embedding: Sequence[float],
        top_k: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        rag_config: Optional[RagConfig] = None,
    ) -> list[RetrievedChunk]:
        """Return the agent's chunks most similar to ``query_embedding``.

        ``top_k`` and ``similarity_threshold`` default to ``rag_config``.
        Results are ordered by descending similarity, then ascending chunk
        index, then ascending document id. Returns an empty list when no
        chunk clears the threshold.
        """
        rag_config = rag_config or RagConfig()
        top_k = rag_config.top_k if top_k is None else top_k
        if similarity_threshold is None:
            similarity_threshold = rag_config.similarity_threshold
        if top_k <= 0:
            return []

        documents = self.documents_for(agent_id)
        query_vector = np.asarray(query_embedding, dtype=float)

        results = []
        for document in documents:
            for chunk in document.chunks:
                similarity = cosine_similarity(query_vector, chunk.embedding)
                if similarity >= similarity_threshold:
                    results.append(
                        RetrievedChunk(
                            chunk_id=chunk.id,
                            document_id=document.id,
                            content=chunk.content,
                            chunk_index=chunk.chunk_index,
                            similarity=similarity,
                        )
                    )

        results.sort(key=lambda r: (-r.similarity, r.chunk_index, r.document_id))
        logger.debug(
            f"[RAG_QUERY] AgentID: {agent_id} | Documents: {len(documents)} | "
            f"Matches: {len(results)} | TopK: {top_k} | Threshold: {similarity_threshold}"
        )
        return results[:top_k]


def build_context(chunks: Sequence[RetrievedChunk], heading: str = "Reference Guidelines") -> str:
    """Format retrieved chunks as a prompt section ("" when there are none)."""
    if not chunks:
        return ""
    body = "\n\n".join(chunk.content for chunk in chunks)
    return f"## {heading}\n{body}"


def embed_document(
    agent_id: str,
    filename: str,
    chunk_texts: Sequence[str],
    embedder,
    mime_type: str = "text/plain",
    batch_size: int = config.EMBEDDING_BATCH_SIZE,
) -> AgentDocument:
    """Embed pre-split chunk texts into an ``AgentDocument``.

    ``embedder`` must provide ``embed_many(texts) -> list[list[float]]``.
    Texts are embedded in batches to stay under provider rate limits.
    """
    texts = [text for text in chunk_texts if text.strip()]
    chunks = []
    for i in range(0, len(texts), batch_size):
        batch = texts[i:i + batch_size]
        for j, (content, embedding) in enumerate(zip(batch, embedder.embed_many(batch))):
            chunks.append(DocumentChunk(content=content, embedding=embedding, chunk_index=i + j))
    logger.info(f"[DOC_EMBEDDED] AgentID: {agent_id} | File: {filename} | Chunks: {len(chunks)}")
    return AgentDocument(agent_id=agent_id, filename=filename, mime_type=mime_type, chunks=chunks)
