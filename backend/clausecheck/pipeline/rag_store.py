"""Vector retrieval over contract chunks.

Two interchangeable backends share one interface:
  - ChromaVectorIndex: persistent ChromaDB collection (cosine space)
  - InMemoryVectorIndex: numpy cosine similarity, process-local

Every search is scoped by tenant_id AND document_id. The scope filter is a
security boundary: a search without both identifiers is rejected.

Scores are similarities (1 - cosine distance): higher is more similar.
"""

import asyncio
import logging

import numpy as np
import chromadb
from chromadb.config import Settings

from clausecheck.config import CHROMA_DIR, CHROMA_COLLECTION, VECTOR_BACKEND
from clausecheck.pipeline.models import Chunk, VectorMatch

logger = logging.getLogger(__name__)

TEXT_PREVIEW_CHARS = 200


def _require_scope(tenant_id: str, document_id: str) -> None:
    if not tenant_id or not document_id:
        raise ValueError("Vector search requires both tenant_id and document_id")


def _build_where_filter(tenant_id: str, document_id: str) -> dict:
    return {"$and": [{"tenant_id": tenant_id}, {"document_id": document_id}]}


class ChromaVectorIndex:
    """Chunk vectors in a single ChromaDB collection, filtered per call.

    Usage:
        index = ChromaVectorIndex()
        index.upsert_chunks("tenant", "doc", chunks, embeddings)
        hits = await index.search(vector, "tenant", "doc", top_k=5)
    """

    def __init__(self, path: str | None = None, collection_name: str = CHROMA_COLLECTION,
                 client=None):
        if client is None:
            client = chromadb.PersistentClient(
                path=path or str(CHROMA_DIR),
                settings=Settings(anonymized_telemetry=False),
            )
        self._client = client
        self.collection_name = collection_name
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    @staticmethod
    def _vector_id(document_id: str, chunk_id: str) -> str:
        return f"{document_id}::{chunk_id}"

    # ── Indexing ──

    def upsert_chunks(
        self,
        tenant_id: str,
        document_id: str,
        chunks: list[Chunk],
        embeddings: list[list[float]],
    ) -> int:
        _require_scope(tenant_id, document_id)
        if not chunks:
            return 0
        if len(chunks) != len(embeddings):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(chunks)} chunks")

        self._collection.upsert(
            ids=[self._vector_id(document_id, c.chunk_id) for c in chunks],
            embeddings=embeddings,
            documents=[c.text for c in chunks],
            metadatas=[
                {
                    "tenant_id": tenant_id,
                    "document_id": document_id,
                    "chunk_id": c.chunk_id,
                    "page_start": c.page_start,
                    "page_end": c.page_end,
                    "text_preview": c.text[:TEXT_PREVIEW_CHARS],
                }
                for c in chunks
            ],
        )
        logger.info(f"ChromaVectorIndex: Indexed {len(chunks)} chunks for document {document_id}")
        return len(chunks)

    # ── Retrieval ──

    def search_sync(
        self,
        embedding: list[float],
        tenant_id: str,
        document_id: str,
        top_k: int,
    ) -> list[VectorMatch]:
        _require_scope(tenant_id, document_id)
        total = self._collection.count()
        if total == 0 or top_k <= 0:
            return []

        results = self._collection.query(
            query_embeddings=[embedding],
            n_results=min(top_k, total),
            where=_build_where_filter(tenant_id, document_id),
            include=["metadatas", "distances"],
        )

        matches: list[VectorMatch] = []
        if results and results.get("metadatas"):
            for meta, dist in zip(results["metadatas"][0], results["distances"][0]):
                matches.append(VectorMatch(
                    chunk_id=meta["chunk_id"],
                    score=1.0 - dist,
                    page_start=int(meta["page_start"]),
                    page_end=int(meta["page_end"]),
                    text_preview=meta.get("text_preview", ""),
                ))
        return matches

    async def search(
        self,
        embedding: list[float],
        tenant_id: str,
        document_id: str,
        top_k: int,
    ) -> list[VectorMatch]:
        return await asyncio.to_thread(self.search_sync, embedding, tenant_id, document_id, top_k)

    # ── Copy / cleanup ──

    def copy_document(self, tenant_id: str, source_document_id: str, target_document_id: str) -> int:
        """Duplicate a document's vectors under another document id (same tenant)."""
        _require_scope(tenant_id, source_document_id)
        _require_scope(tenant_id, target_document_id)
        existing = self._collection.get(
            where=_build_where_filter(tenant_id, source_document_id),
            include=["embeddings", "documents", "metadatas"],
        )
        metadatas = existing.get("metadatas") or []
        if not metadatas:
            return 0

        new_metadatas = [{**meta, "document_id": target_document_id} for meta in metadatas]
        self._collection.upsert(
            ids=[self._vector_id(target_document_id, meta["chunk_id"]) for meta in metadatas],
            embeddings=[[float(x) for x in emb] for emb in existing["embeddings"]],
            documents=existing["documents"],
            metadatas=new_metadatas,
        )
        logger.info(
            f"ChromaVectorIndex: Copied {len(metadatas)} vectors "
            f"from {source_document_id} to {target_document_id}"
        )
        return len(metadatas)

    def delete_document(self, tenant_id: str, document_id: str) -> None:
        _require_scope(tenant_id, document_id)
        self._collection.delete(where=_build_where_filter(tenant_id, document_id))
        logger.info(f"ChromaVectorIndex: Deleted vectors for document {document_id}")


class InMemoryVectorIndex:
    """Process-local index with the same interface as ChromaVectorIndex."""

    def __init__(self):
        # (tenant_id, document_id) → list of (chunk, unit vector)
        self._docs: dict[tuple[str, str], list[tuple[Chunk, np.ndarray]]] = {}

    @staticmethod
    def _normalize(vector) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(arr))
        return arr / norm if norm > 0 else arr

    def upsert_chunks(
        self,
        tenant_id: str,
        document_id: str,
        chunks: list[Chunk],
        embeddings: list[list[float]],
    ) -> int:
        _require_scope(tenant_id, document_id)
        if len(chunks) != len(embeddings):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(chunks)} chunks")
        entries = {c.chunk_id: (c, v) for c, v in self._docs.get((tenant_id, document_id), [])}
        for chunk, vector in zip(chunks, embeddings):
            entries[chunk.chunk_id] = (chunk, self._normalize(vector))
        self._docs[(tenant_id, document_id)] = list(entries.values())
        return len(chunks)

    async def search(
        self,
        embedding: list[float],
        tenant_id: str,
        document_id: str,
        top_k: int,
    ) -> list[VectorMatch]:
        _require_scope(tenant_id, document_id)
        entries = self._docs.get((tenant_id, document_id), [])
        if not entries or top_k <= 0:
            return []

        query = self._normalize(embedding)
        matrix = np.stack([v for _, v in entries])   # (N, D)
        sims = matrix @ query                          # (N,)
        order = np.argsort(-sims)[:top_k]
        return [
            VectorMatch(
                chunk_id=entries[i][0].chunk_id,
                score=float(sims[i]),
                page_start=entries[i][0].page_start,
                page_end=entries[i][0].page_end,
                text_preview=entries[i][0].text[:TEXT_PREVIEW_CHARS],
            )
            for i in order
        ]

    def copy_document(self, tenant_id: str, source_document_id: str, target_document_id: str) -> int:
        _require_scope(tenant_id, source_document_id)
        _require_scope(tenant_id, target_document_id)
        entries = self._docs.get((tenant_id, source_document_id), [])
        if entries:
            self._docs[(tenant_id, target_document_id)] = list(entries)
        return len(entries)

    def delete_document(self, tenant_id: str, document_id: str) -> None:
        _require_scope(tenant_id, document_id)
        self._docs.pop((tenant_id, document_id), None)


def create_vector_index(backend: str = VECTOR_BACKEND):
    if backend == "memory":
        return InMemoryVectorIndex()
    if backend == "chroma":
        return ChromaVectorIndex()
    raise ValueError(f"Unknown VECTOR_BACKEND: {backend}")
