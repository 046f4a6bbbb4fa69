"""Precomputed provision embeddings, built once at startup.

Every provision contributes its canonical wording, each synonym and each
explicit search query. Texts are embedded in provider-sized batches and
regrouped per provision. After ``initialize()`` the cache is read-only and
safe to share across concurrent analyses; there is no invalidation path
short of building a new cache.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Awaitable

from clausecheck.config import EMBED_BATCH_SIZE
from clausecheck.pipeline.models import Provision

logger = logging.getLogger(__name__)

EmbedBatchFn = Callable[[list[str]], Awaitable[list[list[float]]]]


class EmbeddingCacheNotReadyError(RuntimeError):
    """Raised when pre-screening is attempted before the cache is built."""


@dataclass
class ProvisionEmbeddings:
    canonical: list[float]
    synonyms: list[list[float]] = field(default_factory=list)
    search_queries: list[list[float]] = field(default_factory=list)


class ProvisionEmbeddingCache:
    """Read-only store of per-provision query embeddings.

    Usage:
        cache = ProvisionEmbeddingCache()
        await cache.initialize(catalog, embedder.embed_batch)
        cache.get("additional-insured").synonyms
    """

    def __init__(self, batch_size: int = EMBED_BATCH_SIZE):
        self.batch_size = batch_size
        self._entries: dict[str, ProvisionEmbeddings] = {}
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def __len__(self) -> int:
        return len(self._entries)

    async def initialize(self, provisions: list[Provision], embed_batch: EmbedBatchFn) -> None:
        """Embed every provision text. Provider errors propagate (fail fast)."""
        tasks: list[tuple[str, str, int, str]] = []
        for p in provisions:
            tasks.append((p.provision_id, "canonical", 0, p.canonical_wording))
            for i, synonym in enumerate(p.synonyms):
                tasks.append((p.provision_id, "synonym", i, synonym))
            for i, query in enumerate(p.search_queries):
                tasks.append((p.provision_id, "search_query", i, query))

        logger.info(f"Generating embeddings for {len(provisions)} provisions ({len(tasks)} texts)")

        texts = [t[3] for t in tasks]
        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            embedded = await embed_batch(batch)
            if len(embedded) != len(batch):
                raise ValueError(
                    f"Embedding provider returned {len(embedded)} vectors for {len(batch)} texts"
                )
            vectors.extend(embedded)
            logger.info(f"  Embedded {min(i + self.batch_size, len(texts))}/{len(texts)} texts")

        entries: dict[str, ProvisionEmbeddings] = {}
        for (provision_id, kind, _idx, _text), vector in zip(tasks, vectors):
            entry = entries.setdefault(provision_id, ProvisionEmbeddings(canonical=[]))
            if kind == "canonical":
                entry.canonical = vector
            elif kind == "synonym":
                entry.synonyms.append(vector)
            else:
                entry.search_queries.append(vector)

        self._entries = entries
        self._ready = True
        logger.info(f"Provision embeddings cached for {len(entries)} provisions")

    def require_ready(self) -> None:
        if not self._ready:
            raise EmbeddingCacheNotReadyError(
                "Provision embeddings not initialized. Call initialize() first."
            )

    def get(self, provision_id: str) -> ProvisionEmbeddings | None:
        self.require_ready()
        return self._entries.get(provision_id)

    @classmethod
    def from_entries(cls, entries: dict[str, ProvisionEmbeddings]) -> "ProvisionEmbeddingCache":
        """Build a ready cache from precomputed vectors."""
        cache = cls()
        cache._entries = dict(entries)
        cache._ready = True
        return cache
