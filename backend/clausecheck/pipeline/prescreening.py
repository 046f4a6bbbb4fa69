"""Pre-screening: narrow a contract's chunks to a few candidates per provision.

Two independent signals are combined:
  1. Vector similarity: canonical wording, every synonym and every explicit
     search query, each searched against the document's vectors
  2. Exact keyword sweep over ALL chunks of the document

Chunks surfaced by both get match_type "both" and a score boost. The merged
list is sorted, capped per provision, and vector-only hits get their full
text fetched in one batched chunk lookup.

No LLM is involved here. A failed vector query only degrades recall; the
whole pass is bounded by a wall-clock timeout that fails the analysis.
"""

import asyncio
import logging
import time

from clausecheck.config import (
    VECTOR_SIMILARITY_THRESHOLD, TOP_K_PER_PROVISION, TOP_K_PER_SYNONYM,
    KEYWORD_BASE_SCORE, KEYWORD_PATTERN_BONUS, BOTH_MATCH_BOOST,
    ALWAYS_INCLUDE_EXACT_MATCHES, PRESCREENING_TIMEOUT,
)
from clausecheck.pipeline.embedding_cache import ProvisionEmbeddingCache
from clausecheck.pipeline.models import (
    CandidateChunk, CandidateMap, Chunk, Provision, VectorMatch,
    MATCH_BOTH, MATCH_KEYWORD, MATCH_VECTOR,
)

logger = logging.getLogger(__name__)


class PreScreeningTimeoutError(Exception):
    """The pre-screening pass exceeded its wall-clock budget."""

    def __init__(self, timeout: float, stage: str = "pre-screening"):
        super().__init__(f"{stage} timed out after {timeout:g}s")
        self.timeout = timeout
        self.stage = stage


# ═══════════════════════════════════════════════════
# KEYWORD SWEEP
# ═══════════════════════════════════════════════════

def get_search_patterns(provision: Provision) -> list[str]:
    """Exact patterns if the catalog defines them, else synonyms + canonical wording."""
    if provision.exact_patterns:
        return list(provision.exact_patterns)

    patterns = list(provision.synonyms)
    # Only worth matching the full wording when it carries a substantive word
    if any(len(w) > 4 for w in provision.canonical_wording.lower().split()):
        patterns.append(provision.canonical_wording.lower())
    return patterns


def run_exact_keyword_search(
    chunks: list[Chunk],
    provisions: list[Provision],
    base_score: float = KEYWORD_BASE_SCORE,
    pattern_bonus: float = KEYWORD_PATTERN_BONUS,
) -> CandidateMap:
    """Case-insensitive substring match of every provision's patterns over every chunk.

    Score = base + bonus per distinct matched pattern (unclamped here).
    """
    lowered = [(chunk, chunk.text.lower()) for chunk in chunks]
    candidate_map: CandidateMap = {}

    for provision in provisions:
        patterns = list(dict.fromkeys(get_search_patterns(provision)))
        candidates: list[CandidateChunk] = []
        for chunk, lower_text in lowered:
            matched = [p for p in patterns if p.lower() in lower_text]
            if matched:
                candidates.append(CandidateChunk(
                    chunk_id=chunk.chunk_id,
                    page_start=chunk.page_start,
                    page_end=chunk.page_end,
                    score=base_score + len(matched) * pattern_bonus,
                    match_type=MATCH_KEYWORD,
                    keyword_matches=matched,
                    text=chunk.text,
                ))
        candidate_map[provision.provision_id] = candidates

    return candidate_map


# ═══════════════════════════════════════════════════
# MERGE
# ═══════════════════════════════════════════════════

def merge_candidates(
    vector_candidates: CandidateMap,
    keyword_candidates: CandidateMap,
    both_boost: float = BOTH_MATCH_BOOST,
) -> CandidateMap:
    """Union both signals per provision, sorted by score descending.

    A chunk present in both: match_type "both", score = min(1.0, higher
    score + boost), keyword matches inherited, keyword text used if the
    vector hit has none.
    """
    merged: CandidateMap = {}
    provision_ids = list(dict.fromkeys([*vector_candidates, *keyword_candidates]))

    for provision_id in provision_ids:
        by_chunk: dict[str, CandidateChunk] = {}
        for c in vector_candidates.get(provision_id, []):
            by_chunk[c.chunk_id] = CandidateChunk(
                chunk_id=c.chunk_id, page_start=c.page_start, page_end=c.page_end,
                score=c.score, match_type=c.match_type,
                keyword_matches=list(c.keyword_matches), text=c.text,
            )

        for k in keyword_candidates.get(provision_id, []):
            existing = by_chunk.get(k.chunk_id)
            if existing is None:
                by_chunk[k.chunk_id] = CandidateChunk(
                    chunk_id=k.chunk_id, page_start=k.page_start, page_end=k.page_end,
                    score=k.score, match_type=k.match_type,
                    keyword_matches=list(k.keyword_matches), text=k.text,
                )
                continue
            existing.match_type = MATCH_BOTH
            existing.score = min(1.0, max(existing.score, k.score) + both_boost)
            existing.keyword_matches = list(k.keyword_matches)
            if not existing.text and k.text:
                existing.text = k.text

        merged[provision_id] = sorted(by_chunk.values(), key=lambda c: c.score, reverse=True)

    return merged


# ═══════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════

class PreScreeningEngine:
    """Builds a CandidateMap for one (tenant, document) scope.

    Usage:
        engine = PreScreeningEngine(vector_index, chunk_store, embedding_cache)
        candidate_map = await engine.run_pre_screening(tenant_id, document_id, provisions)
    """

    def __init__(
        self,
        vector_index,
        chunk_store,
        embedding_cache: ProvisionEmbeddingCache,
        similarity_threshold: float = VECTOR_SIMILARITY_THRESHOLD,
        top_k_per_provision: int = TOP_K_PER_PROVISION,
        top_k_per_synonym: int = TOP_K_PER_SYNONYM,
        keyword_base_score: float = KEYWORD_BASE_SCORE,
        keyword_pattern_bonus: float = KEYWORD_PATTERN_BONUS,
        both_match_boost: float = BOTH_MATCH_BOOST,
        include_exact_matches: bool = ALWAYS_INCLUDE_EXACT_MATCHES,
        timeout: float = PRESCREENING_TIMEOUT,
    ):
        self.vector_index = vector_index
        self.chunk_store = chunk_store
        self.embedding_cache = embedding_cache
        self.similarity_threshold = similarity_threshold
        self.top_k_per_provision = top_k_per_provision
        self.top_k_per_synonym = top_k_per_synonym
        self.keyword_base_score = keyword_base_score
        self.keyword_pattern_bonus = keyword_pattern_bonus
        self.both_match_boost = both_match_boost
        self.include_exact_matches = include_exact_matches
        self.timeout = timeout

    async def run_pre_screening(
        self,
        tenant_id: str,
        document_id: str,
        provisions: list[Provision],
    ) -> CandidateMap:
        """Every provision gets a key in the result, possibly with an empty list.

        Raises:
            EmbeddingCacheNotReadyError: cache not initialized
            ValueError: missing tenant or document scope
            PreScreeningTimeoutError: wall-clock budget exceeded
        """
        self.embedding_cache.require_ready()
        if not tenant_id or not document_id:
            raise ValueError("Pre-screening requires both tenant_id and document_id")

        t0 = time.time()
        try:
            candidate_map = await asyncio.wait_for(
                self._screen(tenant_id, document_id, provisions),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PreScreeningTimeoutError(self.timeout) from e

        with_candidates = sum(1 for c in candidate_map.values() if c)
        logger.info(
            f"Pre-screening: {with_candidates}/{len(provisions)} provisions have candidates "
            f"({time.time() - t0:.1f}s)"
        )
        return candidate_map

    async def _screen(self, tenant_id: str, document_id: str, provisions: list[Provision]) -> CandidateMap:
        if self.include_exact_matches:
            vector_map, keyword_map = await asyncio.gather(
                self.find_vector_candidates(tenant_id, document_id, provisions),
                self._keyword_sweep(document_id, provisions),
            )
        else:
            vector_map = await self.find_vector_candidates(tenant_id, document_id, provisions)
            keyword_map = {}

        merged = merge_candidates(vector_map, keyword_map, self.both_match_boost)

        candidate_map: CandidateMap = {}
        for provision in provisions:
            candidate_map[provision.provision_id] = merged.get(provision.provision_id, [])[:self.top_k_per_provision]

        await self.populate_candidate_texts(document_id, candidate_map)
        return candidate_map

    async def _keyword_sweep(self, document_id: str, provisions: list[Provision]) -> CandidateMap:
        chunks = await self.chunk_store.get_chunks(document_id)
        return await asyncio.to_thread(
            run_exact_keyword_search, chunks, provisions,
            self.keyword_base_score, self.keyword_pattern_bonus,
        )

    # ── Vector signal ──

    async def _search(
        self,
        embedding: list[float],
        tenant_id: str,
        document_id: str,
        top_k: int,
        label: str,
    ) -> list[VectorMatch]:
        """One retrieval query. A failure here drops only this query's results."""
        try:
            return await self.vector_index.search(embedding, tenant_id, document_id, top_k)
        except Exception as e:
            logger.warning(f"Pre-screening: vector query {label} failed: {e}")
            return []

    async def find_vector_candidates(
        self,
        tenant_id: str,
        document_id: str,
        provisions: list[Provision],
    ) -> CandidateMap:
        """All (provision × query) searches issued concurrently, then max-merged per provision."""
        queries: list[tuple[str, list[float], int, str]] = []
        for provision in provisions:
            embeddings = self.embedding_cache.get(provision.provision_id)
            if embeddings is None:
                logger.warning(f"Pre-screening: no cached embeddings for provision {provision.provision_id}")
                continue
            pid = provision.provision_id
            queries.append((pid, embeddings.canonical, self.top_k_per_provision, f"{pid}/canonical"))
            for i, vec in enumerate(embeddings.synonyms):
                queries.append((pid, vec, self.top_k_per_synonym, f"{pid}/synonym[{i}]"))
            for i, vec in enumerate(embeddings.search_queries):
                queries.append((pid, vec, self.top_k_per_synonym, f"{pid}/search_query[{i}]"))

        results = await asyncio.gather(*[
            self._search(vec, tenant_id, document_id, top_k, label)
            for _, vec, top_k, label in queries
        ])

        per_provision: dict[str, dict[str, CandidateChunk]] = {p.provision_id: {} for p in provisions}
        for (pid, _, _, _), matches in zip(queries, results):
            found = per_provision[pid]
            for m in matches:
                if m.score < self.similarity_threshold:
                    continue
                existing = found.get(m.chunk_id)
                if existing is None:
                    found[m.chunk_id] = CandidateChunk(
                        chunk_id=m.chunk_id,
                        page_start=m.page_start,
                        page_end=m.page_end,
                        score=m.score,
                        match_type=MATCH_VECTOR,
                    )
                elif m.score > existing.score:
                    existing.score = m.score

        return {
            pid: sorted(found.values(), key=lambda c: c.score, reverse=True)[:self.top_k_per_provision]
            for pid, found in per_provision.items()
        }

    # ── Text hydration ──

    async def populate_candidate_texts(self, document_id: str, candidate_map: CandidateMap) -> None:
        """Fill in full text for candidates lacking it, with one batched lookup."""
        missing = list(dict.fromkeys(
            c.chunk_id for candidates in candidate_map.values() for c in candidates if not c.text
        ))
        if not missing:
            return

        chunks = await self.chunk_store.get_chunks(document_id, missing)
        text_by_id = {chunk.chunk_id: chunk.text for chunk in chunks}
        for candidates in candidate_map.values():
            for c in candidates:
                if not c.text and c.chunk_id in text_by_id:
                    c.text = text_by_id[c.chunk_id]
