"""Shared fixtures for the ClauseCheck test suite."""

import asyncio

import pytest
import pytest_asyncio

from clausecheck.pipeline.embedding_cache import ProvisionEmbeddingCache, ProvisionEmbeddings
from clausecheck.pipeline.llm_client import AgentError, AgentStep, AgentTranscript
from clausecheck.pipeline.models import Chunk, Provision
from clausecheck.pipeline.provision_catalog import parse_catalog
from clausecheck.pipeline.rag_store import InMemoryVectorIndex
from clausecheck.pipeline.store import AnalysisStore, ChunkStore, DocumentStore, DOC_EMBEDDED

TENANT = "tenant-a"


# ═══════════════════════════════════════════════════
# Fakes
# ═══════════════════════════════════════════════════

class FakeEmbedder:
    """Keyword-driven embedder: one dimension per vocabulary term, plus a bias."""

    VOCABULARY = [
        "additional insured",
        "subrogation",
        "liquidated damages",
        "ocip",
        "wrap-up",
        "payment",
        "indemnify",
    ]

    def __init__(self):
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        lower = text.lower()
        return [0.05] + [1.0 if term in lower else 0.0 for term in self.VOCABULARY]

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class ScriptedAgent:
    """Stands in for OllamaAgent: records a verdict for every provision in the batch.

    verdicts:  provision_id → dict of finding overrides (matched, confidence, ...)
    fail_on:   provision_id → exception raised when a batch contains it
    record_before_fail: record findings first, then raise
    skip:      provision ids the agent "forgets" to record
    """

    def __init__(
        self,
        verdicts: dict | None = None,
        fail_on: dict | None = None,
        record_before_fail: bool = False,
        skip: set | None = None,
        delay: float = 0.0,
    ):
        self.verdicts = verdicts or {}
        self.fail_on = fail_on or {}
        self.record_before_fail = record_before_fail
        self.skip = skip or set()
        self.delay = delay
        self.calls: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _record_all(self, tools, step: AgentStep) -> None:
        for pid in tools.provisions:
            if pid in self.skip:
                continue
            verdict = {
                "provision_id": pid,
                "matched": True,
                "confidence": 0.95,
                "evidence_chunk_ids": ["c0"],
                "evidence_pages": [1],
                "evidence_excerpts": ["quoted text"],
                "reasoning_summary": "Explicit clause found.",
            }
            verdict.update(self.verdicts.get(pid, {}))
            result = await tools.execute("record_finding", verdict)
            step.tool_calls.append({"name": "record_finding", "arguments": verdict})
            step.tool_results.append(result)

    async def generate(self, instructions, prompt, tools, max_steps, label="agent"):
        self.calls.append({
            "provision_ids": list(tools.provisions),
            "max_steps": max_steps,
            "prompt": prompt,
            "instructions": instructions,
        })
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            step = AgentStep(index=1)
            failure = next((self.fail_on[pid] for pid in tools.provisions if pid in self.fail_on), None)
            if failure is not None:
                if self.record_before_fail:
                    await self._record_all(tools, step)
                raise failure
            await self._record_all(tools, step)
            return AgentTranscript(text="All provisions recorded.", steps=[step, AgentStep(index=2)])
        finally:
            self.in_flight -= 1


def rate_limited() -> AgentError:
    return AgentError("verify batch: provider returned HTTP 429", "RATE_LIMITED")


# ═══════════════════════════════════════════════════
# Catalog + corpus
# ═══════════════════════════════════════════════════

def _entry(pid, priority, canonical, synonyms, exact=None, cluster=None):
    entry = {
        "provision_id": pid,
        "priority": priority,
        "canonical_wording": canonical,
        "synonyms": synonyms,
        "definition": f"Definition of {pid}",
        "false_positive_traps": [f"Trap for {pid}"],
        "confidence_rubric": {
            "explicit": "explicit wording",
            "strong_paraphrase": "clear paraphrase",
            "weak": "vague mention",
        },
        "suggested_action": f"Confirm {pid} paperwork.",
    }
    if exact:
        entry["exact_patterns"] = exact
    if cluster:
        entry["cluster_id"] = cluster
    return entry


SMALL_CATALOG = [
    _entry("additional-insured", "critical", "Contractor named as additional insured",
           ["additional insured"], cluster="insurance"),
    _entry("waiver-of-subrogation", "critical", "Subcontractor waives subrogation rights",
           ["waiver of subrogation"], cluster="insurance"),
    _entry("liquidated-damages", "high", "Liquidated damages for delay",
           ["liquidated damages"]),
    _entry("ocip-enrollment", "low", "Subcontractor enrolls in the OCIP wrap-up program",
           ["wrap-up program"], exact=["ocip"]),
]

CONTRACT_CHUNKS = [
    ("c0", 1, "Subcontractor shall name Contractor as additional insured on all liability policies."),
    ("c1", 2, "Subcontractor waives all rights of recovery; a waiver of subrogation applies to all policies."),
    ("c2", 3, "Liquidated damages of $500 per day apply for each day of delay."),
    ("c3", 4, "Payment terms: net 30 days after approval of the pay application."),
]


@pytest.fixture
def catalog() -> list[Provision]:
    return parse_catalog(SMALL_CATALOG)


@pytest.fixture
def chunks() -> list[Chunk]:
    return [
        Chunk(chunk_id=cid, page_start=page, page_end=page, text=text, text_hash=f"h-{cid}")
        for cid, page, text in CONTRACT_CHUNKS
    ]


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def embedding_cache(catalog, embedder) -> ProvisionEmbeddingCache:
    return ProvisionEmbeddingCache.from_entries({
        p.provision_id: ProvisionEmbeddings(
            canonical=embedder.vector(p.canonical_wording),
            synonyms=[embedder.vector(s) for s in p.synonyms],
            search_queries=[embedder.vector(q) for q in p.search_queries],
        )
        for p in catalog
    })


@pytest.fixture
def document_store(tmp_path) -> DocumentStore:
    return DocumentStore(tmp_path)


@pytest.fixture
def chunk_store(tmp_path) -> ChunkStore:
    return ChunkStore(tmp_path)


@pytest.fixture
def analysis_store(tmp_path) -> AnalysisStore:
    return AnalysisStore(tmp_path)


@pytest.fixture
def vector_index(chunks, embedder) -> InMemoryVectorIndex:
    index = InMemoryVectorIndex()
    index.upsert_chunks(TENANT, "doc1", chunks, [embedder.vector(c.text) for c in chunks])
    return index


@pytest_asyncio.fixture
async def seeded_document(document_store, chunk_store, chunks) -> dict:
    """An embedded contract `doc1` owned by TENANT, chunks stored."""
    document = await document_store.create_document(
        tenant_id=TENANT,
        filename="crane_subcontract.pdf",
        chunk_count=len(chunks),
        gc_name="Acme Builders",
        project_name="Harbor Tower",
        state="WA",
        document_id="doc1",
    )
    await chunk_store.save_chunks(TENANT, "doc1", chunks)
    return await document_store.set_status(document["document_id"], DOC_EMBEDDED)
