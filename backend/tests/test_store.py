"""Tests for the file-backed document, chunk and analysis stores."""

import json

import pytest

from clausecheck.pipeline.models import Analysis, AnalysisError, Chunk, Finding, STATUS_COMPLETE
from clausecheck.pipeline.store import ChunkStore, _atomic_write_json, _safe_id

from conftest import TENANT


# ── Helpers ──

class TestSafeId:
    def test_accepts_plain_ids(self):
        assert _safe_id("doc_01-a") == "doc_01-a"

    @pytest.mark.parametrize("value", ["", "../etc", "a/b", "a b", "x" * 129])
    def test_rejects_unsafe_ids(self, value):
        with pytest.raises(ValueError):
            _safe_id(value)


class TestAtomicWrite:
    def test_writes_and_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "record.json"
        _atomic_write_json(target, {"a": 1})
        _atomic_write_json(target, {"a": 2})
        assert json.loads(target.read_text()) == {"a": 2}
        assert [p.name for p in target.parent.iterdir()] == ["record.json"]

    def test_unserializable_payload_keeps_old_file(self, tmp_path):
        target = tmp_path / "record.json"
        _atomic_write_json(target, {"a": 1})
        with pytest.raises(ValueError):
            _atomic_write_json(target, _Circular())
        assert json.loads(target.read_text()) == {"a": 1}


class _Circular(dict):
    def __init__(self):
        super().__init__()
        self["self"] = self


# ── Documents ──

class TestDocumentStore:
    @pytest.mark.asyncio
    async def test_lifecycle(self, document_store):
        doc = await document_store.create_document(TENANT, "contract.pdf", chunk_count=3)
        assert doc["status"] == "uploaded"
        assert len(doc["document_id"]) == 16

        updated = await document_store.set_status(doc["document_id"], "embedded")
        assert updated["status"] == "embedded"
        assert (await document_store.get_document(doc["document_id"]))["chunk_count"] == 3

        assert await document_store.delete_document(doc["document_id"]) is True
        assert await document_store.get_document(doc["document_id"]) is None
        assert await document_store.delete_document(doc["document_id"]) is False

    @pytest.mark.asyncio
    async def test_update_missing_document(self, document_store):
        with pytest.raises(KeyError):
            await document_store.update_document("missing", status="embedded")

    @pytest.mark.asyncio
    async def test_path_traversal_rejected(self, document_store):
        with pytest.raises(ValueError):
            await document_store.get_document("../../secrets")


# ── Chunks ──

class TestChunkStore:
    @pytest.mark.asyncio
    async def test_get_chunks_in_request_order(self, chunk_store, seeded_document):
        result = await chunk_store.get_chunks("doc1", ["c2", "missing", "c0"])
        assert [c.chunk_id for c in result] == ["c2", "c0"]

    @pytest.mark.asyncio
    async def test_adjacent_chunks_exclude_center(self, chunk_store, seeded_document):
        neighbours = await chunk_store.get_adjacent_chunks("doc1", "c1", window=1)
        assert [c.chunk_id for c in neighbours] == ["c0", "c2"]
        edge = await chunk_store.get_adjacent_chunks("doc1", "c0", window=2)
        assert [c.chunk_id for c in edge] == ["c1", "c2"]
        assert await chunk_store.get_adjacent_chunks("doc1", "nope") == []

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, tmp_path, chunk_store, seeded_document):
        fresh = ChunkStore(tmp_path)
        chunk = await fresh.get_chunk("doc1", "c3")
        assert chunk.page_start == 4
        assert chunk.text.startswith("Payment terms")

    @pytest.mark.asyncio
    async def test_duplicate_chunk_ids_rejected(self, chunk_store):
        dup = [Chunk("x", 1, 1, "a"), Chunk("x", 2, 2, "b")]
        with pytest.raises(ValueError):
            await chunk_store.save_chunks(TENANT, "doc2", dup)

    @pytest.mark.asyncio
    async def test_duplicate_document_scoped_to_tenant(self, chunk_store, seeded_document, chunks):
        hashes = [c.text_hash for c in reversed(chunks)]
        assert await chunk_store.find_duplicate_document(TENANT, hashes) == "doc1"
        assert await chunk_store.find_duplicate_document("tenant-b", hashes) is None
        assert await chunk_store.find_duplicate_document(TENANT, hashes[:2]) is None

    @pytest.mark.asyncio
    async def test_delete_chunks(self, chunk_store, seeded_document):
        await chunk_store.delete_chunks("doc1")
        assert await chunk_store.get_chunks("doc1") == []

    @pytest.mark.asyncio
    async def test_cache_keeps_recent_documents_only(self, tmp_path, chunks):
        store = ChunkStore(tmp_path, cache_size=2)
        for doc_id in ("d1", "d2", "d3"):
            await store.save_chunks(TENANT, doc_id, chunks)
        assert list(store._cache) == ["d2", "d3"]

        # Evicted corpora are still readable from disk
        assert len(await store.get_chunks("d1")) == len(chunks)
        assert list(store._cache) == ["d3", "d1"]

    @pytest.mark.asyncio
    async def test_cache_disabled(self, tmp_path, chunks):
        store = ChunkStore(tmp_path, cache_size=0)
        await store.save_chunks(TENANT, "d1", chunks)
        assert await store.get_chunk("d1", "c0") is not None
        assert len(store._cache) == 0


# ── Analyses + findings ──

class TestAnalysisStore:
    @pytest.mark.asyncio
    async def test_finding_upsert_is_idempotent(self, analysis_store):
        first = Finding(provision_id="p", priority="critical", matched=False, confidence=0.2)
        second = Finding(provision_id="p", priority="critical", matched=True, confidence=0.95)
        await analysis_store.create_finding("doc1", "a1", first)
        await analysis_store.create_finding("doc1", "a1", second)
        findings = await analysis_store.get_findings("doc1", "a1")
        assert len(findings) == 1
        assert findings[0].matched is True
        assert (await analysis_store.get_finding("doc1", "a1", "p")).confidence == 0.95

    @pytest.mark.asyncio
    async def test_latest_and_running(self, analysis_store):
        old = Analysis("a1", "doc1", TENANT, "m", status=STATUS_COMPLETE, started_at="2026-01-01T00:00:00+00:00")
        new = Analysis("a2", "doc1", TENANT, "m", started_at="2026-02-01T00:00:00+00:00")
        await analysis_store.create_analysis(old)
        await analysis_store.create_analysis(new)
        await analysis_store.create_finding("doc1", "a2", Finding("p", "low", False, 0.0))

        assert (await analysis_store.get_latest_analysis("doc1")).analysis_id == "a2"
        assert [a.analysis_id for a in await analysis_store.list_running_analyses()] == ["a2"]
        assert await analysis_store.get_latest_analysis("other") is None

    @pytest.mark.asyncio
    async def test_error_round_trips(self, analysis_store):
        analysis = Analysis("a1", "doc1", TENANT, "m", error=AnalysisError("boom", "HTTP_503", 1, 2, ["p"]))
        await analysis_store.create_analysis(analysis)
        loaded = await analysis_store.get_analysis("doc1", "a1")
        assert loaded.error.code == "HTTP_503"
        assert loaded.error.failed_provision_ids == ["p"]

    @pytest.mark.asyncio
    async def test_delete_document_analyses(self, analysis_store):
        await analysis_store.create_analysis(Analysis("a1", "doc1", TENANT, "m"))
        await analysis_store.delete_document_analyses("doc1")
        assert await analysis_store.get_analysis("doc1", "a1") is None
