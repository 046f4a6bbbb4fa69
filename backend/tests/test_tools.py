"""Tests for the verification agent's tool table."""

import json

import pytest

from clausecheck.pipeline.models import ANALYZED_FOUND, ANALYZED_NOT_FOUND
from clausecheck.pipeline.tools import VerificationTools, TOOL_DEFINITIONS

from conftest import TENANT


@pytest.fixture
def tools(catalog, chunk_store, vector_index, analysis_store, embedder):
    """Tools bound to the two critical provisions of doc1."""
    return VerificationTools(
        tenant_id=TENANT,
        document_id="doc1",
        analysis_id="a1",
        provisions=catalog[:2],
        chunk_store=chunk_store,
        vector_index=vector_index,
        analysis_store=analysis_store,
        embedder=embedder,
    )


def _verdict(**overrides) -> dict:
    verdict = {
        "provision_id": "additional-insured",
        "matched": True,
        "confidence": 0.93,
        "evidence_chunk_ids": ["c0"],
        "evidence_pages": [1],
        "evidence_excerpts": ["name Contractor as additional insured"],
        "reasoning_summary": "Explicit additional insured requirement.",
    }
    verdict.update(overrides)
    return verdict


class TestDefinitions:
    def test_all_tools_defined(self, tools):
        names = {d["function"]["name"] for d in tools.definitions}
        assert names == {
            "search_chunks", "get_chunk", "get_adjacent_chunks",
            "exact_find", "record_finding", "record_batch_findings",
        }
        assert tools.definitions is TOOL_DEFINITIONS


class TestExecute:
    @pytest.mark.asyncio
    async def test_unknown_tool(self, tools):
        result = json.loads(await tools.execute("delete_everything", {}))
        assert "Unknown tool" in result["error"]

    @pytest.mark.asyncio
    async def test_bad_arguments_returned_as_error(self, tools):
        result = json.loads(await tools.execute("get_chunk", {"wrong": "x"}))
        assert result["error"].startswith("Invalid arguments")


# ── Reading tools ──

class TestReadingTools:
    @pytest.mark.asyncio
    async def test_search_chunks_scoped_to_document(self, tools):
        result = json.loads(await tools.execute("search_chunks", {"query": "liquidated damages", "top_k": 2}))
        assert result["result_count"] == 2
        assert result["results"][0]["chunk_id"] == "c2"

    @pytest.mark.asyncio
    async def test_search_top_k_clamped(self, tools):
        result = json.loads(await tools.execute("search_chunks", {"query": "payment", "top_k": 500}))
        assert result["result_count"] == 4

    @pytest.mark.asyncio
    async def test_get_chunk(self, tools, seeded_document):
        result = json.loads(await tools.execute("get_chunk", {"chunk_id": "c2"}))
        assert result["page_start"] == 3
        assert "Liquidated damages" in result["text"]

    @pytest.mark.asyncio
    async def test_get_missing_chunk(self, tools, seeded_document):
        result = json.loads(await tools.execute("get_chunk", {"chunk_id": "zzz"}))
        assert "not found" in result["error"]

    @pytest.mark.asyncio
    async def test_get_adjacent_chunks(self, tools, seeded_document):
        result = json.loads(await tools.execute("get_adjacent_chunks", {"chunk_id": "c3", "window": 10}))
        assert [c["chunk_id"] for c in result["chunks"]] == ["c0", "c1", "c2"]

    @pytest.mark.asyncio
    async def test_exact_find_snippet(self, tools, seeded_document):
        result = json.loads(await tools.execute("exact_find", {"patterns": ["WAIVER OF SUBROGATION", "ocip"]}))
        assert result["truncated"] is False
        assert len(result["matches"]) == 1
        match = result["matches"][0]
        assert match["chunk_id"] == "c1"
        assert match["page"] == 2
        assert match["snippet"].startswith("...")
        assert "waiver of subrogation" in match["snippet"]

    @pytest.mark.asyncio
    async def test_exact_find_accepts_single_string(self, tools, seeded_document):
        result = json.loads(await tools.execute("exact_find", {"patterns": "net 30"}))
        assert [m["chunk_id"] for m in result["matches"]] == ["c3"]


# ── Recording tools ──

class TestRecordFinding:
    @pytest.mark.asyncio
    async def test_records_with_catalog_priority(self, tools, analysis_store):
        result = json.loads(await tools.execute("record_finding", _verdict(priority="low")))
        assert result == {"ok": True, "provision_id": "additional-insured"}

        finding = await analysis_store.get_finding("doc1", "a1", "additional-insured")
        assert finding.priority == "critical"
        assert finding.screening_result == ANALYZED_FOUND
        assert tools.unrecorded == ["waiver-of-subrogation"]

    @pytest.mark.asyncio
    async def test_camel_case_arguments(self, tools, analysis_store):
        verdict = {
            "provisionId": "waiver-of-subrogation",
            "matched": False,
            "confidence": 0.2,
            "evidenceChunkIds": [],
            "evidencePages": [],
            "evidenceExcerpts": [],
            "reasoningSummary": "Only a general waiver of claims.",
        }
        result = json.loads(await tools.execute("record_finding", verdict))
        assert result["ok"] is True
        finding = await analysis_store.get_finding("doc1", "a1", "waiver-of-subrogation")
        assert finding.screening_result == ANALYZED_NOT_FOUND

    @pytest.mark.asyncio
    async def test_rejects_provision_outside_batch(self, tools, analysis_store):
        result = json.loads(await tools.execute("record_finding", _verdict(provision_id="liquidated-damages")))
        assert result["ok"] is False
        assert "not part of this batch" in result["error"]
        assert await analysis_store.get_findings("doc1", "a1") == []

    @pytest.mark.asyncio
    async def test_confidence_out_of_range(self, tools):
        result = json.loads(await tools.execute("record_finding", _verdict(confidence=1.5)))
        assert "confidence" in result["error"]

    @pytest.mark.asyncio
    async def test_missing_evidence_lists(self, tools):
        verdict = _verdict()
        del verdict["evidence_pages"]
        result = json.loads(await tools.execute("record_finding", verdict))
        assert "evidence_pages" in result["error"]

    @pytest.mark.asyncio
    async def test_rerecord_overwrites(self, tools, analysis_store):
        await tools.execute("record_finding", _verdict(matched=False, confidence=0.3))
        await tools.execute("record_finding", _verdict())
        findings = await analysis_store.get_findings("doc1", "a1")
        assert len(findings) == 1
        assert findings[0].matched is True


class TestRecordBatchFindings:
    @pytest.mark.asyncio
    async def test_partial_acceptance(self, tools, analysis_store):
        findings = [
            _verdict(),
            _verdict(provision_id="liquidated-damages"),
            _verdict(provision_id="waiver-of-subrogation", confidence="high"),
        ]
        result = json.loads(await tools.execute("record_batch_findings", {"findings": findings}))
        assert result["ok"] is False
        assert result["count"] == 1
        assert result["recorded"] == ["additional-insured"]
        assert [e["index"] for e in result["errors"]] == [1, 2]
        assert len(await analysis_store.get_findings("doc1", "a1")) == 1

    @pytest.mark.asyncio
    async def test_all_recorded(self, tools):
        findings = [_verdict(), _verdict(provision_id="waiver-of-subrogation", matched=False, confidence=0.1)]
        result = json.loads(await tools.execute("record_batch_findings", {"findings": findings}))
        assert result == {
            "ok": True, "count": 2,
            "recorded": ["additional-insured", "waiver-of-subrogation"], "errors": [],
        }
        assert tools.unrecorded == []
