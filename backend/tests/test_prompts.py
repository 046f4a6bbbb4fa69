"""Tests for verification prompt construction."""

from clausecheck.pipeline.models import CandidateChunk, ContractContext, VerificationBatch
from clausecheck.pipeline.prompts import (
    BEGIN_TEXT, END_TEXT, build_batch_prompt, format_candidate, get_system_prompt,
)


def _candidate(**overrides) -> CandidateChunk:
    data = dict(
        chunk_id="c0", page_start=1, page_end=1, score=0.85, match_type="both",
        keyword_matches=["additional insured"], text="Contractor shall be named as additional insured.",
    )
    data.update(overrides)
    return CandidateChunk(**data)


class TestSystemPrompt:
    def test_loaded_from_prompts_dir(self):
        prompt = get_system_prompt()
        assert "record" in prompt.lower()
        assert BEGIN_TEXT in prompt


class TestFormatCandidate:
    def test_header_and_delimiters(self):
        text = format_candidate(_candidate())
        header, body = text.split("\n", 1)
        assert header == "[c0 | p.1 | match=both | score=0.85 | keywords: additional insured]"
        assert body.startswith(BEGIN_TEXT)
        assert body.endswith(END_TEXT)

    def test_page_range(self):
        assert "pp.2-3" in format_candidate(_candidate(page_start=2, page_end=3, keyword_matches=[]))

    def test_long_text_truncated(self):
        text = format_candidate(_candidate(text="x" * 500), max_chars=100)
        assert "[...truncated]" in text
        assert "x" * 101 not in text


class TestBuildBatchPrompt:
    def test_includes_context_provisions_and_candidates(self, catalog):
        batch = VerificationBatch(batch_index=0, priority="critical", provisions=catalog[:2])
        candidate_map = {"additional-insured": [_candidate()], "waiver-of-subrogation": []}
        context = ContractContext(gc_name="Acme Builders", project_name="Harbor Tower", state="WA")

        prompt = build_batch_prompt(batch, candidate_map, context)

        assert "General Contractor: Acme Builders" in prompt
        assert "State: WA" in prompt
        assert "### additional-insured (Priority: critical)" in prompt
        assert "Trap for waiver-of-subrogation" in prompt
        assert "PRE-SCREENED CANDIDATES (1)" in prompt
        assert "PRE-SCREENED CANDIDATES: none" in prompt
        assert "Record exactly one finding for each of: additional-insured, waiver-of-subrogation" in prompt
        assert "untrusted" in prompt

    def test_context_lines_omitted_when_unknown(self, catalog):
        batch = VerificationBatch(batch_index=0, priority="high", provisions=[catalog[2]])
        prompt = build_batch_prompt(batch, {}, ContractContext())
        assert "General Contractor" not in prompt
        assert "Project:" not in prompt
