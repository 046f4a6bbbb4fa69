"""Tests for reconciliation: risk score, status, error findings and backfill."""

import pytest

from clausecheck.pipeline.models import (
    Analysis, BatchError, BatchResult, Finding, Provision,
    ANALYZED_FOUND, ERROR, NO_CANDIDATES, NOT_ANALYZED,
    STATUS_COMPLETE, STATUS_FAILED, STATUS_PARTIAL,
)
from clausecheck.pipeline.reconciliation import (
    calculate_risk_score, compute_summary_counts, confidence_band,
    determine_status, fail_analysis, finalize, risk_band,
)

from conftest import SMALL_CATALOG, TENANT


def _finding(pid, priority, matched, screening=ANALYZED_FOUND) -> Finding:
    return Finding(
        provision_id=pid, priority=priority, matched=matched,
        confidence=0.9 if matched else 0.0, screening_result=screening,
    )


def _analysis() -> Analysis:
    return Analysis(analysis_id="a1", document_id="doc1", tenant_id=TENANT, model="test-model")


# ── Risk score ──

class TestRiskScore:
    def test_all_matched_is_zero(self):
        findings = [_finding("a", "critical", True), _finding("b", "low", True)]
        assert calculate_risk_score(findings) == 0

    def test_one_missing_critical(self):
        findings = [_finding("a", "critical", False), _finding("b", "high", True)]
        assert calculate_risk_score(findings) == 30

    def test_weights_sum(self):
        findings = [
            _finding("a", "high", False),
            _finding("b", "medium", False),
            _finding("c", "low", False),
        ]
        assert calculate_risk_score(findings) == 35

    def test_capped_at_100(self):
        findings = [_finding(f"c{i}", "critical", False) for i in range(5)]
        assert calculate_risk_score(findings) == 100

    def test_error_findings_count_as_missing(self):
        findings = [_finding("a", "critical", False, screening=ERROR)]
        assert calculate_risk_score(findings) == 30

    def test_no_findings(self):
        assert calculate_risk_score([]) == 0

    @pytest.mark.parametrize("score,band", [(0, "LOW"), (19, "LOW"), (20, "MEDIUM"), (50, "HIGH"), (80, "CRITICAL"), (100, "CRITICAL")])
    def test_bands(self, score, band):
        assert risk_band(score)["band"] == band


class TestConfidenceBand:
    def test_bands(self):
        assert confidence_band(0.95) == "explicit"
        assert confidence_band(0.6) == "strong_paraphrase"
        assert confidence_band(0.45) == "weak"
        assert confidence_band(0.1) == "insufficient"


# ── Status ──

class TestDetermineStatus:
    def _result(self, ok, ids=("a",), code=None):
        provisions = [Provision.from_dict(dict(SMALL_CATALOG[0], provision_id=i)) for i in ids]
        return BatchResult(
            success=ok, provisions=provisions,
            error=None if ok else BatchError("rate limited", code),
        )

    def test_all_succeeded(self):
        status, error = determine_status([self._result(True), self._result(True)])
        assert status == STATUS_COMPLETE
        assert error is None

    def test_no_batches_is_complete(self):
        assert determine_status([]) == (STATUS_COMPLETE, None)

    def test_some_failed_is_partial(self):
        status, error = determine_status([self._result(True), self._result(False, ("b", "c"), "RATE_LIMITED")])
        assert status == STATUS_PARTIAL
        assert error.batches_failed == 1
        assert error.batches_succeeded == 1
        assert error.failed_provision_ids == ["b", "c"]
        assert error.code == "RATE_LIMITED"

    def test_all_failed(self):
        status, error = determine_status([self._result(False, code="RATE_LIMITED")])
        assert status == STATUS_FAILED
        assert error.batches_succeeded == 0


class TestSummaryCounts:
    def test_counts_matched_per_tier(self):
        counts = compute_summary_counts([
            _finding("a", "critical", True),
            _finding("b", "critical", False),
            _finding("c", "low", True),
        ])
        assert counts == {"critical_matched": 1, "high_matched": 0, "medium_matched": 0, "low_matched": 1}


# ── Finalize ──

class TestFinalize:
    @pytest.mark.asyncio
    async def test_failed_batch_and_backfill(self, catalog, analysis_store, document_store, seeded_document):
        analysis = await analysis_store.create_analysis(_analysis())
        by_id = {p.provision_id: p for p in catalog}
        # Agent recorded one critical before its batch failed; the high batch succeeded but skipped its provision
        await analysis_store.create_finding("doc1", "a1", _finding("additional-insured", "critical", True))
        await analysis_store.create_finding("doc1", "a1", _finding("ocip-enrollment", "low", False, NO_CANDIDATES))
        results = [
            BatchResult(
                success=False,
                provisions=[by_id["additional-insured"], by_id["waiver-of-subrogation"]],
                batch_index=0,
                error=BatchError("provider returned HTTP 429", "RATE_LIMITED"),
            ),
            BatchResult(success=True, provisions=[by_id["liquidated-damages"]], batch_index=1, steps_completed=3),
        ]

        await finalize(analysis, catalog, results, analysis_store, document_store)

        findings = {f.provision_id: f for f in await analysis_store.get_findings("doc1", "a1")}
        assert set(findings) == set(by_id)
        assert findings["additional-insured"].screening_result == ANALYZED_FOUND
        assert findings["additional-insured"].matched
        assert findings["waiver-of-subrogation"].screening_result == ERROR
        assert "RATE_LIMITED" in findings["waiver-of-subrogation"].reasoning_summary
        assert findings["liquidated-damages"].screening_result == NOT_ANALYZED
        assert findings["ocip-enrollment"].screening_result == NO_CANDIDATES

        stored = await analysis_store.get_analysis("doc1", "a1")
        assert stored.status == STATUS_PARTIAL
        assert stored.completed_at is not None
        assert stored.summary_counts["critical_matched"] == 1
        assert stored.error.failed_provision_ids == ["additional-insured", "waiver-of-subrogation"]
        assert (await document_store.get_document("doc1"))["status"] == "complete"

    @pytest.mark.asyncio
    async def test_all_batches_failed_marks_document_failed(self, catalog, analysis_store, document_store, seeded_document):
        analysis = await analysis_store.create_analysis(_analysis())
        results = [BatchResult(success=False, provisions=catalog, error=BatchError("down", "HTTP_503"))]
        await finalize(analysis, catalog, results, analysis_store, document_store)
        assert analysis.status == STATUS_FAILED
        findings = await analysis_store.get_findings("doc1", "a1")
        assert len(findings) == 4
        assert all(f.screening_result == ERROR for f in findings)
        assert (await document_store.get_document("doc1"))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_fail_analysis_before_verification(self, catalog, analysis_store, document_store, seeded_document):
        analysis = await analysis_store.create_analysis(_analysis())
        await fail_analysis(
            analysis, catalog, "pre-screening timed out after 30s", "PRESCREENING_TIMEOUT",
            analysis_store, document_store,
        )
        stored = await analysis_store.get_analysis("doc1", "a1")
        assert stored.status == STATUS_FAILED
        assert stored.error.code == "PRESCREENING_TIMEOUT"
        assert len(stored.error.failed_provision_ids) == 4
        assert len(await analysis_store.get_findings("doc1", "a1")) == 4
