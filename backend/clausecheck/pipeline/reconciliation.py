"""Reconciliation and risk scoring.

After verification, every provision must end up with exactly one finding:
  1. provisions of failed batches get an `error` finding (unless the agent
     already recorded one before the batch failed)
  2. anything still missing gets a `not_analyzed` finding
Then summary counts and the final status are computed and persisted.

Risk score = sum of priority weights over NOT-matched findings, capped.
"""

import logging

from clausecheck.config import PRIORITIES, RISK_WEIGHTS, RISK_SCORE_CAP, RISK_BANDS
from clausecheck.pipeline.models import (
    Analysis, AnalysisError, BatchResult, Finding, Provision,
    ERROR, NOT_ANALYZED,
    STATUS_COMPLETE, STATUS_PARTIAL, STATUS_FAILED, utcnow,
)
from clausecheck.pipeline.store import DOC_COMPLETE, DOC_FAILED

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════
# PURE HELPERS
# ═══════════════════════════════════════════════════

def compute_summary_counts(findings: list[Finding]) -> dict[str, int]:
    """Matched findings per priority tier."""
    counts = {f"{tier}_matched": 0 for tier in PRIORITIES}
    for f in findings:
        key = f"{f.priority}_matched"
        if f.matched and key in counts:
            counts[key] += 1
    return counts


def determine_status(batch_results: list[BatchResult]) -> tuple[str, AnalysisError | None]:
    """complete: nothing failed. failed: batches existed and all failed. partial: the rest."""
    failed = [r for r in batch_results if not r.success]
    if not failed:
        return STATUS_COMPLETE, None

    succeeded = len(batch_results) - len(failed)
    first = failed[0].error
    error = AnalysisError(
        message=first.message if first else "Verification batch failed",
        code=first.code if first else None,
        batches_failed=len(failed),
        batches_succeeded=succeeded,
        failed_provision_ids=[p.provision_id for r in failed for p in r.provisions],
    )
    status = STATUS_FAILED if succeeded == 0 else STATUS_PARTIAL
    return status, error


def calculate_risk_score(
    findings: list[Finding],
    weights: dict[str, int] = RISK_WEIGHTS,
    cap: int = RISK_SCORE_CAP,
) -> int:
    score = sum(weights.get(f.priority, 0) for f in findings if not f.matched)
    return min(cap, score)


def risk_band(score: int) -> dict:
    for name, band in RISK_BANDS.items():
        if band["min"] <= score <= band["max"]:
            return {"band": name, **band}
    return {"band": "CRITICAL", **RISK_BANDS["CRITICAL"]}


def confidence_band(confidence: float) -> str:
    if confidence >= 0.9:
        return "explicit"
    if confidence >= 0.6:
        return "strong_paraphrase"
    if confidence >= 0.4:
        return "weak"
    return "insufficient"


# ═══════════════════════════════════════════════════
# FINALIZE
# ═══════════════════════════════════════════════════

def _error_finding(provision: Provision, message: str, code: str | None) -> Finding:
    reason = f"Verification failed: {message}"
    if code:
        reason += f" ({code})"
    return Finding(
        provision_id=provision.provision_id,
        priority=provision.priority,
        matched=False,
        confidence=0.0,
        reasoning_summary=reason,
        recommended_action="Re-run the analysis or review this provision manually.",
        screening_result=ERROR,
    )


def _not_analyzed_finding(provision: Provision) -> Finding:
    return Finding(
        provision_id=provision.provision_id,
        priority=provision.priority,
        matched=False,
        confidence=0.0,
        reasoning_summary="The verification agent did not record a verdict for this provision.",
        recommended_action="Review this provision manually.",
        screening_result=NOT_ANALYZED,
    )


async def _write_error_findings(
    analysis: Analysis,
    provisions: list[Provision],
    message: str,
    code: str | None,
    analysis_store,
) -> int:
    existing = {f.provision_id for f in await analysis_store.get_findings(analysis.document_id, analysis.analysis_id)}
    written = 0
    for provision in provisions:
        if provision.provision_id in existing:
            continue
        await analysis_store.create_finding(
            analysis.document_id, analysis.analysis_id, _error_finding(provision, message, code),
        )
        written += 1
    return written


async def finalize(
    analysis: Analysis,
    provisions: list[Provision],
    batch_results: list[BatchResult],
    analysis_store,
    document_store,
) -> Analysis:
    """Guarantee one finding per provision, then persist the terminal analysis."""
    # 1. Failed batches → error findings (keep anything recorded before the failure)
    error_count = 0
    for result in batch_results:
        if result.success:
            continue
        message = result.error.message if result.error else "Verification batch failed"
        code = result.error.code if result.error else None
        error_count += await _write_error_findings(analysis, result.provisions, message, code, analysis_store)
    if error_count:
        logger.warning(f"Reconciliation: wrote {error_count} error finding(s) for failed batches")

    # 2. Backfill anything still missing
    findings = await analysis_store.get_findings(analysis.document_id, analysis.analysis_id)
    recorded = {f.provision_id for f in findings}
    missing = [p for p in provisions if p.provision_id not in recorded]
    for provision in missing:
        await analysis_store.create_finding(
            analysis.document_id, analysis.analysis_id, _not_analyzed_finding(provision),
        )
    if missing:
        logger.warning(
            f"Reconciliation: backfilled {len(missing)} unrecorded provision(s): "
            f"{', '.join(p.provision_id for p in missing)}"
        )
        findings = await analysis_store.get_findings(analysis.document_id, analysis.analysis_id)

    # 3-4. Counts and status
    analysis.summary_counts = compute_summary_counts(findings)
    analysis.status, analysis.error = determine_status(batch_results)
    analysis.completed_at = utcnow()
    analysis.log("reconciliation", f"Analysis {analysis.status}", {
        "findings": len(findings),
        "error_findings": error_count,
        "backfilled": len(missing),
        "summary_counts": analysis.summary_counts,
    })

    # 5. Persist
    await analysis_store.update_analysis(analysis)
    await document_store.set_status(
        analysis.document_id,
        DOC_FAILED if analysis.status == STATUS_FAILED else DOC_COMPLETE,
    )
    logger.info(
        f"Analysis {analysis.analysis_id}: {analysis.status}, {len(findings)} findings, "
        f"risk score {calculate_risk_score(findings)}"
    )
    return analysis


async def fail_analysis(
    analysis: Analysis,
    provisions: list[Provision],
    message: str,
    code: str | None,
    analysis_store,
    document_store,
) -> Analysis:
    """Terminal failure before verification could run (pre-screening, setup).

    Every provision still receives a finding so the result set stays complete.
    """
    await _write_error_findings(analysis, provisions, message, code, analysis_store)
    findings = await analysis_store.get_findings(analysis.document_id, analysis.analysis_id)
    analysis.summary_counts = compute_summary_counts(findings)
    analysis.status = STATUS_FAILED
    analysis.error = AnalysisError(
        message=message,
        code=code,
        failed_provision_ids=[f.provision_id for f in findings if f.screening_result == ERROR],
    )
    analysis.completed_at = utcnow()
    analysis.log("failed", message, {"code": code} if code else None)
    await analysis_store.update_analysis(analysis)
    await document_store.set_status(analysis.document_id, DOC_FAILED)
    logger.error(f"Analysis {analysis.analysis_id} failed: {message}")
    return analysis
