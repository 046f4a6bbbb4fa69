"""Analysis runner: wires the two-pass provision-verification pipeline.

Flow per analysis (run in the background, caller gets the id at once):
  1. Pre-screening (vector + keyword) under a wall-clock timeout
  2. Partition: provisions without candidates → `no_candidates` findings
  3. Plan priority-ordered, single-tier batches
  4. Verify batches through the tool-using agent (bounded concurrency)
  5. Reconcile: one finding per provision, summary counts, terminal status

Whatever happens, the analysis reaches a terminal status.
"""

import asyncio
import logging
import time
import uuid

from clausecheck.config import (
    OLLAMA_MODEL, ANALYSIS_TIMEOUT, ENABLE_AUTO_NOT_FOUND, ENABLE_PROVISION_CLUSTERS,
    MAX_PROVISIONS_PER_BATCH, MIN_CANDIDATES_FOR_LLM,
)
from clausecheck.pipeline.batching import partition, group_for_verification
from clausecheck.pipeline.embedding_cache import EmbeddingCacheNotReadyError
from clausecheck.pipeline.models import (
    Analysis, ContractContext, Finding, Provision, VerificationBatch,
    NO_CANDIDATES, STATUS_RUNNING, TERMINAL_STATUSES,
)
from clausecheck.pipeline.prescreening import PreScreeningEngine, PreScreeningTimeoutError
from clausecheck.pipeline.provision_catalog import get_provision, get_provision_catalog
from clausecheck.pipeline.reconciliation import (
    finalize, fail_analysis, calculate_risk_score, risk_band, confidence_band,
)
from clausecheck.pipeline.store import (
    DOC_ANALYZING, DOC_EMBEDDED, DOC_COMPLETE, DOC_FAILED, DOC_EMBED_FAILED,
)
from clausecheck.pipeline.tools import VerificationTools
from clausecheck.pipeline.verification import VerificationOrchestrator

logger = logging.getLogger(__name__)

ANALYZABLE_STATUSES = (DOC_EMBEDDED, DOC_COMPLETE, DOC_FAILED)


class DocumentNotFoundError(LookupError):
    pass


class DocumentAccessError(PermissionError):
    pass


class DocumentNotReadyError(ValueError):
    pass


def _error_code(exc: Exception) -> str:
    if isinstance(exc, PreScreeningTimeoutError):
        return "PRESCREENING_TIMEOUT"
    if isinstance(exc, EmbeddingCacheNotReadyError):
        return "EMBEDDING_CACHE_NOT_READY"
    return getattr(exc, "code", None) or "INTERNAL_ERROR"


class AnalysisRunner:
    """Entry point for starting and polling analyses.

    Usage:
        runner = AnalysisRunner(cache, vector_index, embedder, agent,
                                document_store, chunk_store, analysis_store)
        analysis_id = await runner.start_analysis(document_id, tenant_id)
        analysis = await runner.get_analysis(document_id, analysis_id)
    """

    def __init__(
        self,
        embedding_cache,
        vector_index,
        embedder,
        agent,
        document_store,
        chunk_store,
        analysis_store,
        prescreening: PreScreeningEngine | None = None,
        catalog: list[Provision] | None = None,
        model_name: str = OLLAMA_MODEL,
        analysis_timeout: float = ANALYSIS_TIMEOUT,
        auto_not_found: bool = ENABLE_AUTO_NOT_FOUND,
        max_per_batch: int = MAX_PROVISIONS_PER_BATCH,
        min_candidates: int = MIN_CANDIDATES_FOR_LLM,
        use_clusters: bool = ENABLE_PROVISION_CLUSTERS,
        verification_options: dict | None = None,
    ):
        self.embedding_cache = embedding_cache
        self.vector_index = vector_index
        self.embedder = embedder
        self.agent = agent
        self.document_store = document_store
        self.chunk_store = chunk_store
        self.analysis_store = analysis_store
        self.prescreening = prescreening or PreScreeningEngine(vector_index, chunk_store, embedding_cache)
        self.catalog = catalog if catalog is not None else get_provision_catalog()
        self.model_name = model_name
        self.analysis_timeout = analysis_timeout
        self.auto_not_found = auto_not_found
        self.max_per_batch = max_per_batch
        self.min_candidates = min_candidates
        self.use_clusters = use_clusters
        self.verification_options = verification_options or {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Access ──

    async def authorize(self, document_id: str, tenant_id: str) -> dict:
        """Return the document if it exists and belongs to the tenant."""
        document = await self.document_store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        if not tenant_id or document.get("tenant_id") != tenant_id:
            raise DocumentAccessError("Access denied")
        return document

    # ── Start ──

    async def start_analysis(
        self,
        document_id: str,
        tenant_id: str,
        provisions: list[Provision] | None = None,
    ) -> str:
        """Create the analysis record and schedule the run. Returns immediately."""
        document = await self.authorize(document_id, tenant_id)
        if document.get("status") == DOC_EMBED_FAILED:
            raise DocumentNotReadyError(
                "Document was never indexed (embedding failed during upload). Upload it again."
            )
        if document.get("status") not in ANALYZABLE_STATUSES:
            raise DocumentNotReadyError(
                f"Document must be embedded before analysis. Current status: {document.get('status')}"
            )
        self.embedding_cache.require_ready()

        provisions = list(provisions) if provisions is not None else list(self.catalog)
        analysis = Analysis(
            analysis_id=uuid.uuid4().hex[:16],
            document_id=document_id,
            tenant_id=tenant_id,
            model=self.model_name,
            status=STATUS_RUNNING,
            provision_ids=[p.provision_id for p in provisions],
        )
        analysis.log("queued", f"Analysis queued for {len(provisions)} provisions")
        await self.analysis_store.create_analysis(analysis)
        await self.document_store.set_status(document_id, DOC_ANALYZING)

        task = asyncio.create_task(self.run(analysis, provisions, document))
        self._tasks[analysis.analysis_id] = task
        task.add_done_callback(lambda _t, aid=analysis.analysis_id: self._tasks.pop(aid, None))

        logger.info(f"Analysis {analysis.analysis_id} started for document {document_id}")
        return analysis.analysis_id

    async def wait(self, analysis_id: str) -> None:
        """Await a scheduled run (used by tests and graceful shutdown)."""
        task = self._tasks.get(analysis_id)
        if task is not None:
            await task

    async def shutdown(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # ── Run ──

    def _tools_factory(self, analysis: Analysis):
        def build(batch: VerificationBatch) -> VerificationTools:
            return VerificationTools(
                tenant_id=analysis.tenant_id,
                document_id=analysis.document_id,
                analysis_id=analysis.analysis_id,
                provisions=batch.provisions,
                chunk_store=self.chunk_store,
                vector_index=self.vector_index,
                analysis_store=self.analysis_store,
                embedder=self.embedder,
            )
        return build

    async def _record_no_candidates(self, analysis: Analysis, provisions: list[Provision]) -> None:
        for provision in provisions:
            await self.analysis_store.create_finding(
                analysis.document_id,
                analysis.analysis_id,
                Finding(
                    provision_id=provision.provision_id,
                    priority=provision.priority,
                    matched=False,
                    confidence=0.0,
                    reasoning_summary=(
                        "No candidate passages were found by pre-screening "
                        "(vector similarity or exact keyword match)."
                    ),
                    screening_result=NO_CANDIDATES,
                ),
            )

    async def run(self, analysis: Analysis, provisions: list[Provision], document: dict | None = None) -> Analysis:
        """Execute the full pipeline for one analysis. Never leaves it running."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.analysis_timeout
        t0 = time.time()

        try:
            if document is None:
                document = await self.document_store.get_document(analysis.document_id) or {}
            context = ContractContext(
                gc_name=document.get("gc_name"),
                project_name=document.get("project_name"),
                state=document.get("state"),
            )

            # 1. Pre-screening
            candidate_map = await self.prescreening.run_pre_screening(
                analysis.tenant_id, analysis.document_id, provisions,
            )
            with_candidates = sum(1 for c in candidate_map.values() if c)
            analysis.log("prescreening", f"{with_candidates}/{len(provisions)} provisions have candidates", {
                "candidates": {pid: len(c) for pid, c in candidate_map.items()},
            })

            # 2. Partition
            split = partition(provisions, candidate_map, self.min_candidates)
            if self.auto_not_found:
                to_verify = split.with_candidates
                await self._record_no_candidates(analysis, split.without_candidates)
                if split.without_candidates:
                    analysis.log("auto_not_found", f"{len(split.without_candidates)} provisions have no candidates", {
                        "provision_ids": [p.provision_id for p in split.without_candidates],
                    })
            else:
                to_verify = provisions

            # 3. Plan
            batches = group_for_verification(to_verify, self.max_per_batch, self.use_clusters)
            analysis.log("planning", f"{len(batches)} verification batch(es)", {
                "batches": [{"priority": b.priority, "provision_ids": b.provision_ids} for b in batches],
            })
            await self.analysis_store.update_analysis(analysis)

            # 4. Verify
            orchestrator = VerificationOrchestrator(
                self.agent, self._tools_factory(analysis), **self.verification_options,
            )
            batch_results = await orchestrator.run_batches(batches, candidate_map, context, deadline=deadline)
            analysis.log("verification", "Verification batches finished", {
                "batches": [
                    {
                        "batch_index": r.batch_index,
                        "success": r.success,
                        "steps_completed": r.steps_completed,
                        "error": {"message": r.error.message, "code": r.error.code} if r.error else None,
                    }
                    for r in batch_results
                ],
            })

            # 5. Reconcile
            await finalize(analysis, provisions, batch_results, self.analysis_store, self.document_store)
            logger.info(f"Analysis {analysis.analysis_id} finished in {time.time() - t0:.1f}s: {analysis.status}")
        except Exception as e:
            logger.exception(f"Analysis pipeline failed for {analysis.analysis_id}")
            try:
                await fail_analysis(
                    analysis, provisions, str(e) or type(e).__name__, _error_code(e),
                    self.analysis_store, self.document_store,
                )
            except Exception:
                logger.exception(f"Failed to save error state for analysis {analysis.analysis_id}")
        return analysis

    # ── Polling ──

    async def get_analysis(self, document_id: str, analysis_id: str) -> Analysis | None:
        return await self.analysis_store.get_analysis(document_id, analysis_id)

    async def get_findings(self, document_id: str, analysis_id: str) -> list[Finding]:
        return await self.analysis_store.get_findings(document_id, analysis_id)

    async def get_results(self, document_id: str) -> dict | None:
        """Aggregated view of the latest analysis, or None if never analyzed."""
        analysis = await self.analysis_store.get_latest_analysis(document_id)
        if analysis is None:
            return None
        findings = await self.analysis_store.get_findings(document_id, analysis.analysis_id)
        return build_results_view(analysis, findings, {p.provision_id: p for p in self.catalog})

    # ── Startup recovery ──

    async def recover_interrupted_analyses(self) -> int:
        """Fail analyses left `running` by a previous process."""
        recovered = 0
        for analysis in await self.analysis_store.list_running_analyses():
            if analysis.analysis_id in self._tasks:
                continue
            by_id = {p.provision_id: p for p in self.catalog}
            provisions = [by_id[pid] for pid in analysis.provision_ids if pid in by_id]
            await fail_analysis(
                analysis, provisions, "Server restarted during analysis. Please re-run.", "INTERRUPTED",
                self.analysis_store, self.document_store,
            )
            recovered += 1
        if recovered:
            logger.info(f"Startup recovery: marked {recovered} interrupted analysis(es) failed")
        return recovered


def _title_for(provision_id: str, provision: Provision | None) -> str:
    if provision:
        return provision.canonical_wording
    return provision_id.replace("-", " ").title()


def build_results_view(
    analysis: Analysis,
    findings: list[Finding],
    catalog: dict[str, Provision] | None = None,
) -> dict:
    """Per-provision verdicts plus risk score for the report screen."""
    lookup = catalog.get if catalog is not None else get_provision
    matched_count = sum(1 for f in findings if f.matched)
    not_found_count = len(findings) - matched_count
    score = calculate_risk_score(findings)

    if analysis.status in TERMINAL_STATUSES:
        summary = f"Analysis complete: {matched_count} provisions found, {not_found_count} not found."
    else:
        summary = f"Analysis in progress: {len(findings)} provisions checked so far."

    items = []
    for f in findings:
        provision = lookup(f.provision_id)
        items.append({
            "id": f.provision_id,
            "priority": f.priority,
            "matched": f.matched,
            "confidence": f.confidence,
            "confidence_band": confidence_band(f.confidence),
            "title": _title_for(f.provision_id, provision),
            "description": f.reasoning_summary,
            "page_references": f.evidence_pages,
            "evidence_chunk_ids": f.evidence_chunk_ids,
            "evidence_excerpts": f.evidence_excerpts,
            "recommendation": f.recommended_action,
            "suggested_action": provision.suggested_action if (provision and f.matched) else None,
            "screening_result": f.screening_result,
        })

    banner = None
    if analysis.error is not None:
        banner = {
            "message": (
                f"{len(analysis.error.failed_provision_ids)} provision(s) could not be verified: "
                f"{analysis.error.message}"
            ),
            "code": analysis.error.code,
            "failed_provision_ids": analysis.error.failed_provision_ids,
        }

    return {
        "document_id": analysis.document_id,
        "analysis_id": analysis.analysis_id,
        "status": analysis.status,
        "summary": summary,
        "summary_counts": analysis.summary_counts,
        "findings": items,
        "risk_score": score,
        "risk_band": risk_band(score),
        "started_at": analysis.started_at,
        "completed_at": analysis.completed_at,
        "error": analysis.to_dict()["error"],
        "banner": banner,
    }
