"""Verification pass: run planned batches through the tool-using agent.

Batches are admitted in priority order while fewer than the concurrency
limit are in flight; once the limit is reached, admission waits for at
least one batch to finish. Each batch is isolated: an exception marks only
that batch failed and never cancels its siblings.

The agent persists findings itself through the recording tools, so the
orchestrator only returns BatchResult records for reconciliation.
"""

import asyncio
import logging
import time
from typing import Callable

from clausecheck.config import (
    MAX_CONCURRENT_BATCHES, ENABLE_PARALLEL_BATCHES, BATCH_TIMEOUT,
    STEP_LIMITS, DEFAULT_STEP_LIMIT, CANDIDATE_TEXT_MAX_CHARS,
)
from clausecheck.pipeline.llm_client import AgentError
from clausecheck.pipeline.models import (
    BatchError, BatchResult, CandidateMap, ContractContext, VerificationBatch,
)
from clausecheck.pipeline.prompts import get_system_prompt, build_batch_prompt

logger = logging.getLogger(__name__)

ToolsFactory = Callable[[VerificationBatch], object]


def step_limit_for(
    batch: VerificationBatch,
    step_limits: dict[str, int] = STEP_LIMITS,
    default: int = DEFAULT_STEP_LIMIT,
) -> int:
    """Tier-specific step budget; mixed-tier batches get the default."""
    tiers = {p.priority for p in batch.provisions}
    if len(tiers) == 1:
        return step_limits.get(tiers.pop(), default)
    return default


class VerificationOrchestrator:
    """Runs verification batches for one analysis.

    Usage:
        orchestrator = VerificationOrchestrator(agent, tools_factory)
        results = await orchestrator.run_batches(batches, candidate_map, context)
    """

    def __init__(
        self,
        agent,
        tools_factory: ToolsFactory,
        max_concurrent: int = MAX_CONCURRENT_BATCHES,
        parallel: bool = ENABLE_PARALLEL_BATCHES,
        batch_timeout: float = BATCH_TIMEOUT,
        step_limits: dict[str, int] = STEP_LIMITS,
        default_step_limit: int = DEFAULT_STEP_LIMIT,
        candidate_max_chars: int = CANDIDATE_TEXT_MAX_CHARS,
    ):
        self.agent = agent
        self.tools_factory = tools_factory
        self.concurrency = max(1, max_concurrent) if parallel else 1
        self.batch_timeout = batch_timeout
        self.step_limits = step_limits
        self.default_step_limit = default_step_limit
        self.candidate_max_chars = candidate_max_chars

    async def run_batch(
        self,
        batch: VerificationBatch,
        candidate_map: CandidateMap,
        context: ContractContext,
    ) -> BatchResult:
        """Run one batch. Never raises: failures come back as BatchResult.error."""
        label = f"batch {batch.batch_index} ({batch.priority})"
        max_steps = step_limit_for(batch, self.step_limits, self.default_step_limit)
        tools = self.tools_factory(batch)
        prompt = build_batch_prompt(batch, candidate_map, context, self.candidate_max_chars)

        logger.info(f"[{label}] Starting: {len(batch.provisions)} provisions, step limit {max_steps}")
        t0 = time.time()
        try:
            transcript = await asyncio.wait_for(
                self.agent.generate(get_system_prompt(), prompt, tools, max_steps, label=label),
                timeout=self.batch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{label}] Timed out after {self.batch_timeout:g}s")
            return BatchResult(
                success=False, provisions=batch.provisions, batch_index=batch.batch_index,
                error=BatchError(f"Batch timed out after {self.batch_timeout:g}s", "BATCH_TIMEOUT"),
            )
        except AgentError as e:
            logger.warning(f"[{label}] Failed: {e.message} ({e.code})")
            return BatchResult(
                success=False, provisions=batch.provisions, batch_index=batch.batch_index,
                error=BatchError(e.message, e.code),
            )
        except Exception as e:
            logger.exception(f"[{label}] Unexpected failure")
            return BatchResult(
                success=False, provisions=batch.provisions, batch_index=batch.batch_index,
                error=BatchError(str(e) or type(e).__name__, getattr(e, "code", None) or "UNEXPECTED_ERROR"),
            )

        steps = len(transcript.steps)
        if transcript.budget_exhausted:
            logger.warning(f"[{label}] Step budget exhausted after {steps} steps")
        missing = getattr(tools, "unrecorded", [])
        if missing:
            logger.warning(f"[{label}] Agent did not record: {', '.join(missing)}")
        logger.info(
            f"[{label}] Completed in {time.time() - t0:.1f}s, {steps} steps, "
            f"{transcript.tool_call_count} tool calls"
        )
        return BatchResult(
            success=True, provisions=batch.provisions,
            batch_index=batch.batch_index, steps_completed=steps,
        )

    async def run_batches(
        self,
        batches: list[VerificationBatch],
        candidate_map: CandidateMap,
        context: ContractContext,
        deadline: float | None = None,
    ) -> list[BatchResult]:
        """Run all batches with bounded concurrency. Results follow input order.

        ``deadline`` is an event-loop time. Once it passes, batches not yet
        admitted fail with ANALYSIS_TIMEOUT; batches already in flight run
        to completion (each still bounded by the per-batch timeout).
        """
        loop = asyncio.get_running_loop()
        queue = list(enumerate(batches))
        pending: dict[asyncio.Task, int] = {}
        results: dict[int, BatchResult] = {}

        while queue or pending:
            if deadline is not None and queue and loop.time() >= deadline:
                logger.warning(f"Analysis time budget exhausted: {len(queue)} batch(es) not started")
                for pos, batch in queue:
                    results[pos] = BatchResult(
                        success=False, provisions=batch.provisions, batch_index=batch.batch_index,
                        error=BatchError("Analysis time budget exhausted before batch started", "ANALYSIS_TIMEOUT"),
                    )
                queue.clear()

            while queue and len(pending) < self.concurrency:
                pos, batch = queue.pop(0)
                task = asyncio.create_task(self.run_batch(batch, candidate_map, context))
                pending[task] = pos

            if not pending:
                break

            wait_timeout = None
            if deadline is not None and queue:
                wait_timeout = max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait(
                pending.keys(), timeout=wait_timeout, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                results[pending.pop(task)] = task.result()

        ordered = [results[pos] for pos in range(len(batches))]
        failed = sum(1 for r in ordered if not r.success)
        logger.info(f"Verification: {len(ordered) - failed}/{len(ordered)} batches succeeded")
        return ordered
