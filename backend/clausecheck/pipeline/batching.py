"""Batch planning for the verification pass.

Provisions without enough candidates are split off (auto-not-found). The
rest are grouped by priority tier in strict order critical → high →
medium → low, never mixing tiers, and split into size-bounded batches.
"""

import logging
from dataclasses import dataclass, field

from clausecheck.config import (
    MAX_PROVISIONS_PER_BATCH, MIN_CANDIDATES_FOR_LLM, ENABLE_PROVISION_CLUSTERS, PRIORITIES,
)
from clausecheck.pipeline.models import CandidateMap, Provision, VerificationBatch

logger = logging.getLogger(__name__)


@dataclass
class Partition:
    with_candidates: list[Provision] = field(default_factory=list)
    without_candidates: list[Provision] = field(default_factory=list)


def partition(
    provisions: list[Provision],
    candidate_map: CandidateMap,
    min_candidates: int = MIN_CANDIDATES_FOR_LLM,
) -> Partition:
    result = Partition()
    for provision in provisions:
        if len(candidate_map.get(provision.provision_id, [])) >= min_candidates:
            result.with_candidates.append(provision)
        else:
            result.without_candidates.append(provision)
    logger.info(
        f"Batch planner: {len(result.with_candidates)} provisions need verification, "
        f"{len(result.without_candidates)} have no candidates"
    )
    return result


def _order_by_cluster(provisions: list[Provision]) -> list[Provision]:
    """Keep provisions of one cluster adjacent; first appearance fixes cluster order."""
    first_seen: dict[str, int] = {}
    for idx, p in enumerate(provisions):
        if p.cluster_id is not None:
            first_seen.setdefault(p.cluster_id, idx)
    keyed = [
        (first_seen[p.cluster_id] if p.cluster_id is not None else idx, idx, p)
        for idx, p in enumerate(provisions)
    ]
    return [p for _, _, p in sorted(keyed, key=lambda t: (t[0], t[1]))]


def group_for_verification(
    provisions: list[Provision],
    max_per_batch: int = MAX_PROVISIONS_PER_BATCH,
    use_clusters: bool = ENABLE_PROVISION_CLUSTERS,
) -> list[VerificationBatch]:
    """Priority-ordered, single-tier batches of at most ``max_per_batch`` provisions."""
    if max_per_batch < 1:
        raise ValueError("max_per_batch must be at least 1")

    by_tier: dict[str, list[Provision]] = {tier: [] for tier in PRIORITIES}
    for provision in provisions:
        if provision.priority not in by_tier:
            raise ValueError(f"Unknown priority '{provision.priority}' for {provision.provision_id}")
        by_tier[provision.priority].append(provision)

    batches: list[VerificationBatch] = []
    for tier in PRIORITIES:
        tier_provisions = by_tier[tier]
        if use_clusters:
            tier_provisions = _order_by_cluster(tier_provisions)
        for i in range(0, len(tier_provisions), max_per_batch):
            batches.append(VerificationBatch(
                batch_index=len(batches),
                priority=tier,
                provisions=tier_provisions[i:i + max_per_batch],
            ))

    logger.info(
        f"Batch planner: {len(batches)} batch(es) "
        f"[{', '.join(f'{b.priority}:{len(b.provisions)}' for b in batches)}]"
    )
    return batches
