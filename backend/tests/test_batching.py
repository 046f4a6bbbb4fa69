"""Tests for partitioning and priority-ordered batch planning."""

import pytest

from clausecheck.pipeline.batching import partition, group_for_verification
from clausecheck.pipeline.models import CandidateChunk, Provision

from conftest import SMALL_CATALOG


def _p(pid, priority, cluster=None) -> Provision:
    data = dict(SMALL_CATALOG[0], provision_id=pid, priority=priority)
    data.pop("cluster_id", None)
    if cluster:
        data["cluster_id"] = cluster
    return Provision.from_dict(data)


def _cand(chunk_id="c0") -> CandidateChunk:
    return CandidateChunk(chunk_id=chunk_id, page_start=1, page_end=1, score=0.8, match_type="vector")


class TestPartition:
    def test_split_on_candidate_count(self, catalog):
        candidate_map = {
            "additional-insured": [_cand()],
            "waiver-of-subrogation": [_cand("c1")],
            "liquidated-damages": [_cand("c2")],
            "ocip-enrollment": [],
        }
        result = partition(catalog, candidate_map, min_candidates=1)
        assert [p.provision_id for p in result.with_candidates] == [
            "additional-insured", "waiver-of-subrogation", "liquidated-damages",
        ]
        assert [p.provision_id for p in result.without_candidates] == ["ocip-enrollment"]

    def test_missing_key_counts_as_no_candidates(self, catalog):
        result = partition(catalog, {}, min_candidates=1)
        assert result.with_candidates == []
        assert len(result.without_candidates) == 4

    def test_higher_minimum(self, catalog):
        candidate_map = {"additional-insured": [_cand(), _cand("c1")], "liquidated-damages": [_cand()]}
        result = partition(catalog, candidate_map, min_candidates=2)
        assert [p.provision_id for p in result.with_candidates] == ["additional-insured"]


class TestGroupForVerification:
    def test_strict_priority_order(self):
        provisions = [_p("l1", "low"), _p("m1", "medium"), _p("c1", "critical"), _p("h1", "high")]
        batches = group_for_verification(provisions, max_per_batch=10, use_clusters=False)
        assert [b.priority for b in batches] == ["critical", "high", "medium", "low"]
        assert [b.batch_index for b in batches] == [0, 1, 2, 3]

    def test_tiers_never_mixed(self):
        provisions = [_p(f"c{i}", "critical") for i in range(3)] + [_p(f"h{i}", "high") for i in range(3)]
        batches = group_for_verification(provisions, max_per_batch=15, use_clusters=False)
        assert len(batches) == 2
        for batch in batches:
            assert {p.priority for p in batch.provisions} == {batch.priority}

    def test_tier_split_by_max_size(self):
        provisions = [_p(f"c{i}", "critical") for i in range(7)]
        batches = group_for_verification(provisions, max_per_batch=3, use_clusters=False)
        assert [len(b.provisions) for b in batches] == [3, 3, 1]
        assert batches[0].provision_ids == ["c0", "c1", "c2"]

    def test_empty_tiers_produce_no_batches(self):
        batches = group_for_verification([_p("l1", "low")], max_per_batch=5)
        assert len(batches) == 1
        assert batches[0].priority == "low"

    def test_no_provisions(self):
        assert group_for_verification([], max_per_batch=5) == []

    def test_clusters_kept_adjacent(self):
        provisions = [
            _p("a", "critical", cluster="insurance"),
            _p("b", "critical"),
            _p("c", "critical", cluster="risk"),
            _p("d", "critical", cluster="insurance"),
        ]
        batches = group_for_verification(provisions, max_per_batch=2, use_clusters=True)
        assert [b.provision_ids for b in batches] == [["a", "d"], ["b", "c"]]

    def test_clusters_disabled_keeps_catalog_order(self):
        provisions = [
            _p("a", "critical", cluster="insurance"),
            _p("b", "critical"),
            _p("d", "critical", cluster="insurance"),
        ]
        batches = group_for_verification(provisions, max_per_batch=2, use_clusters=False)
        assert [b.provision_ids for b in batches] == [["a", "b"], ["d"]]

    def test_invalid_max_per_batch(self):
        with pytest.raises(ValueError):
            group_for_verification([_p("a", "critical")], max_per_batch=0)

    def test_unknown_priority(self):
        with pytest.raises(ValueError, match="Unknown priority"):
            group_for_verification([_p("a", "urgent")], max_per_batch=5)
