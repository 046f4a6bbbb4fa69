"""Domain types shared by the provision-verification pipeline.

Provisions and chunks are read-only inputs. Candidates, batches and batch
results live only for the duration of one analysis run. Findings and
analyses are the persisted outputs (see ``store.py``).
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any

# Screening results: how a provision was processed
NO_CANDIDATES = "no_candidates"
ANALYZED_NOT_FOUND = "analyzed_not_found"
ANALYZED_FOUND = "analyzed_found"
NOT_ANALYZED = "not_analyzed"
ERROR = "error"

SCREENING_RESULTS = (NO_CANDIDATES, ANALYZED_NOT_FOUND, ANALYZED_FOUND, NOT_ANALYZED, ERROR)

# Analysis statuses
STATUS_RUNNING = "running"
STATUS_COMPLETE = "complete"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = (STATUS_COMPLETE, STATUS_PARTIAL, STATUS_FAILED)

# Candidate match types
MATCH_VECTOR = "vector"
MATCH_KEYWORD = "keyword"
MATCH_BOTH = "both"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ═══════════════════════════════════════════════════
# CATALOG
# ═══════════════════════════════════════════════════

@dataclass(frozen=True)
class ConfidenceRubric:
    explicit: str
    strong_paraphrase: str
    weak: str


@dataclass(frozen=True)
class Provision:
    """A catalog entry. Immutable after load."""
    provision_id: str
    priority: str
    canonical_wording: str
    synonyms: tuple[str, ...]
    definition: str
    false_positive_traps: tuple[str, ...]
    confidence_rubric: ConfidenceRubric
    search_queries: tuple[str, ...] = ()
    exact_patterns: tuple[str, ...] = ()
    cluster_id: str | None = None
    suggested_action: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Provision":
        rubric = data.get("confidence_rubric") or {}
        return cls(
            provision_id=data["provision_id"],
            priority=data["priority"],
            canonical_wording=data["canonical_wording"],
            synonyms=tuple(data.get("synonyms", [])),
            definition=data.get("definition", ""),
            false_positive_traps=tuple(data.get("false_positive_traps", [])),
            confidence_rubric=ConfidenceRubric(
                explicit=rubric.get("explicit", ""),
                strong_paraphrase=rubric.get("strong_paraphrase", ""),
                weak=rubric.get("weak", ""),
            ),
            search_queries=tuple(data.get("search_queries", [])),
            exact_patterns=tuple(data.get("exact_patterns", [])),
            cluster_id=data.get("cluster_id"),
            suggested_action=data.get("suggested_action"),
        )


# ═══════════════════════════════════════════════════
# CORPUS
# ═══════════════════════════════════════════════════

@dataclass
class Chunk:
    """A page-bounded span of contract text."""
    chunk_id: str
    page_start: int
    page_end: int
    text: str
    text_hash: str = ""
    section_path: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        return cls(
            chunk_id=data["chunk_id"],
            page_start=int(data["page_start"]),
            page_end=int(data["page_end"]),
            text=data.get("text", ""),
            text_hash=data.get("text_hash", ""),
            section_path=data.get("section_path"),
        )


@dataclass
class VectorMatch:
    """One hit returned by a vector index search."""
    chunk_id: str
    score: float  # similarity: higher is more similar
    page_start: int
    page_end: int
    text_preview: str = ""

    def to_dict(self) -> dict:
        d = asdict(self)
        d["score"] = round(self.score, 4)
        return d


@dataclass
class CandidateChunk:
    """A chunk provisionally linked to a provision during pre-screening."""
    chunk_id: str
    page_start: int
    page_end: int
    score: float
    match_type: str
    keyword_matches: list[str] = field(default_factory=list)
    text: str = ""  # vector-only hits arrive without text; filled lazily


# provision_id → candidates, best first
CandidateMap = dict[str, list[CandidateChunk]]


# ═══════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════

@dataclass
class ContractContext:
    gc_name: str | None = None
    project_name: str | None = None
    state: str | None = None


@dataclass
class VerificationBatch:
    """A single-tier group of provisions sent to one agent invocation."""
    batch_index: int
    priority: str
    provisions: list[Provision]

    @property
    def provision_ids(self) -> list[str]:
        return [p.provision_id for p in self.provisions]


@dataclass
class BatchError:
    message: str
    code: str | None = None


@dataclass
class BatchResult:
    success: bool
    provisions: list[Provision]
    batch_index: int = 0
    steps_completed: int | None = None
    error: BatchError | None = None


# ═══════════════════════════════════════════════════
# PERSISTED OUTPUTS
# ═══════════════════════════════════════════════════

@dataclass
class Finding:
    """The durable per-provision verdict. Exactly one per provision per analysis."""
    provision_id: str
    priority: str
    matched: bool
    confidence: float
    evidence_chunk_ids: list[str] = field(default_factory=list)
    evidence_pages: list[int] = field(default_factory=list)
    evidence_excerpts: list[str] = field(default_factory=list)
    reasoning_summary: str = ""
    recommended_action: str | None = None
    screening_result: str = NOT_ANALYZED
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class AnalysisError:
    message: str
    code: str | None = None
    batches_failed: int = 0
    batches_succeeded: int = 0
    failed_provision_ids: list[str] = field(default_factory=list)


@dataclass
class Analysis:
    analysis_id: str
    document_id: str
    tenant_id: str
    model: str
    status: str = STATUS_RUNNING
    started_at: str = field(default_factory=utcnow)
    completed_at: str | None = None
    summary_counts: dict[str, int] | None = None
    error: AnalysisError | None = None
    provision_ids: list[str] = field(default_factory=list)
    progress: list[dict[str, Any]] = field(default_factory=list)

    def log(self, stage: str, message: str, detail: dict | None = None) -> None:
        entry = {"timestamp": utcnow(), "stage": stage, "message": message}
        if detail:
            entry["detail"] = detail
        self.progress.append(entry)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Analysis":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        err = known.get("error")
        if isinstance(err, dict):
            known["error"] = AnalysisError(**err)
        return cls(**known)
