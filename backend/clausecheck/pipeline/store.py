"""File-backed JSON stores for documents, chunks, analyses and findings.

Layout under DATA_DIR:
    documents/{document_id}.json
    chunks/{document_id}.json              {"tenant_id", "document_id", "chunks": [...]}
    analyses/{document_id}/{analysis_id}.json
    analyses/{document_id}/{analysis_id}.findings.json   {provision_id: finding}

Every write goes through a temp file in the target directory followed by
os.replace(), so a crash never leaves half-written JSON behind. Each store
serialises its writers with one asyncio.Lock.
"""

import json
import os
import asyncio
import re
import shutil
import tempfile
import uuid
import logging
from collections import Counter, OrderedDict
from pathlib import Path

from clausecheck.config import DATA_DIR, CHUNK_CACHE_DOCUMENTS
from clausecheck.pipeline.models import (
    Analysis, Chunk, Finding, STATUS_RUNNING, utcnow,
)

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")

# Document statuses
DOC_UPLOADED = "uploaded"
DOC_EMBEDDED = "embedded"
DOC_ANALYZING = "analyzing"
DOC_COMPLETE = "complete"
DOC_FAILED = "failed"
DOC_EMBED_FAILED = "embed_failed"   # never indexed; not analyzable


def _safe_id(value: str, kind: str = "id") -> str:
    """Reject identifiers that could escape the data directory."""
    if not isinstance(value, str) or not _ID_PATTERN.match(value):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


def _atomic_write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    # Same directory so os.replace() stays on one device
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=".write_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(payload)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_json(path: Path, default=None):
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


# ═══════════════════════════════════════════════════
# DOCUMENTS
# ═══════════════════════════════════════════════════

class DocumentStore:
    """Contract records: owner tenant, metadata and lifecycle status."""

    def __init__(self, root: Path | None = None):
        self.root = Path(root or DATA_DIR) / "documents"
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, document_id: str) -> Path:
        return self.root / f"{_safe_id(document_id, 'document_id')}.json"

    async def create_document(
        self,
        tenant_id: str,
        filename: str,
        chunk_count: int = 0,
        gc_name: str | None = None,
        project_name: str | None = None,
        state: str | None = None,
        document_id: str | None = None,
    ) -> dict:
        record = {
            "document_id": document_id or uuid.uuid4().hex[:16],
            "tenant_id": tenant_id,
            "filename": filename,
            "status": DOC_UPLOADED,
            "gc_name": gc_name,
            "project_name": project_name,
            "state": state,
            "chunk_count": chunk_count,
            "created_at": utcnow(),
        }
        async with self._lock:
            _atomic_write_json(self._path(record["document_id"]), record)
        return record

    async def get_document(self, document_id: str) -> dict | None:
        return _read_json(self._path(document_id))

    async def update_document(self, document_id: str, **fields) -> dict:
        async with self._lock:
            record = _read_json(self._path(document_id))
            if record is None:
                raise KeyError(f"Document {document_id} not found")
            record.update(fields)
            _atomic_write_json(self._path(document_id), record)
        return record

    async def set_status(self, document_id: str, status: str) -> dict:
        return await self.update_document(document_id, status=status)

    async def delete_document(self, document_id: str) -> bool:
        path = self._path(document_id)
        async with self._lock:
            if not path.exists():
                return False
            path.unlink()
        return True


# ═══════════════════════════════════════════════════
# CHUNKS
# ═══════════════════════════════════════════════════

class ChunkStore:
    """Segmented contract text, ordered as ingested.

    Adjacency is positional: the neighbours of a chunk are the chunks stored
    immediately before and after it. Parsed corpora of the most recently
    used documents are kept in a small LRU cache.
    """

    def __init__(self, root: Path | None = None, cache_size: int = CHUNK_CACHE_DOCUMENTS):
        self.root = Path(root or DATA_DIR) / "chunks"
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self.cache_size = max(0, cache_size)
        self._cache: OrderedDict[str, list[Chunk]] = OrderedDict()

    def _path(self, document_id: str) -> Path:
        return self.root / f"{_safe_id(document_id, 'document_id')}.json"

    def _remember(self, document_id: str, chunks: list[Chunk]) -> None:
        if self.cache_size == 0:
            return
        self._cache[document_id] = chunks
        self._cache.move_to_end(document_id)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def _load(self, document_id: str) -> list[Chunk]:
        if document_id in self._cache:
            self._cache.move_to_end(document_id)
            return self._cache[document_id]
        data = _read_json(self._path(document_id))
        chunks = [Chunk.from_dict(c) for c in data["chunks"]] if data else []
        if data:
            self._remember(document_id, chunks)
        return chunks

    async def save_chunks(self, tenant_id: str, document_id: str, chunks: list[Chunk]) -> int:
        ids = [c.chunk_id for c in chunks]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate chunk_id in corpus")
        async with self._lock:
            _atomic_write_json(self._path(document_id), {
                "tenant_id": tenant_id,
                "document_id": document_id,
                "hash_key": sorted(c.text_hash for c in chunks),
                "chunks": [c.to_dict() for c in chunks],
            })
            self._remember(document_id, list(chunks))
        logger.info(f"ChunkStore: Saved {len(chunks)} chunks for document {document_id}")
        return len(chunks)

    async def get_chunks(self, document_id: str, chunk_ids: list[str] | None = None) -> list[Chunk]:
        """All chunks in corpus order, or the requested ones in request order.

        Unknown ids are skipped.
        """
        chunks = self._load(document_id)
        if chunk_ids is None:
            return list(chunks)
        by_id = {c.chunk_id: c for c in chunks}
        return [by_id[cid] for cid in chunk_ids if cid in by_id]

    async def get_chunk(self, document_id: str, chunk_id: str) -> Chunk | None:
        for chunk in self._load(document_id):
            if chunk.chunk_id == chunk_id:
                return chunk
        return None

    async def get_adjacent_chunks(self, document_id: str, chunk_id: str, window: int = 1) -> list[Chunk]:
        """Chunks within ``window`` positions of ``chunk_id``, excluding itself."""
        chunks = self._load(document_id)
        for idx, chunk in enumerate(chunks):
            if chunk.chunk_id == chunk_id:
                start = max(0, idx - window)
                end = min(len(chunks), idx + window + 1)
                return [c for i, c in enumerate(chunks[start:end], start) if i != idx]
        return []

    async def find_duplicate_document(self, tenant_id: str, text_hashes: list[str]) -> str | None:
        """Return an existing document of this tenant with identical chunk hashes."""
        if not text_hashes:
            return None
        target = sorted(text_hashes)
        for path in self.root.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"ChunkStore: Skipping unreadable corpus {path.name}: {e}")
                continue
            if data.get("tenant_id") != tenant_id:
                continue
            if Counter(data.get("hash_key", [])) == Counter(target):
                return data["document_id"]
        return None

    async def delete_chunks(self, document_id: str) -> None:
        async with self._lock:
            self._path(document_id).unlink(missing_ok=True)
            self._cache.pop(document_id, None)


# ═══════════════════════════════════════════════════
# ANALYSES + FINDINGS
# ═══════════════════════════════════════════════════

class AnalysisStore:
    """Analysis records and their findings (one finding per provision)."""

    def __init__(self, root: Path | None = None):
        self.root = Path(root or DATA_DIR) / "analyses"
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _doc_dir(self, document_id: str) -> Path:
        return self.root / _safe_id(document_id, "document_id")

    def _analysis_path(self, document_id: str, analysis_id: str) -> Path:
        return self._doc_dir(document_id) / f"{_safe_id(analysis_id, 'analysis_id')}.json"

    def _findings_path(self, document_id: str, analysis_id: str) -> Path:
        return self._doc_dir(document_id) / f"{_safe_id(analysis_id, 'analysis_id')}.findings.json"

    # ── Analyses ──

    async def create_analysis(self, analysis: Analysis) -> Analysis:
        async with self._lock:
            _atomic_write_json(
                self._analysis_path(analysis.document_id, analysis.analysis_id),
                analysis.to_dict(),
            )
        return analysis

    async def update_analysis(self, analysis: Analysis) -> Analysis:
        async with self._lock:
            _atomic_write_json(
                self._analysis_path(analysis.document_id, analysis.analysis_id),
                analysis.to_dict(),
            )
        return analysis

    async def get_analysis(self, document_id: str, analysis_id: str) -> Analysis | None:
        data = _read_json(self._analysis_path(document_id, analysis_id))
        return Analysis.from_dict(data) if data else None

    def _iter_analyses(self, doc_dir: Path):
        for path in doc_dir.glob("*.json"):
            if path.name.endswith(".findings.json"):
                continue
            try:
                yield Analysis.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (json.JSONDecodeError, OSError, TypeError) as e:
                logger.warning(f"AnalysisStore: Skipping unreadable analysis {path}: {e}")

    async def get_latest_analysis(self, document_id: str) -> Analysis | None:
        doc_dir = self._doc_dir(document_id)
        if not doc_dir.exists():
            return None
        analyses = list(self._iter_analyses(doc_dir))
        if not analyses:
            return None
        return max(analyses, key=lambda a: a.started_at)

    async def list_running_analyses(self) -> list[Analysis]:
        running = []
        for doc_dir in self.root.iterdir():
            if doc_dir.is_dir():
                running.extend(a for a in self._iter_analyses(doc_dir) if a.status == STATUS_RUNNING)
        return running

    async def delete_document_analyses(self, document_id: str) -> None:
        async with self._lock:
            shutil.rmtree(self._doc_dir(document_id), ignore_errors=True)

    # ── Findings ──

    async def create_finding(self, document_id: str, analysis_id: str, finding: Finding) -> Finding:
        """Idempotent upsert keyed by provision id. Last write wins."""
        path = self._findings_path(document_id, analysis_id)
        async with self._lock:
            findings = _read_json(path, default={})
            findings[finding.provision_id] = finding.to_dict()
            _atomic_write_json(path, findings)
        return finding

    async def get_finding(self, document_id: str, analysis_id: str, provision_id: str) -> Finding | None:
        findings = _read_json(self._findings_path(document_id, analysis_id), default={})
        data = findings.get(provision_id)
        return Finding.from_dict(data) if data else None

    async def get_findings(self, document_id: str, analysis_id: str) -> list[Finding]:
        findings = _read_json(self._findings_path(document_id, analysis_id), default={})
        return [Finding.from_dict(f) for f in findings.values()]
