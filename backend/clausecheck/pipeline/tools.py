"""Tool/function definitions for the verification agent.

Each batch gets its own VerificationTools instance bound to one
(tenant, document, analysis) scope and the batch's provisions. The agent
reads the contract through these tools and writes its verdicts through
record_finding / record_batch_findings, which persist immediately, so
findings recorded before a batch fails are kept.

Tool errors are returned to the model as {"error": ...} JSON, never raised.
"""

import json
import logging

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError

from clausecheck.pipeline.models import (
    Chunk, Finding, Provision, ANALYZED_FOUND, ANALYZED_NOT_FOUND,
)

logger = logging.getLogger(__name__)

SEARCH_TOP_K_DEFAULT = 8
SEARCH_TOP_K_MAX = 20
ADJACENT_WINDOW_MAX = 3
SNIPPET_CONTEXT_CHARS = 50
EXACT_FIND_MAX_MATCHES = 50


# ═══════════════════════════════════════════════════
# ARGUMENT MODELS
# ═══════════════════════════════════════════════════

class FindingInput(BaseModel):
    """One verdict as sent by the model. Priority is not trusted from here."""
    model_config = ConfigDict(extra="ignore")

    provision_id: str = Field(validation_alias=AliasChoices("provision_id", "provisionId"))
    matched: bool
    confidence: float = Field(ge=0.0, le=1.0)
    evidence_chunk_ids: list[str] = Field(
        validation_alias=AliasChoices("evidence_chunk_ids", "evidenceChunkIds"))
    evidence_pages: list[int] = Field(
        validation_alias=AliasChoices("evidence_pages", "evidencePages"))
    evidence_excerpts: list[str] = Field(
        validation_alias=AliasChoices("evidence_excerpts", "evidenceExcerpts"))
    reasoning_summary: str = Field(
        default="", validation_alias=AliasChoices("reasoning_summary", "reasoningSummary"))
    recommended_action: str | None = Field(
        default=None, validation_alias=AliasChoices("recommended_action", "recommendedAction"))


class BatchFindingsInput(BaseModel):
    findings: list[dict]


def _chunk_payload(chunk: Chunk) -> dict:
    return {
        "chunk_id": chunk.chunk_id,
        "page_start": chunk.page_start,
        "page_end": chunk.page_end,
        "section_path": chunk.section_path,
        "text": chunk.text,
    }


def _validation_message(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
    )


# ═══════════════════════════════════════════════════
# TOOL TABLE
# ═══════════════════════════════════════════════════

class VerificationTools:
    """Tool table handed to the agent for one verification batch.

    Exposes ``definitions`` (Ollama function format) and
    ``async execute(name, arguments) -> str``.
    """

    def __init__(
        self,
        tenant_id: str,
        document_id: str,
        analysis_id: str,
        provisions: list[Provision],
        chunk_store,
        vector_index,
        analysis_store,
        embedder,
    ):
        self.tenant_id = tenant_id
        self.document_id = document_id
        self.analysis_id = analysis_id
        self.provisions = {p.provision_id: p for p in provisions}
        self.chunk_store = chunk_store
        self.vector_index = vector_index
        self.analysis_store = analysis_store
        self.embedder = embedder
        self.recorded: set[str] = set()
        self._implementations = {
            "search_chunks": self.search_chunks,
            "get_chunk": self.get_chunk,
            "get_adjacent_chunks": self.get_adjacent_chunks,
            "exact_find": self.exact_find,
            "record_finding": self.record_finding,
            "record_batch_findings": self.record_batch_findings,
        }

    @property
    def definitions(self) -> list[dict]:
        return TOOL_DEFINITIONS

    async def execute(self, name: str, arguments: dict) -> str:
        """Execute a tool by name with given arguments. Returns JSON string."""
        fn = self._implementations.get(name)
        if not fn:
            logger.warning(f"Agent requested unknown tool: {name}")
            return json.dumps({"error": f"Unknown tool: {name}"})
        try:
            result = await fn(**arguments)
        except ValidationError as e:
            logger.warning(f"Tool {name} rejected arguments: {_validation_message(e)}")
            return json.dumps({"error": f"Invalid arguments: {_validation_message(e)}"})
        except TypeError as e:
            logger.warning(f"Tool {name} called with bad arguments: {e}")
            return json.dumps({"error": f"Invalid arguments: {e}"})
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return json.dumps({"error": f"Tool execution failed: {e}"})
        return json.dumps(result, default=str, ensure_ascii=False)

    # ── Reading the contract ──

    async def search_chunks(self, query: str, top_k: int = SEARCH_TOP_K_DEFAULT) -> dict:
        top_k = max(1, min(int(top_k), SEARCH_TOP_K_MAX))
        embedding = await self.embedder.embed(query)
        matches = await self.vector_index.search(embedding, self.tenant_id, self.document_id, top_k)
        return {
            "query": query,
            "result_count": len(matches),
            "results": [m.to_dict() for m in matches],
        }

    async def get_chunk(self, chunk_id: str) -> dict:
        chunk = await self.chunk_store.get_chunk(self.document_id, chunk_id)
        if chunk is None:
            return {"error": f"Chunk not found: {chunk_id}"}
        return _chunk_payload(chunk)

    async def get_adjacent_chunks(self, chunk_id: str, window: int = 1) -> dict:
        window = max(1, min(int(window), ADJACENT_WINDOW_MAX))
        chunks = await self.chunk_store.get_adjacent_chunks(self.document_id, chunk_id, window)
        return {"chunk_id": chunk_id, "chunks": [_chunk_payload(c) for c in chunks]}

    async def exact_find(self, patterns: list[str]) -> dict:
        if isinstance(patterns, str):
            patterns = [patterns]
        patterns = [p for p in patterns if isinstance(p, str) and p.strip()]
        chunks = await self.chunk_store.get_chunks(self.document_id)

        matches = []
        for chunk in chunks:
            lower_text = chunk.text.lower()
            for pattern in patterns:
                idx = lower_text.find(pattern.lower())
                if idx < 0:
                    continue
                start = max(0, idx - SNIPPET_CONTEXT_CHARS)
                end = min(len(chunk.text), idx + len(pattern) + SNIPPET_CONTEXT_CHARS)
                matches.append({
                    "chunk_id": chunk.chunk_id,
                    "page": chunk.page_start,
                    "snippet": f"...{chunk.text[start:end]}...",
                    "pattern": pattern,
                })
        truncated = len(matches) > EXACT_FIND_MAX_MATCHES
        return {"matches": matches[:EXACT_FIND_MAX_MATCHES], "truncated": truncated}

    # ── Recording verdicts ──

    async def _store_finding(self, data: dict) -> Finding:
        parsed = FindingInput.model_validate(data)
        provision = self.provisions.get(parsed.provision_id)
        if provision is None:
            raise ValueError(
                f"Provision '{parsed.provision_id}' is not part of this batch "
                f"(expected one of: {', '.join(self.provisions)})"
            )
        finding = Finding(
            provision_id=provision.provision_id,
            priority=provision.priority,
            matched=parsed.matched,
            confidence=parsed.confidence,
            evidence_chunk_ids=parsed.evidence_chunk_ids,
            evidence_pages=parsed.evidence_pages,
            evidence_excerpts=parsed.evidence_excerpts,
            reasoning_summary=parsed.reasoning_summary,
            recommended_action=parsed.recommended_action,
            screening_result=ANALYZED_FOUND if parsed.matched else ANALYZED_NOT_FOUND,
        )
        await self.analysis_store.create_finding(self.document_id, self.analysis_id, finding)
        self.recorded.add(finding.provision_id)
        return finding

    async def record_finding(self, **arguments) -> dict:
        try:
            finding = await self._store_finding(arguments)
        except ValidationError:
            raise
        except ValueError as e:
            logger.warning(f"record_finding rejected: {e}")
            return {"ok": False, "error": str(e)}
        return {"ok": True, "provision_id": finding.provision_id}

    async def record_batch_findings(self, findings: list[dict]) -> dict:
        batch = BatchFindingsInput.model_validate({"findings": findings})
        recorded, errors = [], []
        for i, item in enumerate(batch.findings):
            try:
                finding = await self._store_finding(item)
            except ValidationError as e:
                errors.append({"index": i, "error": _validation_message(e)})
            except ValueError as e:
                errors.append({"index": i, "error": str(e)})
            else:
                recorded.append(finding.provision_id)
        if errors:
            logger.warning(f"record_batch_findings: {len(errors)} of {len(batch.findings)} rejected")
        return {"ok": not errors, "count": len(recorded), "recorded": recorded, "errors": errors}

    @property
    def unrecorded(self) -> list[str]:
        return [pid for pid in self.provisions if pid not in self.recorded]


# ═══════════════════════════════════════════════════
# OLLAMA TOOL DEFINITIONS (OpenAI-compatible format)
# ═══════════════════════════════════════════════════

_FINDING_PROPERTIES = {
    "provision_id": {"type": "string", "description": "Provision ID from the batch"},
    "matched": {"type": "boolean", "description": "True only with clear textual evidence"},
    "confidence": {"type": "number", "description": "0.0 to 1.0, per the confidence rubric"},
    "evidence_chunk_ids": {"type": "array", "items": {"type": "string"}},
    "evidence_pages": {"type": "array", "items": {"type": "integer"}},
    "evidence_excerpts": {
        "type": "array", "items": {"type": "string"},
        "description": "Short verbatim quotes from the contract",
    },
    "reasoning_summary": {"type": "string", "description": "Why the provision is or is not matched"},
    "recommended_action": {"type": "string", "description": "Optional next step for the reviewer"},
}
_FINDING_REQUIRED = [
    "provision_id", "matched", "confidence",
    "evidence_chunk_ids", "evidence_pages", "evidence_excerpts", "reasoning_summary",
]

TOOL_DEFINITIONS = [
    {
        "type": "function",
        "function": {
            "name": "search_chunks",
            "description": (
                "Semantic search over this contract's chunks. Returns chunk IDs, "
                "page numbers, similarity scores and text previews."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "What to look for"},
                    "top_k": {"type": "integer", "description": "Number of results (default 8)"},
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_chunk",
            "description": "Fetch the full text of one chunk by ID.",
            "parameters": {
                "type": "object",
                "properties": {
                    "chunk_id": {"type": "string", "description": "Chunk ID"},
                },
                "required": ["chunk_id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_adjacent_chunks",
            "description": (
                "Fetch the chunks immediately before and after a chunk. Use when a "
                "clause is cut off or its language is conditional."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "chunk_id": {"type": "string", "description": "Centre chunk ID"},
                    "window": {"type": "integer", "description": "Chunks on each side (default 1)"},
                },
                "required": ["chunk_id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "exact_find",
            "description": (
                "Case-insensitive exact phrase search across all chunks, e.g. "
                "\"liquidated damages\" or \"OCIP\". Returns snippets with page numbers."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "patterns": {
                        "type": "array", "items": {"type": "string"},
                        "description": "Phrases to search for",
                    },
                },
                "required": ["patterns"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "record_finding",
            "description": "Record the verdict for one provision. Stored immediately.",
            "parameters": {
                "type": "object",
                "properties": _FINDING_PROPERTIES,
                "required": _FINDING_REQUIRED,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "record_batch_findings",
            "description": "Record verdicts for several provisions at once. Stored immediately.",
            "parameters": {
                "type": "object",
                "properties": {
                    "findings": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": _FINDING_PROPERTIES,
                            "required": _FINDING_REQUIRED,
                        },
                    },
                },
                "required": ["findings"],
            },
        },
    },
]
