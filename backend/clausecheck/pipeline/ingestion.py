"""Registration of an already-chunked contract corpus.

Strategy:
  1. Hash each chunk's normalized text (duplicate-contract detection).
  2. If the tenant already has a document with the same hashes, either
     reject the upload or reuse that document's chunks and vectors.
  3. Persist the document record and chunks.
  4. Embed chunk texts in provider-sized batches and index them.
  5. Mark the document `embedded` (ready for analysis), or `embed_failed`
     with its chunks removed so the same contract can be uploaded again.
"""

import asyncio
import hashlib
import logging
import re

from clausecheck.config import DUPLICATE_UPLOAD_POLICY
from clausecheck.pipeline.models import Chunk
from clausecheck.pipeline.store import DOC_EMBEDDED, DOC_EMBED_FAILED

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")

DUPLICATE_POLICIES = ("reject", "reuse")


class DuplicateDocumentError(Exception):
    def __init__(self, existing_document_id: str):
        super().__init__(f"Contract already uploaded as document {existing_document_id}")
        self.existing_document_id = existing_document_id


def hash_chunk_text(text: str) -> str:
    normalized = _WS_RE.sub(" ", text).strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def prepare_chunks(chunks: list[Chunk]) -> list[Chunk]:
    """Fill in missing content hashes and validate page ranges."""
    for chunk in chunks:
        if chunk.page_end < chunk.page_start:
            raise ValueError(f"Chunk {chunk.chunk_id}: page_end {chunk.page_end} < page_start {chunk.page_start}")
        if not chunk.text_hash:
            chunk.text_hash = hash_chunk_text(chunk.text)
    return chunks


async def _reuse_duplicate(
    tenant_id: str,
    source_document_id: str,
    document_id: str,
    chunk_store,
    vector_index,
) -> list[Chunk] | None:
    """Copy chunks and vectors of an identical contract.

    Returns None when the copy is complete, otherwise the copied chunks,
    which still need embedding (the source has no usable vectors).
    """
    source_chunks = await chunk_store.get_chunks(source_document_id)
    await chunk_store.save_chunks(tenant_id, document_id, source_chunks)
    copied = await asyncio.to_thread(
        vector_index.copy_document, tenant_id, source_document_id, document_id,
    )
    if copied == len(source_chunks):
        return None
    logger.warning(
        f"Duplicate source {source_document_id} has {copied}/{len(source_chunks)} vectors; re-embedding"
    )
    return source_chunks


async def register_document(
    tenant_id: str,
    filename: str,
    chunks: list[Chunk],
    document_store,
    chunk_store,
    vector_index,
    embedder,
    gc_name: str | None = None,
    project_name: str | None = None,
    state: str | None = None,
    on_duplicate: str = DUPLICATE_UPLOAD_POLICY,
) -> dict:
    """Store, embed and index a chunked contract. Returns the document record.

    With ``on_duplicate="reuse"`` an identical contract of the same tenant
    is registered as a new document sharing the existing chunks and
    vectors (recorded as ``duplicate_of``), without calling the embedder.

    Raises:
        DuplicateDocumentError: same tenant, identical chunk hashes, policy "reject"
        AgentError: embedding provider failure (document left `embed_failed`)
    """
    if on_duplicate not in DUPLICATE_POLICIES:
        raise ValueError(f"Unknown duplicate policy: {on_duplicate}")
    if not chunks:
        raise ValueError("A contract corpus needs at least one chunk")
    prepare_chunks(chunks)

    existing = await chunk_store.find_duplicate_document(tenant_id, [c.text_hash for c in chunks])
    if existing:
        logger.info(f"Duplicate contract for tenant {tenant_id}: matches document {existing}")
        if on_duplicate == "reject":
            raise DuplicateDocumentError(existing)

    document = await document_store.create_document(
        tenant_id=tenant_id,
        filename=filename,
        chunk_count=len(chunks),
        gc_name=gc_name,
        project_name=project_name,
        state=state,
    )
    document_id = document["document_id"]

    if existing:
        remaining = await _reuse_duplicate(
            tenant_id, existing, document_id, chunk_store, vector_index,
        )
        if remaining is None:
            document = await document_store.update_document(
                document_id, status=DOC_EMBEDDED, duplicate_of=existing,
            )
            logger.info(f"Registered document {document_id} ({filename}) as a copy of {existing}")
            return document
        chunks = remaining
        await document_store.update_document(document_id, duplicate_of=existing)
    else:
        await chunk_store.save_chunks(tenant_id, document_id, chunks)

    try:
        embeddings = await embedder.embed_batch([c.text for c in chunks])
        await asyncio.to_thread(vector_index.upsert_chunks, tenant_id, document_id, chunks, embeddings)
    except Exception:
        logger.exception(f"Embedding failed for document {document_id}")
        await chunk_store.delete_chunks(document_id)
        await document_store.set_status(document_id, DOC_EMBED_FAILED)
        raise

    document = await document_store.set_status(document_id, DOC_EMBEDDED)
    logger.info(f"Registered document {document_id} ({filename}): {len(chunks)} chunks embedded")
    return document


async def delete_document(
    tenant_id: str,
    document_id: str,
    document_store,
    chunk_store,
    vector_index,
    analysis_store,
) -> None:
    """Remove vectors, chunks, analyses and the document record."""
    await asyncio.to_thread(vector_index.delete_document, tenant_id, document_id)
    await chunk_store.delete_chunks(document_id)
    await analysis_store.delete_document_analyses(document_id)
    await document_store.delete_document(document_id)
    logger.info(f"Deleted document {document_id}")
