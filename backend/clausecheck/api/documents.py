"""Contract corpus registration and management endpoints."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from clausecheck.config import AUTO_ANALYZE_ON_UPLOAD, DUPLICATE_UPLOAD_POLICY
from clausecheck.pipeline.embedding_cache import EmbeddingCacheNotReadyError
from clausecheck.pipeline.ingestion import (
    DuplicateDocumentError, register_document, delete_document,
)
from clausecheck.pipeline.llm_client import AgentError
from clausecheck.pipeline.models import Chunk
from clausecheck.pipeline.orchestrator import DocumentNotReadyError
from clausecheck.services import Services, get_services, require_tenant, authorize_document

router = APIRouter()
logger = logging.getLogger(__name__)

# Security constants
MAX_CHUNKS_PER_DOCUMENT = 5000
MAX_CHUNK_CHARS = 20000


class ChunkIn(BaseModel):
    chunk_id: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.:\-]+$")
    page_start: int = Field(ge=1)
    page_end: int = Field(ge=1)
    text: str = Field(min_length=1, max_length=MAX_CHUNK_CHARS)
    section_path: str | None = None
    text_hash: str | None = None


class RegisterDocumentRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    gc_name: str | None = None
    project_name: str | None = None
    state: str | None = None
    chunks: list[ChunkIn] = Field(min_length=1, max_length=MAX_CHUNKS_PER_DOCUMENT)
    auto_analyze: bool = AUTO_ANALYZE_ON_UPLOAD
    on_duplicate: Literal["reject", "reuse"] = DUPLICATE_UPLOAD_POLICY


@router.post("", status_code=201)
async def create_document(
    request: RegisterDocumentRequest,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    """Register an already-chunked contract: store, embed and index its chunks."""
    tenant_id = require_tenant(x_tenant_id)
    chunks = [
        Chunk(
            chunk_id=c.chunk_id,
            page_start=c.page_start,
            page_end=c.page_end,
            text=c.text,
            text_hash=c.text_hash or "",
            section_path=c.section_path,
        )
        for c in request.chunks
    ]
    try:
        document = await register_document(
            tenant_id=tenant_id,
            filename=request.filename,
            chunks=chunks,
            document_store=services.document_store,
            chunk_store=services.chunk_store,
            vector_index=services.vector_index,
            embedder=services.embedder,
            gc_name=request.gc_name,
            project_name=request.project_name,
            state=request.state,
            on_duplicate=request.on_duplicate,
        )
    except DuplicateDocumentError as e:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "This contract has already been uploaded",
                "existing_document_id": e.existing_document_id,
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AgentError as e:
        raise HTTPException(status_code=503, detail=f"Embedding provider unavailable: {e.message}")

    message = f"Registered {document['chunk_count']} chunk(s)"
    if document.get("duplicate_of"):
        message += f" (copied from document {document['duplicate_of']})"

    analysis_id = None
    analysis_error = None
    if request.auto_analyze:
        # Registration already succeeded; a failed start is reported, not raised
        try:
            analysis_id = await services.runner.start_analysis(document["document_id"], tenant_id)
            document = await services.document_store.get_document(document["document_id"])
        except (DocumentNotReadyError, EmbeddingCacheNotReadyError) as e:
            logger.warning(f"Auto-analysis not started for {document['document_id']}: {e}")
            analysis_error = str(e)

    return {
        "document": document,
        "message": message,
        "analysis_id": analysis_id,
        "analysis_error": analysis_error,
    }


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    tenant_id = require_tenant(x_tenant_id)
    document = await authorize_document(services, document_id, tenant_id)
    latest = await services.analysis_store.get_latest_analysis(document_id)
    return {
        "document": document,
        "latest_analysis": (
            {"analysis_id": latest.analysis_id, "status": latest.status, "started_at": latest.started_at}
            if latest else None
        ),
    }


@router.delete("/{document_id}")
async def remove_document(
    document_id: str,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    """Delete the document with its chunks, vectors and analyses."""
    tenant_id = require_tenant(x_tenant_id)
    document = await authorize_document(services, document_id, tenant_id)
    if document.get("status") == "analyzing":
        raise HTTPException(status_code=409, detail="Document is being analyzed; try again when it finishes")
    await delete_document(
        tenant_id=tenant_id,
        document_id=document_id,
        document_store=services.document_store,
        chunk_store=services.chunk_store,
        vector_index=services.vector_index,
        analysis_store=services.analysis_store,
    )
    return {"deleted": document_id, "message": "Document deleted"}
