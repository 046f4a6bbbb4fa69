"""Process-wide service wiring shared by the API routers."""

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from clausecheck.pipeline.embedding_cache import ProvisionEmbeddingCache
from clausecheck.pipeline.llm_client import OllamaAgent, OllamaEmbedder
from clausecheck.pipeline.orchestrator import (
    AnalysisRunner, DocumentAccessError, DocumentNotFoundError,
)
from clausecheck.pipeline.provision_catalog import get_provision_catalog
from clausecheck.pipeline.rag_store import create_vector_index
from clausecheck.pipeline.store import AnalysisStore, ChunkStore, DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    document_store: DocumentStore
    chunk_store: ChunkStore
    analysis_store: AnalysisStore
    vector_index: object
    embedder: object
    embedding_cache: ProvisionEmbeddingCache
    runner: AnalysisRunner


def build_services() -> Services:
    document_store = DocumentStore()
    chunk_store = ChunkStore()
    analysis_store = AnalysisStore()
    vector_index = create_vector_index()
    embedder = OllamaEmbedder()
    embedding_cache = ProvisionEmbeddingCache()
    runner = AnalysisRunner(
        embedding_cache=embedding_cache,
        vector_index=vector_index,
        embedder=embedder,
        agent=OllamaAgent(),
        document_store=document_store,
        chunk_store=chunk_store,
        analysis_store=analysis_store,
        catalog=get_provision_catalog(),
    )
    return Services(
        document_store=document_store,
        chunk_store=chunk_store,
        analysis_store=analysis_store,
        vector_index=vector_index,
        embedder=embedder,
        embedding_cache=embedding_cache,
        runner=runner,
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


def require_tenant(tenant_id: str) -> str:
    if not tenant_id or not tenant_id.strip():
        raise HTTPException(status_code=400, detail="Missing X-Tenant-Id header")
    return tenant_id.strip()


async def authorize_document(services: Services, document_id: str, tenant_id: str) -> dict:
    """Document record for this tenant, or the matching HTTP error."""
    try:
        return await services.runner.authorize(document_id, tenant_id)
    except DocumentNotFoundError:
        raise HTTPException(status_code=404, detail="Document not found")
    except DocumentAccessError:
        logger.warning(f"Tenant {tenant_id} denied access to document {document_id}")
        raise HTTPException(status_code=403, detail="Access denied")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
