"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from clausecheck.api import analysis, documents
from clausecheck.config import CATALOG_VERSION, VECTOR_BACKEND
from clausecheck.pipeline.llm_client import check_ollama_status
from clausecheck.pipeline.provision_catalog import validate_catalog
from clausecheck.services import Services, build_services, get_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: validate catalog, build provision embeddings, recover interrupted runs."""
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services()
        app.state.services = services

    catalog = services.runner.catalog
    validate_catalog(catalog)

    # Fail fast: no analysis may be accepted before the cache is ready
    if not services.embedding_cache.is_ready:
        await services.embedding_cache.initialize(catalog, services.embedder.embed_batch)

    await services.runner.recover_interrupted_analyses()
    logger.info(f"Startup complete: {len(catalog)} provisions (catalog v{CATALOG_VERSION})")
    yield
    await services.runner.shutdown()


app = FastAPI(
    title="ClauseCheck Contract Provision Review",
    description="Two-pass provision verification for crane and rigging subcontracts",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(documents.router, prefix="/api/documents", tags=["Documents"])
app.include_router(analysis.router, prefix="/api/analyze", tags=["Analysis"])
app.include_router(analysis.results_router, prefix="/api/results", tags=["Results"])


@app.get("/api/health")
async def health(services: Services = Depends(get_services)):
    return {
        "status": "operational",
        "platform": "ClauseCheck",
        "embedding_cache_ready": services.embedding_cache.is_ready,
        "provision_count": len(services.runner.catalog),
        "catalog_version": CATALOG_VERSION,
        "vector_backend": VECTOR_BACKEND,
    }


@app.get("/api/health/llm")
async def check_llm():
    return await check_ollama_status()
