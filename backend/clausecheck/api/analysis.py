"""Analysis endpoints: start, poll, findings and the aggregated results view."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from clausecheck.pipeline.embedding_cache import EmbeddingCacheNotReadyError
from clausecheck.pipeline.orchestrator import DocumentNotReadyError
from clausecheck.services import Services, get_services, require_tenant, authorize_document

router = APIRouter()
results_router = APIRouter()
logger = logging.getLogger(__name__)


class AnalyzeRequest(BaseModel):
    provision_ids: list[str] | None = None   # None → full catalog


@router.post("/{document_id}", status_code=202)
async def start_analysis(
    document_id: str,
    request: AnalyzeRequest | None = None,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    """Start an analysis. Returns immediately; poll the analysis endpoint for status."""
    tenant_id = require_tenant(x_tenant_id)
    await authorize_document(services, document_id, tenant_id)

    catalog = services.runner.catalog
    provisions = catalog
    if request is not None and request.provision_ids is not None:
        by_id = {p.provision_id: p for p in catalog}
        unknown = [pid for pid in request.provision_ids if pid not in by_id]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown provision ids: {', '.join(unknown)}")
        provisions = [by_id[pid] for pid in dict.fromkeys(request.provision_ids)]
        if not provisions:
            raise HTTPException(status_code=400, detail="No provisions selected")

    try:
        analysis_id = await services.runner.start_analysis(document_id, tenant_id, provisions)
    except DocumentNotReadyError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EmbeddingCacheNotReadyError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "analysis_id": analysis_id,
        "document_id": document_id,
        "provision_count": len(provisions),
        "status": "running",
        "message": "Analysis started",
    }


@router.get("/{document_id}/{analysis_id}")
async def get_analysis(
    document_id: str,
    analysis_id: str,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    tenant_id = require_tenant(x_tenant_id)
    await authorize_document(services, document_id, tenant_id)
    try:
        analysis = await services.runner.get_analysis(document_id, analysis_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return analysis.to_dict()


@router.get("/{document_id}/{analysis_id}/findings")
async def get_findings(
    document_id: str,
    analysis_id: str,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    tenant_id = require_tenant(x_tenant_id)
    await authorize_document(services, document_id, tenant_id)
    try:
        analysis = await services.runner.get_analysis(document_id, analysis_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    findings = await services.runner.get_findings(document_id, analysis_id)
    return {
        "analysis_id": analysis_id,
        "status": analysis.status,
        "findings": [f.to_dict() for f in findings],
        "finding_count": len(findings),
    }


@results_router.get("/{document_id}")
async def get_results(
    document_id: str,
    x_tenant_id: str = Header(default="", alias="X-Tenant-Id"),
    services: Services = Depends(get_services),
):
    """Latest analysis of the document with per-provision verdicts and risk score."""
    tenant_id = require_tenant(x_tenant_id)
    await authorize_document(services, document_id, tenant_id)
    results = await services.runner.get_results(document_id)
    if results is None:
        raise HTTPException(status_code=404, detail="This contract has not been analyzed yet")
    return results
