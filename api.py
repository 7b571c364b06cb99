"""
api.py - FastAPI HTTP layer for the extraction pipeline.

Endpoints:
  - GET    /health
  - POST   /extract                               (one image + optional hints)
  - POST   /extract/batch                         (several images)
  - GET    /cache/stats
  - DELETE /cache/{bank_name}/{account_number}
  - GET    /patterns/stats
  - GET    /patterns/{bank_name}/best-method

No extraction logic lives here; every request is delegated to the
orchestrator built at startup.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from logging_config import get_logger, setup_logging
from orchestrator import ExtractionOrchestrator, create_orchestrator

logger = get_logger("extraction-api")

# Larger uploads are rejected before they reach a provider.
MAX_UPLOAD_BYTES = 15 * 1024 * 1024

orchestrator: Optional[ExtractionOrchestrator] = None


def get_orchestrator() -> ExtractionOrchestrator:
    """Return the shared orchestrator, building it on first use."""
    global orchestrator

    if orchestrator is None:
        orchestrator = create_orchestrator()
    return orchestrator


@asynccontextmanager
async def lifespan(_: FastAPI):
    global orchestrator

    yield
    if orchestrator is not None:
        await orchestrator.aclose()
        orchestrator = None


app = FastAPI(
    title="Bank Transfer Extraction API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _read_upload(upload: UploadFile) -> bytes:
    """Read an UploadFile fully, rejecting empty or oversized files."""
    try:
        data = await upload.read()
    finally:
        await upload.close()
    if not data:
        raise HTTPException(status_code=400, detail=f"Uploaded file '{upload.filename}' is empty.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail=f"Uploaded file '{upload.filename}' is too large.")
    return data


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


@app.get("/health")
def health() -> dict[str, Any]:
    """Service health check."""
    service = get_orchestrator()
    return {"status": "ok", "providers": [adapter.name for adapter in service.adapters]}


@app.post("/extract")
async def extract(
    image: UploadFile = File(...),
    budget_ms: Optional[int] = Form(None),
    bank_hint: Optional[str] = Form(None),
    account_hint: Optional[str] = Form(None),
) -> dict[str, Any]:
    """Extract bank-transfer details from one uploaded image."""
    data = await _read_upload(image)
    if budget_ms is not None and budget_ms <= 0:
        raise HTTPException(status_code=400, detail="budget_ms must be positive.")

    try:
        result = await get_orchestrator().extract(
            data,
            budget_ms=budget_ms,
            bank_hint=_optional_text(bank_hint),
            account_hint=_optional_text(account_hint),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.error(
            "api_extract_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Unexpected server error while extracting.") from exc

    payload = result.model_dump(mode="json")
    payload["needs_manual_entry"] = result.needs_manual_entry
    return payload


@app.post("/extract/batch")
async def extract_batch(
    images: list[UploadFile] = File(...),
    budget_ms: Optional[int] = Form(None),
) -> dict[str, Any]:
    """Extract several images concurrently; failures are isolated per image."""
    if not images:
        raise HTTPException(status_code=400, detail="At least one image is required.")
    if budget_ms is not None and budget_ms <= 0:
        raise HTTPException(status_code=400, detail="budget_ms must be positive.")

    blobs = [await _read_upload(upload) for upload in images]
    try:
        results = await get_orchestrator().extract_batch(blobs, budget_ms=budget_ms)
    except Exception as exc:
        logger.error(
            "api_batch_error | error_type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Unexpected server error while extracting batch.") from exc

    items = []
    for upload, result in zip(images, results):
        item = result.model_dump(mode="json")
        item["filename"] = upload.filename
        item["needs_manual_entry"] = result.needs_manual_entry
        items.append(item)
    return {"count": len(items), "results": items}


@app.get("/cache/stats")
async def cache_stats() -> dict[str, Any]:
    service = get_orchestrator()
    if service.cache is None:
        raise HTTPException(status_code=404, detail="Cache is not configured.")
    stats = await service.cache.stats()
    return stats.model_dump(mode="json")


@app.delete("/cache/{bank_name}/{account_number}")
async def cache_invalidate(bank_name: str, account_number: str) -> dict[str, Any]:
    """Drop one cached entry that the caller knows is stale."""
    service = get_orchestrator()
    if service.cache is None:
        raise HTTPException(status_code=404, detail="Cache is not configured.")
    removed = await service.cache.invalidate(bank_name, account_number)
    return {"removed": removed}


@app.get("/patterns/stats")
async def pattern_stats() -> dict[str, Any]:
    service = get_orchestrator()
    if service.patterns is None:
        raise HTTPException(status_code=404, detail="Pattern learning is not configured.")
    stats = await service.patterns.get_statistics()
    return stats.model_dump(mode="json")


@app.get("/patterns/{bank_name}/best-method")
async def best_method(bank_name: str) -> dict[str, Any]:
    service = get_orchestrator()
    if service.patterns is None:
        raise HTTPException(status_code=404, detail="Pattern learning is not configured.")
    method = await service.patterns.get_best_method_for_bank(bank_name)
    return {"bank_name": bank_name, "best_method": method}


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
