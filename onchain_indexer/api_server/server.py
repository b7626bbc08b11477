"""
FastAPI server: thin ingress over the jobs table.

POST /analyze enqueues an address for indexing (dedup on address);
GET /jobs/{job_id} reports progress. No indexing happens in the request
path; workers pick pending jobs up on their own.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from solders.pubkey import Pubkey

from onchain_indexer import __version__
from onchain_indexer.core.exceptions import StoreError
from onchain_indexer.database import IndexStore, get_store
from onchain_indexer.indexer_logging import get_logger, mask_addr

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------

class AnalyzeRequest(BaseModel):
    """POST /analyze body."""

    address: str = Field(..., min_length=1, max_length=64, description="Solana address (base58)")


class AnalyzeResponse(BaseModel):
    job_id: int = Field(..., description="Job id to poll with GET /jobs/{job_id}")
    address: str
    status: str = Field(..., description="pending | indexing | ready | error")
    created: bool = Field(..., description="True if newly enqueued, False if already tracked")


class JobResponse(BaseModel):
    job_id: int
    address: str
    status: str
    updated_at: int = Field(..., description="Unix timestamp of the last status change")


def validate_address(address: str) -> str:
    """Strip and check the address parses as a Solana public key; 422 otherwise."""
    address = (address or "").strip()
    try:
        Pubkey.from_string(address)
    except Exception:
        raise HTTPException(status_code=422, detail="Invalid Solana address")
    return address


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------

def get_app_store(request: Request) -> IndexStore:
    """Dependency: the store bound to this app."""
    return request.app.state.store


def create_app(store: IndexStore | None = None) -> FastAPI:
    """
    Build the ingress app.

    When store is None the default store (DATABASE_URL / INDEXER_DB_PATH) is
    opened and its schema created at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.store is None:
            app.state.store = get_store()
        try:
            app.state.store.init_db()
        except StoreError as e:
            logger.warning("api_init_db_failed", error=str(e))
        logger.info("api_started")
        yield
        logger.info("api_stopped")

    app = FastAPI(
        title="On-chain Indexer API",
        description="Enqueue Solana addresses for history indexing and poll job status.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store

    @app.post("/analyze", response_model=AnalyzeResponse)
    def analyze(body: AnalyzeRequest, store: IndexStore = Depends(get_app_store)) -> JSONResponse:
        """
        Enqueue an address for indexing.

        Returns 201 when a new pending job was created, 200 when the address
        already has a job (whatever its status).
        """
        address = validate_address(body.address)
        try:
            job, created = store.add_job(address)
        except StoreError as e:
            logger.error("analyze_enqueue_failed", address=mask_addr(address), error=str(e))
            raise HTTPException(status_code=503, detail="Job store unavailable")
        logger.info("analyze_called", address=mask_addr(address), job_id=job.id, created=created)
        resp = AnalyzeResponse(job_id=job.id, address=job.address, status=job.status, created=created)
        return JSONResponse(status_code=201 if created else 200, content=resp.model_dump())

    @app.get("/jobs/{job_id}", response_model=JobResponse)
    def get_job(job_id: int, store: IndexStore = Depends(get_app_store)) -> JobResponse:
        try:
            job = store.get_job(job_id)
        except StoreError as e:
            logger.error("job_status_fetch_failed", job_id=job_id, error=str(e))
            raise HTTPException(status_code=503, detail="Job store unavailable")
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return JobResponse(job_id=job.id, address=job.address, status=job.status, updated_at=job.updated_at)

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Liveness probe: API is up."""
        return {"status": "ok"}

    return app


app = create_app()
