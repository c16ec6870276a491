from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from ..cache import MemoryCache, invalidate_user_caches
from ..jobs import JobManager, JobSpec, QueueFullError
from ..openai_client import OpenAIClient
from ..processors import (
    BarcodeAnalysisPayload,
    TextAnalysisPayload,
    WaterAnalysisPayload,
    barcode_analysis_job,
    text_analysis_job,
    water_analysis_job,
)
from ..status import JobStatusQuery
from ..vision_client import VisionClient
from .errors import (
    JobNotFoundError,
    job_not_found_handler,
    queue_full_handler,
    validation_error_handler,
    value_error_handler,
)
from .middleware import request_id_middleware
from .schemas import (
    AnalyzeBarcodeRequest,
    AnalyzeTextRequest,
    AnalyzeWaterRequest,
    CacheInvalidateResponse,
    CacheStatsResponse,
    JobCreateResponse,
    JobStatsResponse,
    JobStatusResponse,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------- dependencies


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def get_status_query(request: Request) -> JobStatusQuery:
    return request.app.state.status_query


def get_cache(request: Request) -> MemoryCache:
    return request.app.state.cache


def get_openai_client(request: Request) -> OpenAIClient:
    return request.app.state.openai_client


def get_vision_client(request: Request) -> VisionClient:
    return request.app.state.vision_client


# ------------------------------------------------------------------- app


def create_app(
    openai_client: OpenAIClient | None = None,
    cache: MemoryCache | None = None,
    job_manager: JobManager | None = None,
    vision_client: VisionClient | None = None,
) -> FastAPI:
    """Build the API. Collaborators default to ones configured from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = job_manager if job_manager is not None else JobManager()
        client = openai_client if openai_client is not None else OpenAIClient()
        vision = vision_client if vision_client is not None else VisionClient()

        app.state.job_manager = manager
        app.state.status_query = JobStatusQuery(manager)
        app.state.cache = cache if cache is not None else MemoryCache()
        app.state.openai_client = client
        app.state.vision_client = vision

        await manager.start()
        try:
            yield
        finally:
            await manager.stop()
            if openai_client is None:
                client.close()
            if vision_client is None:
                vision.close()

    app = FastAPI(lifespan=lifespan, title="water-ai API", version="0.1.0")

    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(QueueFullError, queue_full_handler)
    app.add_exception_handler(JobNotFoundError, job_not_found_handler)
    app.middleware("http")(request_id_middleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _submit(manager: JobManager, spec: JobSpec, request: Request) -> JobCreateResponse:
    job_id = manager.add_job(uuid.uuid4().hex, spec)
    return JobCreateResponse(
        job_id=job_id, status="pending", request_id=request.state.request_id
    )


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # add_job schedules on the running loop, so submission handlers are async
    @app.post(
        "/api/analyze-water-async", response_model=JobCreateResponse, status_code=202
    )
    async def analyze_water_async(
        body: AnalyzeWaterRequest,
        request: Request,
        manager: JobManager = Depends(get_job_manager),
        client: OpenAIClient = Depends(get_openai_client),
        cache: MemoryCache = Depends(get_cache),
    ) -> JobCreateResponse:
        payload = WaterAnalysisPayload(**body.model_dump())
        resp = _submit(manager, water_analysis_job(payload, client, cache), request)
        logger.info("[Job %s] analyze-water for user %s", resp.job_id, body.user_id)
        return resp

    @app.post(
        "/api/analyze-text-async", response_model=JobCreateResponse, status_code=202
    )
    async def analyze_text_async(
        body: AnalyzeTextRequest,
        request: Request,
        manager: JobManager = Depends(get_job_manager),
        client: OpenAIClient = Depends(get_openai_client),
        cache: MemoryCache = Depends(get_cache),
    ) -> JobCreateResponse:
        payload = TextAnalysisPayload(user_id=body.user_id, description=body.description)
        resp = _submit(manager, text_analysis_job(payload, client, cache), request)
        logger.info("[Job %s] analyze-text for user %s", resp.job_id, body.user_id)
        return resp

    @app.post(
        "/api/analyze-barcode-async", response_model=JobCreateResponse, status_code=202
    )
    async def analyze_barcode_async(
        body: AnalyzeBarcodeRequest,
        request: Request,
        manager: JobManager = Depends(get_job_manager),
        client: OpenAIClient = Depends(get_openai_client),
        vision: VisionClient = Depends(get_vision_client),
        cache: MemoryCache = Depends(get_cache),
    ) -> JobCreateResponse:
        payload = BarcodeAnalysisPayload(**body.model_dump())
        resp = _submit(manager, barcode_analysis_job(payload, client, vision, cache), request)
        logger.info("[Job %s] analyze-barcode for user %s", resp.job_id, body.user_id)
        return resp

    @app.get("/api/job-status/{job_id}", response_model=JobStatusResponse)
    def job_status(
        job_id: str, query: JobStatusQuery = Depends(get_status_query)
    ) -> JobStatusResponse:
        snap = query.get(job_id)
        if snap is None:
            raise JobNotFoundError(job_id)
        return JobStatusResponse(**snap.to_dict())

    @app.get("/api/admin/jobs", response_model=JobStatsResponse)
    def admin_jobs(manager: JobManager = Depends(get_job_manager)) -> JobStatsResponse:
        return JobStatsResponse(**manager.stats(), max_queue_size=manager.max_queue_size)

    @app.get("/api/admin/cache", response_model=CacheStatsResponse)
    def admin_cache(cache: MemoryCache = Depends(get_cache)) -> CacheStatsResponse:
        return CacheStatsResponse(size=cache.size(), max_size=cache.max_size)

    @app.delete("/api/admin/cache/users/{user_id}", response_model=CacheInvalidateResponse)
    def admin_invalidate_user(
        user_id: int, cache: MemoryCache = Depends(get_cache)
    ) -> CacheInvalidateResponse:
        return CacheInvalidateResponse(removed=invalidate_user_caches(cache, user_id))


app = create_app()
