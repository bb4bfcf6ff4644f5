import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .config import AppSettings, load_settings
from .events import EventBus, job_event_stream
from .job_store import InMemoryJobStore, JobStore
from .llm import GeminiClient, GroqClient, ThrottledBackend
from .orchestrator import SCHEDULERS, JobOrchestrator
from .router import InferenceRouter
from .schemas import CreateJobRequest
from .tools import WebTools


logger = logging.getLogger("uvicorn.error")


def configure_logging(level: str) -> None:
    logging.basicConfig(format="%(levelname)s:     %(name)s %(message)s")
    logger.setLevel(str(level or "INFO").upper())


def build_fast_backend(settings: AppSettings) -> GroqClient:
    return GroqClient(
        settings.groq_api_key,
        settings.groq_model,
        settings.groq_base_url,
        min_interval_s=settings.groq_min_interval_s,
        backoff_base_s=settings.groq_backoff_base_s,
        max_retries=settings.backend_max_retries,
        timeout_s=settings.request_timeout_s,
    )


def build_quality_backend(settings: AppSettings) -> GeminiClient:
    return GeminiClient(
        settings.gemini_api_key,
        settings.gemini_model,
        settings.gemini_base_url,
        min_interval_s=settings.gemini_min_interval_s,
        backoff_base_s=settings.gemini_backoff_base_s,
        max_retries=settings.backend_max_retries,
        timeout_s=settings.request_timeout_s,
    )


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


router = APIRouter()


@router.get("/health")
async def health(request: Request):
    fast: ThrottledBackend = request.app.state.fast_backend
    quality: Optional[ThrottledBackend] = request.app.state.quality_backend
    return {
        "status": "ok",
        "backends": {"fast": fast.enabled, "quality": bool(quality and quality.enabled)},
    }


@router.post("/api/v1/jobs")
async def create_job(
    body: Optional[CreateJobRequest] = None,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    try:
        job_id = await orchestrator.create_job((body.topic if body else None) or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"job_id": job_id, "status": "queued"}


@router.get("/api/v1/jobs")
async def list_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    jobs = await orchestrator.list_jobs()
    return {"jobs": [job.summary() for job in jobs]}


@router.get("/api/v1/jobs/{job_id}")
async def get_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    job = await orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.model_dump()


@router.get("/api/v1/jobs/{job_id}/events")
async def stream_job_events(
    job_id: str,
    store: JobStore = Depends(get_store),
    bus: EventBus = Depends(get_event_bus),
    settings: AppSettings = Depends(get_settings),
):
    if await store.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return StreamingResponse(
        job_event_stream(job_id, store, bus, keepalive_interval_s=settings.keepalive_interval_s),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/api/v1/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        cancelled = await orchestrator.cancel_job(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Job not found")
    if not cancelled:
        raise HTTPException(status_code=409, detail="Job already finished")
    job = await orchestrator.get_job(job_id)
    return {"ok": True, "status": job.status if job else "cancelled"}


def create_app(
    settings: AppSettings,
    *,
    orchestrator: Optional[JobOrchestrator] = None,
    fast_backend: Optional[ThrottledBackend] = None,
    quality_backend: Optional[ThrottledBackend] = None,
    web_tools: Optional[WebTools] = None,
    store: Optional[JobStore] = None,
) -> FastAPI:
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        logger.info(
            "Backends: fast=%s quality=%s",
            state.fast_backend.enabled,
            bool(state.quality_backend and state.quality_backend.enabled),
        )
        try:
            yield
        finally:
            await state.orchestrator.shutdown()
            await state.fast_backend.close()
            if state.quality_backend is not None:
                await state.quality_backend.close()
            await state.web_tools.close()

    app = FastAPI(title="AutoResearch Job Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.fast_backend = fast_backend or build_fast_backend(settings)
    app.state.quality_backend = quality_backend or build_quality_backend(settings)
    app.state.web_tools = web_tools or WebTools(settings)
    if orchestrator is None:
        job_store = store or InMemoryJobStore()
        orchestrator = JobOrchestrator(
            job_store,
            EventBus(job_store),
            InferenceRouter(app.state.fast_backend, app.state.quality_backend),
            app.state.web_tools,
            max_attempts=settings.max_attempts,
            step_delay_s=settings.step_delay_s,
            scrape_context_chars=settings.scrape_context_chars,
            scheduler=SCHEDULERS[settings.step_order](),
        )
    app.state.orchestrator = orchestrator
    app.state.store = orchestrator.store
    app.state.bus = orchestrator.bus

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("autoresearch.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
