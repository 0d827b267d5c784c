import logging
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from forgeworks_common.config import ServiceConfig
from forgeworks_common.db import JobStore
from forgeworks_common.errors import InvalidRequest, PublishError
from forgeworks_common.logging_config import setup_logging
from forgeworks_common.queue import RedisTransport
from forgeworks_common.schemas import JobStatus

from .auth import api_key_guard, load_api_key
from .submission import SubmissionService

logger = logging.getLogger(__name__)


def create_app(submission: SubmissionService, store: JobStore, api_key: Optional[str] = None) -> FastAPI:
    app = FastAPI(title="Forgeworks", version="0.1.0")
    guard = [Depends(api_key_guard(api_key))]

    @app.exception_handler(InvalidRequest)
    async def invalid_request(_request: Request, exc: InvalidRequest):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def malformed_request(_request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        return JSONResponse(status_code=400, content={"error": f"{where}: {first.get('msg', 'invalid request')}"})

    @app.exception_handler(PublishError)
    async def publish_failed(_request: Request, exc: PublishError):
        return JSONResponse(status_code=503, content={"error": str(exc), "jobId": exc.job_id, "retryable": True})

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/v1/jobs", status_code=202, dependencies=guard)
    def create(blueprint: Any = Body(default=None)):
        job_id = submission.submit(blueprint)
        return {"jobId": job_id, "accepted": True, "message": "Job accepted and is being processed."}

    @app.get("/v1/jobs", dependencies=guard)
    def list_jobs(status: Optional[JobStatus] = Query(default=None),
                  limit: int = Query(default=50, ge=1, le=500)):
        return {"jobs": [j.to_document() for j in store.list_jobs(status=status, limit=limit)]}

    @app.get("/v1/jobs/{job_id}", dependencies=guard)
    def status(job_id: str):
        job = store.get_job(job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"error": "Job not found."})
        return job.to_document()

    return app


def build_app(config: ServiceConfig = None) -> FastAPI:
    """uvicorn --factory forgeworks_api.main:build_app"""
    config = config or ServiceConfig.from_env()
    setup_logging(config.log_level)
    store = JobStore(config.db_path)
    transport = RedisTransport.from_url(
        config.redis_url, prefix=config.queue_prefix,
        visibility_timeout=config.visibility_timeout_s, poll_interval=config.poll_interval_s,
    )
    # bind the worker subscription up front so nothing published before the
    # first worker start is dropped
    transport.ensure_subscription(config.jobs_topic, config.jobs_subscription)
    submission = SubmissionService(store, transport, config.jobs_topic)
    logger.info("Forgeworks API ready (db=%s, topic=%s)", config.db_path, config.jobs_topic)
    return create_app(submission, store, api_key=load_api_key(config.api_key_file))
