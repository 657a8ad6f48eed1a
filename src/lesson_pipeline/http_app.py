"""HTTP trigger surface: dispatch invocations and polled status."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from lesson_pipeline import __version__
from lesson_pipeline.config import Settings
from lesson_pipeline.pipeline.runtime import (
    OwnerExistsError,
    Runtime,
    open_runtime,
    submit_ingest,
)

logger = logging.getLogger(__name__)


def _error(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the app; the runtime is opened once per app lifespan."""

    app_settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        with open_runtime(app_settings) as runtime:
            app.state.runtime = runtime
            yield

    app = FastAPI(title="lesson-pipeline", version=__version__, lifespan=lifespan)

    def _runtime(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.exception_handler(OperationalError)
    async def handle_store_unavailable(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error("Job store unavailable on %s: %s", request.url.path, exc)
        return _error("STORE_UNAVAILABLE", "job store is unavailable", 503)

    @app.api_route("/dispatch", methods=["GET", "POST"])
    async def dispatch(request: Request) -> dict[str, Any]:
        report = await run_in_threadpool(_runtime(request).dispatcher().run_once)
        return {"status": "idle" if report.idle else "ok", "report": report.to_dict()}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request) -> Any:
        details = await run_in_threadpool(
            _runtime(request).repository.get_job_details,
            job_id=job_id,
        )
        if details is None:
            return _error("JOB_NOT_FOUND", f"job not found: {job_id}", 404)
        return {
            **details.job.to_dict(),
            "payload": details.job.payload,
            "events": [
                {
                    "event_type": event.event_type,
                    "status_from": event.status_from.value if event.status_from else None,
                    "status_to": event.status_to.value if event.status_to else None,
                    "details": event.details,
                    "created_at": event.created_at.isoformat(),
                }
                for event in details.events
            ],
        }

    @app.get("/owners/{owner_ref}")
    async def get_owner(owner_ref: str, request: Request) -> Any:
        runtime = _runtime(request)
        owner = await run_in_threadpool(runtime.repository.get_owner, owner_ref=owner_ref)
        if owner is None:
            return _error("OWNER_NOT_FOUND", f"owner not found: {owner_ref}", 404)
        jobs = await run_in_threadpool(runtime.repository.list_owner_jobs, owner_ref=owner_ref)
        return {**owner.to_dict(), "jobs": [job.to_dict() for job in jobs]}

    @app.post("/owners/{owner_ref}/ingest", status_code=202)
    async def ingest(
        owner_ref: str,
        request: Request,
        filename: str = Query(default="source.txt"),
    ) -> Any:
        content_type = request.headers.get("content-type", "").split(";", 1)[0].strip()
        body = await request.body()
        if not body:
            return _error("EMPTY_SOURCE", "request body must contain the source file", 400)
        try:
            job_id = await run_in_threadpool(
                submit_ingest,
                _runtime(request),
                owner_ref=owner_ref,
                source=body,
                content_type=content_type,
                filename=filename,
            )
        except OwnerExistsError as error:
            return _error("OWNER_EXISTS", str(error), 409)
        return {"owner_ref": owner_ref, "job_id": job_id}

    @app.post("/owners/{owner_ref}/retry-failed")
    async def retry_failed(owner_ref: str, request: Request) -> Any:
        runtime = _runtime(request)
        owner = await run_in_threadpool(runtime.repository.get_owner, owner_ref=owner_ref)
        if owner is None:
            return _error("OWNER_NOT_FOUND", f"owner not found: {owner_ref}", 404)
        job_ids = await run_in_threadpool(
            runtime.repository.retry_failed_for_owner,
            owner_ref=owner_ref,
        )
        return {"owner_ref": owner_ref, "requeued": job_ids}

    return app
