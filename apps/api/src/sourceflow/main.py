from datetime import datetime
from functools import lru_cache
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from sourceflow.config import get_settings
from sourceflow.db import get_engine
from sourceflow.errors import AuthenticationError, NotFoundError, PipelineError
from sourceflow.logging_config import setup_logging
from sourceflow.models import BackgroundJobRecord, SourcePageRecord, SourceRecord
from sourceflow.payloads import CrawlOptions
from sourceflow.pipeline import Pipeline
from sourceflow.types import JobStatus, JobType, SourceType

logger = logging.getLogger(__name__)

app = FastAPI(title="Sourceflow API", version="0.1.0")


class CrawlRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_id: str = Field(min_length=1, max_length=64)
    url: str = Field(min_length=1)
    title: str | None = None
    options: CrawlOptions | None = None


class CreateSourceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_id: str = Field(min_length=1, max_length=64)
    source_type: SourceType
    title: str | None = None
    url: str | None = None
    content: str | None = None
    question: str | None = None
    answer: str | None = None
    options: CrawlOptions | None = None
    metadata: dict[str, Any] | None = None


class RecrawlPageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)


class ProcessJobsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_jobs: int = Field(default=10, ge=1, le=1000)


@lru_cache
def get_pipeline() -> Pipeline:
    return Pipeline(get_settings(), get_engine())


PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]


def require_api_key(
    pipeline: PipelineDep,
    x_api_key: Annotated[str | None, Header()] = None,
) -> None:
    expected = pipeline.settings.api_key
    if expected and x_api_key != expected:
        raise AuthenticationError("missing or invalid API key")


router = APIRouter(dependencies=[Depends(require_api_key)])


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    get_engine()


@app.exception_handler(PipelineError)
def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("request failed path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": str(exc), "error_type": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(messages) or "invalid request"},
    )


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unexpected error path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "internal server error"})


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _source_detail(source: SourceRecord) -> dict[str, Any]:
    return {
        "id": source.id,
        "agent_id": source.agent_id,
        "source_type": source.source_type,
        "title": source.title,
        "url": source.url,
        "workflow_status": source.workflow_status,
        "previous_status": source.previous_status,
        "parent_source_id": source.parent_source_id,
        "pending_deletion": source.pending_deletion,
        "progress": source.progress,
        "total_pages": source.total_pages,
        "completed_pages": source.completed_pages,
        "failed_pages": source.failed_pages,
        "original_size": source.original_size,
        "compressed_size": source.compressed_size,
        "metadata": source.metadata_json or {},
        "created_at": _to_iso(source.created_at),
        "updated_at": _to_iso(source.updated_at),
    }


def _page_summary(page: SourcePageRecord) -> dict[str, Any]:
    return {
        "id": page.id,
        "url": page.url,
        "depth": page.depth,
        "status": page.status,
        "retry_count": page.retry_count,
        "error_message": page.error_message,
        "content_size": page.content_size,
        "compressed_size": page.compressed_size,
        "chunks_created": page.chunks_created,
        "started_at": _to_iso(page.started_at),
        "completed_at": _to_iso(page.completed_at),
    }


def _job_summary(job: BackgroundJobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "target_id": job.target_id,
        "status": job.status,
        "priority": job.priority,
    }


def _job_detail(job: BackgroundJobRecord) -> dict[str, Any]:
    return {
        **_job_summary(job),
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "payload_json": job.payload_json,
        "result_json": job.result_json,
        "error": job.error,
        "claimed_by": job.claimed_by,
        "claimed_at": _to_iso(job.claimed_at),
        "available_at": _to_iso(job.available_at),
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "finished_at": _to_iso(job.finished_at),
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/crawl", status_code=202)
def initiate_crawl(request: CrawlRequest, pipeline: PipelineDep) -> dict[str, Any]:
    result = pipeline.initiate_crawl(request.agent_id, request.url, request.options, title=request.title)
    return {"success": True, **result}


@router.post("/sources", status_code=201)
def create_source(request: CreateSourceRequest, pipeline: PipelineDep) -> dict[str, Any]:
    result = pipeline.create_source(
        request.agent_id,
        request.source_type,
        title=request.title,
        url=request.url,
        content=request.content,
        question=request.question,
        answer=request.answer,
        options=request.options,
        metadata=request.metadata,
    )
    return {"success": True, **result}


@router.get("/sources/{source_id}")
def get_source(source_id: str, pipeline: PipelineDep) -> dict[str, Any]:
    with Session(pipeline.engine) as session:
        source = session.get(SourceRecord, source_id)
        if source is None:
            raise NotFoundError(f"source {source_id} not found")
        return {"success": True, "source": _source_detail(source)}


@router.get("/sources/{source_id}/pages")
def list_source_pages(
    source_id: str,
    pipeline: PipelineDep,
    status: str | None = Query(default=None),
) -> dict[str, Any]:
    with Session(pipeline.engine) as session:
        if session.get(SourceRecord, source_id) is None:
            raise NotFoundError(f"source {source_id} not found")
        stmt = select(SourcePageRecord).where(SourcePageRecord.parent_source_id == source_id)
        if status is not None:
            stmt = stmt.where(SourcePageRecord.status == status)
        pages = session.scalars(
            stmt.order_by(SourcePageRecord.depth.asc(), SourcePageRecord.created_at.asc(), SourcePageRecord.id.asc())
        ).all()
        return {"success": True, "pages": [_page_summary(page) for page in pages]}


@router.post("/sources/{source_id}/recrawl", status_code=202)
def recrawl_source(source_id: str, pipeline: PipelineDep) -> dict[str, Any]:
    return {"success": True, **pipeline.recrawl_source(source_id)}


@router.post("/sources/{source_id}/pages/recrawl", status_code=202)
def recrawl_page(source_id: str, request: RecrawlPageRequest, pipeline: PipelineDep) -> dict[str, Any]:
    return {"success": True, **pipeline.recrawl_page(source_id, request.url)}


@router.post("/sources/{source_id}/aggregate")
def trigger_status_aggregation(source_id: str, pipeline: PipelineDep) -> dict[str, Any]:
    return {"success": True, **pipeline.trigger_status_aggregation(source_id)}


@router.delete("/sources/{source_id}", status_code=202)
def request_removal(source_id: str, pipeline: PipelineDep) -> dict[str, Any]:
    return {"success": True, **pipeline.request_removal(source_id, requested_by="api")}


@router.post("/agents/{agent_id}/retrain", status_code=202)
def start_retraining(agent_id: str, pipeline: PipelineDep) -> dict[str, Any]:
    return {"success": True, **pipeline.start_retraining(agent_id)}


@router.post("/jobs/process")
def trigger_job_processing(pipeline: PipelineDep, request: ProcessJobsRequest | None = None) -> dict[str, Any]:
    max_jobs = request.max_jobs if request is not None else 10
    return {"success": True, **pipeline.trigger_job_processing(max_jobs)}


@router.post("/jobs/recover")
def recover_stuck_jobs(pipeline: PipelineDep) -> dict[str, Any]:
    return {"success": True, **pipeline.recover_stuck_jobs()}


@router.get("/jobs")
def list_jobs(
    pipeline: PipelineDep,
    job_type: JobType | None = Query(default=None),
    status: JobStatus | None = Query(default=None),
    target_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict[str, Any]:
    with Session(pipeline.engine) as session:
        stmt = select(BackgroundJobRecord)
        if job_type is not None:
            stmt = stmt.where(BackgroundJobRecord.job_type == job_type.value)
        if status is not None:
            stmt = stmt.where(BackgroundJobRecord.status == status.value)
        if target_id is not None:
            stmt = stmt.where(BackgroundJobRecord.target_id == target_id)
        jobs = session.scalars(
            stmt.order_by(BackgroundJobRecord.created_at.asc(), BackgroundJobRecord.id.asc()).limit(limit)
        ).all()
        return {"success": True, "jobs": [_job_summary(job) for job in jobs]}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, pipeline: PipelineDep) -> dict[str, Any]:
    with Session(pipeline.engine) as session:
        job = session.get(BackgroundJobRecord, job_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        return {"success": True, "job": _job_detail(job)}


app.include_router(router)
