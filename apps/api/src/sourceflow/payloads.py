from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from sourceflow.crawl.patterns import compile_pattern


class CrawlOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_pages: int = Field(default=100, ge=1, le=10_000)
    max_depth: int = Field(default=3, ge=0, le=20)
    include_paths: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    respect_robots: bool = True
    mode: Literal["full", "single_page"] = "full"

    @field_validator("include_paths", "exclude_paths")
    @classmethod
    def _validate_patterns(cls, patterns: list[str]) -> list[str]:
        cleaned = [pattern.strip() for pattern in patterns if pattern.strip()]
        for pattern in cleaned:
            compile_pattern(pattern)
        return cleaned


class DiscoverPayload(BaseModel):
    job_type: Literal["discover"] = "discover"
    options: CrawlOptions = Field(default_factory=CrawlOptions)


class CrawlPagePayload(BaseModel):
    job_type: Literal["crawl_page"] = "crawl_page"
    url: str
    depth: int = 0
    respect_robots: bool = True


class ChunkPayload(BaseModel):
    job_type: Literal["chunk"] = "chunk"
    reason: Literal["crawl_completed", "created", "retrain"] = "crawl_completed"


class EmbedPayload(BaseModel):
    job_type: Literal["embed"] = "embed"
    batch_size: int | None = Field(default=None, ge=1)


class AggregatePayload(BaseModel):
    job_type: Literal["aggregate_status"] = "aggregate_status"
    trigger: Literal["page_event", "manual"] = "page_event"


class DeletePayload(BaseModel):
    job_type: Literal["delete"] = "delete"
    requested_by: str | None = None


JobPayload = Annotated[
    Union[
        DiscoverPayload,
        CrawlPagePayload,
        ChunkPayload,
        EmbedPayload,
        AggregatePayload,
        DeletePayload,
    ],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[Any] = TypeAdapter(JobPayload)

_DEFAULT_PAYLOADS: dict[str, type[BaseModel]] = {
    "discover": DiscoverPayload,
    "chunk": ChunkPayload,
    "embed": EmbedPayload,
    "aggregate_status": AggregatePayload,
    "delete": DeletePayload,
}


def parse_payload(job_type: str, payload_json: dict[str, Any] | None) -> BaseModel:
    if not payload_json:
        default = _DEFAULT_PAYLOADS.get(job_type)
        if default is None:
            raise ValueError(f"{job_type} jobs require a payload")
        return default()
    data = dict(payload_json)
    data.setdefault("job_type", job_type)
    if data["job_type"] != job_type:
        raise ValueError(f"payload kind {data['job_type']!r} does not match job type {job_type!r}")
    return _payload_adapter.validate_python(data)


def dump_payload(payload: BaseModel | None) -> dict[str, Any] | None:
    if payload is None:
        return None
    return payload.model_dump(mode="json")
