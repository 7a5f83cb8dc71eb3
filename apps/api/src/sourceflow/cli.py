from __future__ import annotations

import argparse
from dataclasses import dataclass
import logging
from pathlib import Path

from sourceflow.config import get_settings
from sourceflow.db import get_engine
from sourceflow.errors import PipelineError
from sourceflow.logging_config import setup_logging
from sourceflow.payloads import ChunkPayload
from sourceflow.pipeline import Pipeline
from sourceflow.types import JobType, SourceType

logger = logging.getLogger("sourceflow.cli")

SUPPORTED_EXTENSIONS = {".txt", ".md"}


@dataclass(frozen=True)
class SourceFile:
    relative_path: str
    text: str


def load_source_files(
    source_dir: Path,
    supported_extensions: set[str] | None = None,
) -> list[SourceFile]:
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Source path is not a directory: {source_dir}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    paths = sorted(
        path
        for path in source_dir.rglob("*")
        if path.is_file() and path.suffix.lower() in extensions
    )

    files: list[SourceFile] = []
    for path in paths:
        text = path.read_text(encoding="utf-8").strip()
        if not text:
            continue
        files.append(SourceFile(relative_path=path.relative_to(source_dir).as_posix(), text=text))

    if not files:
        raise ValueError(
            f"No non-empty supported documents found in {source_dir} "
            f"(supported: {sorted(extensions)})"
        )
    return files


def ingest_directory(pipeline: Pipeline, agent_id: str, source_dir: Path) -> list[str]:
    """Register every document under `source_dir` as a file Source and queue its training."""
    source_ids: list[str] = []
    for source_file in load_source_files(source_dir):
        result = pipeline.create_source(
            agent_id,
            SourceType.FILE,
            title=source_file.relative_path,
            content=source_file.text,
            metadata={"source_path": source_file.relative_path},
        )
        if result["job_id"] is None:
            pipeline.queue.enqueue(JobType.CHUNK, result["source_id"], payload=ChunkPayload(reason="created"))
        source_ids.append(result["source_id"])
    return source_ids


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="sourceflow-ingest",
        description="Register a directory of documents as file sources and queue their training",
    )
    parser.add_argument("--agent-id", required=True, help="Agent that owns the created sources")
    parser.add_argument(
        "--source-dir",
        default=settings.ingest_source_dir,
        help="Source directory containing .txt/.md documents",
    )
    parser.add_argument(
        "--process",
        action="store_true",
        help="Drain the job queue in-process after registering the sources",
    )
    parser.add_argument(
        "--max-jobs",
        type=int,
        default=100,
        help="Upper bound on jobs processed with --process",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    pipeline = Pipeline(settings, get_engine())
    try:
        source_ids = ingest_directory(pipeline, args.agent_id, Path(args.source_dir))
        processed = pipeline.trigger_job_processing(args.max_jobs) if args.process else None
    except (PipelineError, OSError, ValueError) as exc:
        logger.error("ingest failed: %s", exc)
        return 1
    finally:
        pipeline.close()

    logger.info(
        "ingest completed agent_id=%s sources=%s processed=%s",
        args.agent_id,
        len(source_ids),
        processed,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
