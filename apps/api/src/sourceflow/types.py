from enum import Enum


class SourceType(str, Enum):
    WEBSITE = "website"
    FILE = "file"
    TEXT = "text"
    QA = "qa"


class WorkflowStatus(str, Enum):
    CREATED = "CREATED"
    CRAWLING = "CRAWLING"
    COMPLETED = "COMPLETED"
    TRAINING = "TRAINING"
    TRAINED = "TRAINED"
    PENDING_REMOVAL = "PENDING_REMOVAL"
    REMOVED = "REMOVED"
    ERROR = "ERROR"


class PageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    DISCOVER = "discover"
    CRAWL_PAGE = "crawl_page"
    CHUNK = "chunk"
    EMBED = "embed"
    AGGREGATE_STATUS = "aggregate_status"
    DELETE = "delete"


class ChunkQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Lower value is claimed first.
JOB_PRIORITY = {
    JobType.DELETE: 1,
    JobType.AGGREGATE_STATUS: 2,
    JobType.DISCOVER: 3,
    JobType.CRAWL_PAGE: 5,
    JobType.CHUNK: 6,
    JobType.EMBED: 7,
}
