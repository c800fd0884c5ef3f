import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ValueTag(str, Enum):
    """How a job's results are laid out in Redis."""

    SCALAR = "scalar"
    PARTITIONED = "partitioned"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    job_id: str
    owner_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=data["job_id"],
            owner_id=data.get("owner_id"),
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
            metadata=dict(data.get("metadata") or {}),
        )


STATUS_VALUES = {s.value for s in JobStatus}
OPTIONAL_STR_FIELDS = ["owner_id", "created_at", "updated_at"]


def validate_job(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    Unknown fields are allowed; the pipeline may attach its own.
    """
    errors: List[str] = []

    if not isinstance(data, dict):
        return ["Job record must be a JSON object"]

    status = data.get("status")
    if isinstance(status, Enum):
        status = status.value
    if status is not None and status not in STATUS_VALUES:
        errors.append(f"Field 'status' must be one of {sorted(STATUS_VALUES)}, got {status!r}")

    for f in OPTIONAL_STR_FIELDS:
        if f in data and data[f] is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    if "owner_id" in data and isinstance(data["owner_id"], str) and not data["owner_id"].strip():
        errors.append("Field 'owner_id' must be a non-empty string if provided")

    if "metadata" in data and not isinstance(data["metadata"], dict):
        errors.append("Field 'metadata' must be an object if provided")

    return errors


def validate_results_by_keyword(results: Any) -> List[str]:
    """Check a keyword -> records mapping before it is written as a partitioned hash."""
    if not isinstance(results, dict):
        return ["Results must be an object mapping keyword to a list of records"]

    errors: List[str] = []
    for keyword, records in results.items():
        if not isinstance(keyword, str) or not keyword:
            errors.append(f"Keyword must be a non-empty string, got {keyword!r}")
        if not isinstance(records, list):
            errors.append(f"Results for keyword {keyword!r} must be a list")
    return errors
