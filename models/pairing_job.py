"""
Pairing job schemas.

A PairingJob is the persistent state machine driven by the orchestrator:
pending -> processing -> completed | failed. The access credential used to
fetch source images is cleared on completion or failure.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from models.base import BaseSchema
from models.image_insight import ImageInsight
from models.pairing import PairingResult
from exceptions.errors import InvalidJobTransitionError


class JobStatus(str, Enum):
    """Pairing job state."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class UploadMethod(str, Enum):
    """Where source images come from."""
    DROPBOX = "dropbox"
    STAGED = "staged"


class PairingJobCreate(BaseSchema):
    """Submit a new pairing job."""

    owner: str = Field(..., min_length=1, description="User that owns the job")
    folder: str = Field(default="", description="Source folder label")
    image_keys: list[str] = Field(..., min_length=1, description="Image paths or URLs")
    access_token: Optional[str] = Field(
        None,
        description="Short-lived credential for the image source (never echoed back)"
    )

    @field_validator("image_keys")
    @classmethod
    def dedupe_keys(cls, v: list[str]) -> list[str]:
        """Drop blanks and duplicates, keeping listing order."""
        seen: set[str] = set()
        keys = []
        for key in v:
            key = key.strip()
            if key and key not in seen:
                seen.add(key)
                keys.append(key)
        if not keys:
            raise ValueError("image_keys must contain at least one non-empty key")
        return keys


class PairingJob(BaseModel):
    """
    Persistent pairing job record.

    `completed_chunks` holds start offsets of chunks whose classifications
    are in `classifications`; processed_count is derived from them.
    """

    id: str
    owner: str
    status: JobStatus = JobStatus.PENDING
    folder: str = ""
    upload_method: UploadMethod = UploadMethod.STAGED
    image_keys: list[str] = Field(default_factory=list)
    access_token: Optional[str] = None
    total_images: int = 0
    chunk_size: int = Field(default=8, ge=1, description="Fixed at creation so chunk offsets stay stable")
    processed_count: int = 0
    completed_chunks: list[int] = Field(default_factory=list)
    chunk_failures: dict[str, int] = Field(default_factory=dict)
    classifications: list[ImageInsight] = Field(default_factory=list)
    result: Optional[PairingResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def transition_to(self, new_status: JobStatus) -> None:
        """
        Move the job forward.

        Raises:
            InvalidJobTransitionError: If the move is not allowed
        """
        if new_status == self.status:
            return
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidJobTransitionError(self.status.value, new_status.value)
        self.status = new_status
        self.updated_at = datetime.utcnow()

    def clear_credentials(self) -> None:
        self.access_token = None

    def to_response(self) -> "PairingJobResponse":
        """Public view of the job; never includes the credential."""
        return PairingJobResponse(
            id=self.id,
            owner=self.owner,
            status=self.status,
            folder=self.folder,
            upload_method=self.upload_method,
            total_images=self.total_images,
            processed_count=self.processed_count,
            result=self.result,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class PairingJobResponse(BaseSchema):
    """Pairing job as returned to callers."""

    id: str
    owner: str
    status: JobStatus
    folder: str
    upload_method: UploadMethod
    total_images: int
    processed_count: int
    result: Optional[PairingResult] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ChunkRange(BaseSchema):
    """A fixed-size slice of a job's images, keyed by start offset."""

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    keys: list[str]

    @property
    def size(self) -> int:
        return self.end - self.start


class ChunkOutcome(BaseSchema):
    """What happened to one chunk during an invocation."""

    start: int
    status: str = Field(..., pattern="^(done|skipped|failed|timeout)$")
    insights: list[ImageInsight] = Field(default_factory=list)
    error: Optional[str] = None


class InvocationResult(BaseSchema):
    """Returned by every orchestrator invocation."""

    job_id: str
    status: JobStatus
    processed_count: int
    total_images: int
    chunks_processed: int = 0
    chunks_skipped: int = 0
    needs_next_invocation: bool = False
