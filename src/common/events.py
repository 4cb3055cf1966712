"""
Shared job schemas for Kafka messaging between the API and the workers.
"""

import uuid
from datetime import datetime, UTC
from typing import Literal
from pydantic import BaseModel, Field


# Base model with ISO datetime serialization
class _BaseEvent(BaseModel):
    model_config = {
        "ser_json_timedelta": "iso8601",
        "ser_json_bytes": "utf8",
    }
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RecomputeReadPagesJob(_BaseEvent):
    """Enqueued once per newly stored reading interval; consumed at-least-once."""

    job_type: Literal["recompute_read_pages"] = "recompute_read_pages"
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    book_id: int = Field(..., description="Book whose read-page count is stale")
    delay: float = Field(0.0, ge=0, description="Seconds to wait before the first attempt")
    max_attempts: int = Field(3, ge=1, description="Total attempts before the job is dropped")
    backoff_delay: float = Field(
        1.0, ge=0, description="Base delay (seconds) for exponential backoff between attempts"
    )
    source: str = Field("reading_api", description="Service that enqueued the job")


RECOMPUTE_READ_PAGES_JOB = "recompute_read_pages"

# Topic names
READ_PAGES_JOBS_TOPIC = "read_pages_jobs"
