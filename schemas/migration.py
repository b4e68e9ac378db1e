"""
Pydantic schemas for pipeline payloads: destination upserts and run results
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from models.base import RunStatus


class ProfileUpsert(BaseModel):
    """
    Insert-or-update of one profile document, keyed by entity id.

    Carries the full aggregate snapshot for the entity at enqueue time, so a
    later snapshot for the same entity supersedes an earlier one.
    """

    entity_id: str = Field(..., min_length=1)
    lists: Dict[str, List[str]] = Field(default_factory=dict)
    updated_at: datetime

    def document(self) -> Dict[str, Any]:
        """Destination document body used when the profile does not exist yet"""
        return {
            "user_id": self.entity_id,
            **self.lists,
            "updated_at": self.updated_at.isoformat(),
        }

    def payload_size(self) -> int:
        """Approximate serialized size in bytes, used by the byte flush trigger"""
        return len(self.model_dump_json().encode("utf-8"))


class ItemResult(BaseModel):
    """Outcome of one upsert inside a bulk request"""

    entity_id: str
    status: int
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def retryable(self) -> bool:
        return self.status in (409, 429) or self.status >= 500


class WriterStats(BaseModel):
    """Counters kept by the batch writer over its lifetime"""

    batches_flushed: int = 0
    failed_batches: int = 0
    items_written: int = 0
    items_unchanged: int = 0
    items_failed: int = 0


class MigrationResult(BaseModel):
    """
    Outcome of one migration run.

    status is SUCCESS when every flush landed, PARTIAL when the run completed
    but some batches exhausted their retries, CANCELLED when the run stopped
    between pages on request.
    """

    run_id: Optional[str] = None
    stream: str
    source_index: str
    destination_index: str
    status: RunStatus = RunStatus.RUNNING

    pages_processed: int = 0
    records_read: int = 0
    records_valid: int = 0
    records_invalid: int = 0
    records_aggregated: int = 0

    items_enqueued: int = 0
    items_written: int = 0
    items_unchanged: int = 0
    items_failed: int = 0
    failed_batches: int = 0

    initial_watermark: Optional[str] = None
    final_watermark: Optional[str] = None

    error_message: Optional[str] = None

    @computed_field
    @property
    def records_processed(self) -> int:
        return self.records_read

    @property
    def completed_cleanly(self) -> bool:
        return self.status == RunStatus.SUCCESS
