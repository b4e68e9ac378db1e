"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from datetime import datetime
from models.base import RunStatus


# ============================================================================
# Checkpoint Schemas
# ============================================================================

class CheckpointInfo(BaseModel):
    """Watermark and run statistics of one stream"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    stream: str
    watermark: Optional[str] = None
    status: RunStatus
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_runs: int = 0
    total_records_processed: int = 0
    last_records_processed: int = 0
    error_message: Optional[str] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "search_connected": True,
                "total_streams": 1,
                "failed_streams": 0,
                "checkpoints": [
                    {
                        "stream": "watch-events",
                        "watermark": "2024-01-15T10:00:00.000Z",
                        "status": "success",
                        "total_runs": 48,
                        "total_records_processed": 125000,
                        "last_records_processed": 2500
                    }
                ]
            }
        }
    )

    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    search_connected: bool
    checkpoints: List[CheckpointInfo] = Field(default_factory=list)
    total_streams: int = 0
    failed_streams: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Derive the overall status from backend connectivity and stream outcomes"""
        if not self.database_connected or not self.search_connected:
            self.status = "unhealthy"
        elif self.total_streams and self.failed_streams == self.total_streams:
            self.status = "unhealthy"
        elif self.failed_streams:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self


# ============================================================================
# Statistics Schemas
# ============================================================================

class MigrationRunSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    run_id: str
    stream: str
    status: RunStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_read: int = 0
    records_aggregated: int = 0
    failed_batches: int = 0
    checkpoint_after: Optional[str] = None


class StatsResponse(BaseModel):
    """Statistics response model"""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "total_runs": 48,
                "successful_runs": 45,
                "partial_runs": 2,
                "failed_runs": 1,
                "total_records_read": 125000,
                "last_success": "2024-01-15T10:00:00Z",
                "avg_run_duration_seconds": 45.2
            }
        }
    )

    timestamp: datetime = Field(default_factory=datetime.utcnow)

    total_runs: int
    successful_runs: int
    partial_runs: int
    failed_runs: int
    total_records_read: int

    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    avg_run_duration_seconds: Optional[float] = None

    recent_runs: List[MigrationRunSummary] = Field(default_factory=list)
    request_id: Optional[str] = None


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
