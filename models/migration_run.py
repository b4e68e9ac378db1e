from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, Uuid
from datetime import datetime
import uuid
from models.base import Base, BigIntegerPK, JSONType, RunStatus


class MigrationRun(Base):
    """
    Tracks metadata for each migration execution.

    Purpose:
    - Audit trail of all runs
    - Distinguishes clean runs from runs with failed flushes
    - Error tracking and debugging
    """
    __tablename__ = "migration_runs"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)

    # Stream identification
    stream = Column(String(200), nullable=False, index=True)
    source_index = Column(String(255), nullable=False)
    destination_index = Column(String(255), nullable=False)

    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    pages_processed = Column(Integer, default=0)
    records_read = Column(Integer, default=0)
    records_valid = Column(Integer, default=0)
    records_invalid = Column(Integer, default=0)
    records_aggregated = Column(Integer, default=0)
    items_written = Column(Integer, default=0)
    failed_batches = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Checkpoint info
    checkpoint_before = Column(String(64), nullable=True)
    checkpoint_after = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_migration_run_stream_started", "stream", "started_at"),
        Index("idx_migration_run_status", "status", "started_at"),
    )
