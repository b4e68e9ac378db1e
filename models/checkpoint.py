from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, BigInteger
from datetime import datetime
from models.base import Base, BigIntegerPK, JSONType, RunStatus


class MigrationCheckpoint(Base):
    """
    Tracks the watermark of one logical stream.

    Purpose:
    - Resume a migration from the last durably processed timestamp
    - Avoid re-reading pages that were already folded
    - Keep per-stream run statistics for the health/stats endpoints

    Design:
    - One row per stream
    - watermark is an ISO-8601 UTC timestamp string, monotonically non-decreasing
    - Rows are never deleted by the pipeline; rewinding a stream is an admin action
    """
    __tablename__ = "migration_checkpoints"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)

    stream = Column(String(200), nullable=False)

    # Checkpoint data
    watermark = Column(String(64), nullable=True)
    checkpoint_data = Column(JSONType, nullable=True)

    # Statistics
    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    total_runs = Column(Integer, default=0, nullable=False)
    total_records_processed = Column(BigInteger, default=0, nullable=False)
    last_records_processed = Column(Integer, default=0, nullable=False)

    # Status
    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False)
    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_checkpoint_stream", "stream", unique=True),
    )
