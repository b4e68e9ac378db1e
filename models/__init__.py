"""
SQLAlchemy ORM models for database tables.

The search indices hold the migrated data; the relational database only
keeps pipeline bookkeeping:

Models:
    base: Base declarative class, portable column types and RunStatus
    checkpoint: Per-stream watermark plus run statistics
    migration_run: Audit trail of every migration execution

Usage:
    from models.checkpoint import MigrationCheckpoint
    from models.migration_run import MigrationRun
    from models.base import Base, RunStatus

Example:
    checkpoint = MigrationCheckpoint(
        stream="watch-events",
        watermark="2024-01-15T10:00:00.000Z",
        status=RunStatus.SUCCESS,
    )
    session.add(checkpoint)
    await session.commit()
"""

__all__ = [
    "base",
    "checkpoint",
    "migration_run",
]
