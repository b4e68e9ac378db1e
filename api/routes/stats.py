"""
Migration statistics endpoint
"""
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import StatsResponse, MigrationRunSummary
from models.base import RunStatus
from models.migration_run import MigrationRun
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    stream: Optional[str] = Query(None, description="Restrict to one stream"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get migration statistics.

    Returns:
    - Run counts by outcome
    - Last success/failure and average duration
    - Recent run history
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    filters = [MigrationRun.stream == stream] if stream else []

    # ========== Counts by status ==========

    status_counts_result = await db.execute(
        select(MigrationRun.status, func.count())
        .where(*filters)
        .group_by(MigrationRun.status)
    )
    status_counts = {status: count for status, count in status_counts_result.all()}
    total_runs = sum(status_counts.values())

    total_records_result = await db.execute(
        select(func.coalesce(func.sum(MigrationRun.records_read), 0)).where(*filters)
    )
    total_records = total_records_result.scalar()

    # ========== Last success/failure ==========

    last_success_result = await db.execute(
        select(func.max(MigrationRun.completed_at)).where(
            *filters,
            MigrationRun.status.in_([RunStatus.SUCCESS, RunStatus.PARTIAL]),
        )
    )
    last_success = last_success_result.scalar()

    last_failure_result = await db.execute(
        select(func.max(MigrationRun.completed_at)).where(
            *filters,
            MigrationRun.status == RunStatus.FAILED,
        )
    )
    last_failure = last_failure_result.scalar()

    avg_duration_result = await db.execute(
        select(func.avg(MigrationRun.duration_seconds)).where(
            *filters,
            MigrationRun.status == RunStatus.SUCCESS,
            MigrationRun.duration_seconds.isnot(None),
        )
    )
    avg_duration = avg_duration_result.scalar()

    # ========== Recent runs ==========

    recent_runs_result = await db.execute(
        select(MigrationRun)
        .where(*filters)
        .order_by(MigrationRun.started_at.desc())
        .limit(limit)
    )
    recent_runs = [
        MigrationRunSummary(
            run_id=str(run.run_id),
            stream=run.stream,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            records_read=run.records_read or 0,
            records_aggregated=run.records_aggregated or 0,
            failed_batches=run.failed_batches or 0,
            checkpoint_after=run.checkpoint_after,
        )
        for run in recent_runs_result.scalars().all()
    ]

    logger.info(f"[{request_id}] Stats: {total_runs} runs, {total_records} records")

    return StatsResponse(
        timestamp=datetime.utcnow(),
        total_runs=total_runs,
        successful_runs=status_counts.get(RunStatus.SUCCESS, 0),
        partial_runs=status_counts.get(RunStatus.PARTIAL, 0),
        failed_runs=status_counts.get(RunStatus.FAILED, 0),
        total_records_read=total_records or 0,
        last_success=last_success,
        last_failure=last_failure,
        avg_run_duration_seconds=round(avg_duration, 2) if avg_duration else None,
        recent_runs=recent_runs,
        request_id=request_id,
    )
