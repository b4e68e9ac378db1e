"""
Durable per-stream watermarks and the migration run ledger
"""

import asyncio
from typing import Any, Dict, Optional
from datetime import datetime
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import CheckpointError
from models.base import RunStatus
from models.checkpoint import MigrationCheckpoint
from models.migration_run import MigrationRun
from schemas.migration import MigrationResult

logger = logging.getLogger(__name__)


class CheckpointService:
    """
    Checkpoint store backed by the relational database.

    Responsibilities:
    - read/write the watermark of a stream
    - per-stream run statistics (total runs, last success/failure)
    - migration run audit trail

    Every call opens its own session and is bounded by timeout_seconds; a
    timeout or database error surfaces as CheckpointError.
    """

    def __init__(self, session_maker: async_sessionmaker, timeout_seconds: float = 30.0):
        self.session_maker = session_maker
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, stream: str, coro) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise CheckpointError(
                f"Checkpoint {operation} timed out for {stream}",
                context={"stream": stream, "operation": operation},
                original_exception=e,
            )
        except SQLAlchemyError as e:
            raise CheckpointError(
                f"Checkpoint {operation} failed for {stream}",
                context={"stream": stream, "operation": operation},
                original_exception=e,
            )

    @staticmethod
    async def _get(session: AsyncSession, stream: str) -> Optional[MigrationCheckpoint]:
        result = await session.execute(
            select(MigrationCheckpoint).where(MigrationCheckpoint.stream == stream)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Watermark
    # ------------------------------------------------------------------

    async def read(self, stream: str) -> Optional[str]:
        """Current watermark of a stream; None when it never advanced"""
        return await self._call("read", stream, self._read(stream))

    async def _read(self, stream: str) -> Optional[str]:
        async with self.session_maker() as session:
            checkpoint = await self._get(session, stream)
            if checkpoint is None:
                return None
            return checkpoint.watermark or None

    async def get_checkpoint(self, stream: str) -> Optional[MigrationCheckpoint]:
        return await self._call("read", stream, self._get_detached(stream))

    async def _get_detached(self, stream: str) -> Optional[MigrationCheckpoint]:
        async with self.session_maker() as session:
            return await self._get(session, stream)

    async def write(self, stream: str, watermark: str) -> None:
        """Persist a new watermark; creates the stream row on first write"""
        await self._call("write", stream, self._write(stream, watermark))

    async def _write(self, stream: str, watermark: str) -> None:
        async with self.session_maker() as session:
            checkpoint = await self._get(session, stream)
            now = datetime.utcnow()

            if checkpoint is None:
                checkpoint = MigrationCheckpoint(
                    stream=stream,
                    watermark=watermark,
                    status=RunStatus.RUNNING,
                    last_run_at=now,
                    total_runs=0,
                    total_records_processed=0,
                    last_records_processed=0,
                )
                session.add(checkpoint)
            else:
                checkpoint.watermark = watermark
                checkpoint.updated_at = now

            await session.commit()

        logger.debug(f"Checkpoint for {stream} advanced to {watermark}")

    async def finalize(
        self,
        stream: str,
        status: RunStatus,
        records_processed: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Record the outcome of a run on the stream's checkpoint row"""
        await self._call(
            "finalize",
            stream,
            self._finalize(stream, status, records_processed, error_message),
        )

    async def _finalize(
        self,
        stream: str,
        status: RunStatus,
        records_processed: int,
        error_message: Optional[str],
    ) -> None:
        async with self.session_maker() as session:
            checkpoint = await self._get(session, stream)
            now = datetime.utcnow()

            if checkpoint is None:
                checkpoint = MigrationCheckpoint(
                    stream=stream,
                    watermark=None,
                    total_runs=0,
                    total_records_processed=0,
                    last_records_processed=0,
                )
                session.add(checkpoint)

            checkpoint.status = status
            checkpoint.last_run_at = now
            checkpoint.total_runs = (checkpoint.total_runs or 0) + 1
            checkpoint.total_records_processed = (
                (checkpoint.total_records_processed or 0) + records_processed
            )
            checkpoint.last_records_processed = records_processed
            checkpoint.error_message = error_message
            checkpoint.updated_at = now

            if status in (RunStatus.SUCCESS, RunStatus.PARTIAL):
                checkpoint.last_success_at = now
            elif status == RunStatus.FAILED:
                checkpoint.last_failure_at = now

            await session.commit()

    # ------------------------------------------------------------------
    # Run ledger
    # ------------------------------------------------------------------

    async def start_run(
        self,
        stream: str,
        source_index: str,
        destination_index: str,
        checkpoint_before: Optional[str] = None,
    ) -> str:
        """Create a RUNNING ledger entry and return its run id"""
        return await self._call(
            "start_run",
            stream,
            self._start_run(stream, source_index, destination_index, checkpoint_before),
        )

    async def _start_run(
        self,
        stream: str,
        source_index: str,
        destination_index: str,
        checkpoint_before: Optional[str],
    ) -> str:
        run_id = uuid.uuid4()
        async with self.session_maker() as session:
            session.add(MigrationRun(
                run_id=run_id,
                stream=stream,
                source_index=source_index,
                destination_index=destination_index,
                status=RunStatus.RUNNING,
                started_at=datetime.utcnow(),
                checkpoint_before=checkpoint_before,
            ))
            await session.commit()
        return str(run_id)

    async def complete_run(
        self,
        run_id: str,
        result: MigrationResult,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Close a ledger entry with the run's statistics"""
        await self._call(
            "complete_run",
            result.stream,
            self._complete_run(run_id, result, error_details),
        )

    async def _complete_run(
        self,
        run_id: str,
        result: MigrationResult,
        error_details: Optional[Dict[str, Any]],
    ) -> None:
        async with self.session_maker() as session:
            query = await session.execute(
                select(MigrationRun).where(MigrationRun.run_id == uuid.UUID(run_id))
            )
            run = query.scalar_one_or_none()
            if run is None:
                logger.warning(f"Migration run {run_id} not found; statistics not recorded")
                return

            run.status = result.status
            run.completed_at = datetime.utcnow()
            run.duration_seconds = (run.completed_at - run.started_at).total_seconds()
            run.pages_processed = result.pages_processed
            run.records_read = result.records_read
            run.records_valid = result.records_valid
            run.records_invalid = result.records_invalid
            run.records_aggregated = result.records_aggregated
            run.items_written = result.items_written
            run.failed_batches = result.failed_batches
            run.checkpoint_after = result.final_watermark
            run.error_message = result.error_message
            run.error_details = error_details

            await session.commit()
