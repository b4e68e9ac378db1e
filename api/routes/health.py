"""
Health check endpoint with database, search backend and checkpoint status
"""

from fastapi import APIRouter, Depends
from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import TransportError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db, get_search_client
from schemas.api import HealthCheckResponse, CheckpointInfo
from models.base import RunStatus
from models.checkpoint import MigrationCheckpoint
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    search: AsyncOpenSearch = Depends(get_search_client),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Search backend connectivity status
    - Checkpoint status for all streams
    """

    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    search_connected = False
    try:
        search_connected = bool(await search.ping())
    except TransportError as e:
        logger.error(f"Search backend unreachable: {str(e)}")

    checkpoints = []
    failed_streams = 0

    if db_connected:
        try:
            result = await db.execute(select(MigrationCheckpoint).order_by(MigrationCheckpoint.stream))
            for checkpoint in result.scalars().all():
                if checkpoint.status == RunStatus.FAILED:
                    failed_streams += 1
                checkpoints.append(CheckpointInfo.model_validate(checkpoint))
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch checkpoints: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        search_connected=search_connected,
        checkpoints=checkpoints,
        total_streams=len(checkpoints),
        failed_streams=failed_streams,
    )
