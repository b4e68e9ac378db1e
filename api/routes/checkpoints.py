"""
Read-only checkpoint endpoints
"""

from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from models.checkpoint import MigrationCheckpoint
from schemas.api import CheckpointInfo, ErrorResponse

router = APIRouter(prefix="/checkpoints", tags=["Checkpoints"])


@router.get("", response_model=List[CheckpointInfo])
async def list_checkpoints(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(MigrationCheckpoint).order_by(MigrationCheckpoint.stream))
    return [CheckpointInfo.model_validate(c) for c in result.scalars().all()]


@router.get(
    "/{stream}",
    response_model=CheckpointInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_checkpoint(stream: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(MigrationCheckpoint).where(MigrationCheckpoint.stream == stream)
    )
    checkpoint = result.scalar_one_or_none()
    if checkpoint is None:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(
                error="checkpoint_not_found",
                detail=f"No checkpoint for stream {stream}",
            ).model_dump(mode="json"),
        )
    return CheckpointInfo.model_validate(checkpoint)
