"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from opensearchpy import AsyncOpenSearch
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from pipeline.search_client import create_search_client


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


async def get_search_client() -> AsyncGenerator[AsyncOpenSearch, None]:
    client = create_search_client()
    try:
        yield client
    finally:
        await client.close()
