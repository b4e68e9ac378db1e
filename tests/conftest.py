"""
Pytest configuration and fixtures
"""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence, Set

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from core.exceptions import TransientReadError
from models.base import Base
from models.checkpoint import MigrationCheckpoint  # noqa: F401
from models.migration_run import MigrationRun  # noqa: F401
from pipeline.aggregator import merge_bounded
from pipeline.checkpoint import CheckpointService
from pipeline.page_reader import Page
from pipeline.watermark import parse_watermark
from schemas.migration import ItemResult, ProfileUpsert

# In-memory SQLite shared through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def ts(minutes: int) -> str:
    """ISO timestamp `minutes` after BASE_TIME, as the source stores it"""
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z")


def _make_hit(
    user_id: Any,
    content_id: Any,
    minutes: int,
    content_type: Any = "movie",
    watched_seconds: Any = 120,
    hit_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Search hit shaped like a response entry from the source index"""
    timestamp = ts(minutes)
    doc_id = hit_id or f"{user_id}-{content_id}-{minutes}"
    return {
        "_id": doc_id,
        "_source": {
            "user_id": user_id,
            "content_type": content_type,
            "content_id": content_id,
            "watched_seconds": watched_seconds,
            "timestamp": timestamp,
        },
        "sort": [timestamp, doc_id],
    }


# ============================================================================
# Fakes
# ============================================================================

class FakePageReader:
    """
    In-memory source index with the PageReader contract.

    Hits are served in ascending (timestamp, _id) order: after the sort
    values of the previous page, or from a watermark timestamp inclusive.
    """

    def __init__(self, hits: Sequence[Dict[str, Any]], page_size: int = 3):
        self.hits = sorted(hits, key=self._key)
        self.page_size = page_size
        self.calls: List[Optional[Any]] = []
        self.fail_on_call: Optional[int] = None

    @staticmethod
    def _key(hit: Dict[str, Any]):
        return parse_watermark(hit["sort"][0]), hit["sort"][1]

    async def fetch_page(self, source_index: str, after_cursor: Optional[Any] = None) -> Page:
        self.calls.append(after_cursor)
        if self.fail_on_call is not None and len(self.calls) >= self.fail_on_call:
            raise TransientReadError(
                f"Search on {source_index} failed after 3 attempts",
                context={"source_index": source_index, "after_cursor": after_cursor},
            )

        if not after_cursor:
            remaining = list(self.hits)
        elif isinstance(after_cursor, list):
            after = (parse_watermark(after_cursor[0]), after_cursor[1])
            remaining = [hit for hit in self.hits if self._key(hit) > after]
        else:
            since = parse_watermark(after_cursor)
            remaining = [hit for hit in self.hits if self._key(hit)[0] >= since]

        page = remaining[:self.page_size]
        if not page:
            return Page(records=[], cursor=after_cursor)
        return Page(records=page, cursor=list(page[-1]["sort"]))


class FakeDestination:
    """
    Destination that stores profile documents in a dict.

    Applies the same bounded merge as the real upsert script and reports
    "noop" when a document would not change. Entities in fail_entities get
    a 503 on every attempt.
    """

    def __init__(self, max_items: int = 5):
        self.max_items = max_items
        self.documents: Dict[str, Dict[str, List[str]]] = {}
        self.fail_entities: Set[str] = set()
        self.calls: List[List[ProfileUpsert]] = []
        self.results: List[ItemResult] = []

    async def bulk_upsert(self, items: Sequence[ProfileUpsert]) -> List[ItemResult]:
        self.calls.append(list(items))
        results: List[ItemResult] = []
        for item in items:
            if item.entity_id in self.fail_entities:
                results.append(ItemResult(
                    entity_id=item.entity_id,
                    status=503,
                    error="unavailable_shards_exception",
                ))
                continue

            existing = self.documents.get(item.entity_id)
            if existing is None:
                self.documents[item.entity_id] = {k: list(v) for k, v in item.lists.items()}
                results.append(ItemResult(entity_id=item.entity_id, status=201, result="created"))
                continue

            changed = False
            for key, ids in item.lists.items():
                merged = merge_bounded(existing.get(key, []), ids, self.max_items)
                if merged != existing.get(key, []):
                    existing[key] = merged
                    changed = True
            results.append(ItemResult(
                entity_id=item.entity_id,
                status=200,
                result="updated" if changed else "noop",
            ))

        self.results.extend(results)
        return results


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def checkpoint_service(session_maker):
    return CheckpointService(session_maker, timeout_seconds=5)


@pytest.fixture
def fake_destination():
    return FakeDestination()


@pytest.fixture
def two_page_hits():
    """Six valid records t1..t6; u1 appears in records 2 and 5"""
    return [
        _make_hit("u0", "m0", 1),
        _make_hit("u1", "m1", 2),
        _make_hit("u2", "s1", 3, content_type="series"),
        _make_hit("u3", "l1", 4, content_type="live"),
        _make_hit("u1", "m2", 5),
        _make_hit("u4", "m3", 6),
    ]


@pytest.fixture
def make_hit():
    return _make_hit


@pytest.fixture
def fake_reader_factory():
    def factory(hits, page_size: int = 3) -> FakePageReader:
        return FakePageReader(hits, page_size=page_size)
    return factory
