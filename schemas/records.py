"""
Pydantic schemas for watch-activity records read from the source index
"""

import enum
import math
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContentCategory(str, enum.Enum):
    """Content types a viewing record can refer to"""
    MOVIE = "movie"
    SERIES = "series"
    LIVE = "live"


# Category -> bounded list bucket on the profile document
DEFAULT_CATEGORY_LIST_KEYS: Dict[str, str] = {
    ContentCategory.MOVIE.value: "recent_movies",
    ContentCategory.SERIES.value: "recent_series",
    ContentCategory.LIVE.value: "recent_live",
}

# Typed field name -> field name in the source document
DEFAULT_FIELD_MAP: Dict[str, str] = {
    "entity_id": "user_id",
    "category": "content_type",
    "content_id": "content_id",
    "watched_seconds": "watched_seconds",
    "timestamp": "timestamp",
}


class WatchRecord(BaseModel):
    """
    Validated viewing record.

    Ensures:
    - entity_id, category and content_id are present and non-empty
    - category is a known content type
    - watched_seconds is a finite, non-negative number
    - timestamp is a timezone-aware instant (naive values are taken as UTC)
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    entity_id: str = Field(..., min_length=1)
    category: ContentCategory
    content_id: str = Field(..., min_length=1)
    watched_seconds: float = Field(..., ge=0)
    timestamp: datetime

    @field_validator("entity_id", "content_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        """Numeric ids are common in the source; booleans are not ids"""
        if isinstance(v, bool):
            raise ValueError("identifier must be a string or number")
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("watched_seconds", mode="before")
    @classmethod
    def reject_non_numeric(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("watched_seconds must be a number")
        return v

    @field_validator("watched_seconds")
    @classmethod
    def reject_non_finite(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("watched_seconds must be finite")
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def reject_empty_timestamp(cls, v: Any) -> Any:
        if isinstance(v, bool) or (isinstance(v, str) and not v.strip()):
            raise ValueError("timestamp must be an ISO-8601 string or epoch millis")
        return v

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)
