"""
Pydantic schemas for data validation and serialization.

Schemas:
    records: Validated source record (WatchRecord) and the category/field maps
    migration: Destination upserts, per-item bulk outcomes and run results
    api: API endpoint response models

Usage:
    from schemas.records import WatchRecord, ContentCategory
    from schemas.migration import ProfileUpsert, MigrationResult
    from schemas.api import HealthCheckResponse, StatsResponse

Validation:
    Source records are validated strictly: a record that fails any field
    check is dropped by the extractor rather than coerced into a default.
"""

__all__ = [
    "api",
    "migration",
    "records",
]
