"""
AsyncOpenSearch client construction shared by reader and destination
"""

from typing import Optional
import logging

from opensearchpy import AsyncOpenSearch

from core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def create_search_client(settings: Optional[Settings] = None) -> AsyncOpenSearch:
    """Build a client for OPENSEARCH_URL; the caller owns it and must close() it"""
    settings = settings or default_settings

    http_auth = None
    if settings.OPENSEARCH_USERNAME and settings.OPENSEARCH_PASSWORD:
        http_auth = (settings.OPENSEARCH_USERNAME, settings.OPENSEARCH_PASSWORD)

    logger.debug(f"Creating search client for {settings.OPENSEARCH_URL}")
    return AsyncOpenSearch(
        hosts=[settings.OPENSEARCH_URL],
        http_auth=http_auth,
        verify_certs=settings.OPENSEARCH_VERIFY_CERTS,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )
