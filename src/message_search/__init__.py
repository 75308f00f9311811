"""Message embedding and semantic retrieval pipeline."""

from .config import Settings
from .service import MessageSearchService, build_service
from .types import MessageRecord, SearchQuery

__all__ = ["MessageRecord", "MessageSearchService", "SearchQuery", "Settings", "build_service"]
