"""
FeedRelay - Feed to Channel Pipeline
====================================

Syndication feed ingestion with deduplication, AI analysis with model
fallback and cost accounting, and exactly-once publication to Telegram targets.

Main Components:
- Database: SQLite with connection pooling and schema management
- Configuration: environment variables with Pydantic validation
- Ingestion: conditional feed fetching, fetch cache, entry normalization
- AI Analysis: OpenRouter model fallback chain with net cost ledger
- Delivery: per-target publication tracking for bot chats and channels
"""

__version__ = "0.3.0"
__author__ = "FeedRelay Development Team"
__description__ = "Feed ingestion, AI analysis and channel publication pipeline"

# Core imports for easy access
from .config.settings import get_settings
from .database.connection import get_db_manager
from .database.schema import DatabaseSchema
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.exceptions import FeedRelayError

__all__ = [
    "get_settings",
    "get_db_manager",
    "DatabaseSchema",
    "configure_application_logging",
    "get_logger_for_component",
    "FeedRelayError",
]
