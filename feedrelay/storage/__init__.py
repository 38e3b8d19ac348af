"""
FeedRelay Storage Layer
=======================

Repository implementations for the pipeline's persistent state:
- Feed state repository for fetch bookkeeping
- Item repository with atomic deduplication
- Analysis repository with cost ledger
- Publication repository with per-target delivery accounting
"""

from .feed_state_repository import FeedStateRepository
from .item_repository import ItemRepository, ReserveResult, compute_content_key
from .analysis_repository import AIAnalysisRepository
from .publication_repository import PublicationRepository

__all__ = [
    "FeedStateRepository",
    "ItemRepository",
    "ReserveResult",
    "compute_content_key",
    "AIAnalysisRepository",
    "PublicationRepository",
]
