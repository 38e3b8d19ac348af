"""
FeedRelay Processing Module
===========================

Feed fetching, run bookkeeping and the feed-to-channel pipeline.
"""

from .run_context import RunContext, RunReport, FeedSummary, TargetSummary
from .fetch_runner import FetchRunner, FetchResult
from .pipeline import FeedPipeline, build_pipeline

__all__ = [
    "RunContext",
    "RunReport",
    "FeedSummary",
    "TargetSummary",
    "FetchRunner",
    "FetchResult",
    "FeedPipeline",
    "build_pipeline",
]
