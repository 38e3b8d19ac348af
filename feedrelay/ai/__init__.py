"""
FeedRelay AI Analysis Module
============================

Cost-metered item analysis through OpenRouter with an ordered model
fallback chain.
"""

from .prompt_manager import PromptManager, PromptSpec
from .completion_client import OpenRouterCompletionClient
from .analysis_service import AIAnalysisService

__all__ = ["PromptManager", "PromptSpec", "OpenRouterCompletionClient", "AIAnalysisService"]
