"""
AI Analysis Service - Model Fallback Orchestration
==================================================

Runs an analysis prompt through an ordered chain of models. Every attempt is
turned into a ModelOutcome at the call boundary and the loop is driven by
those outcomes: the first SUCCESS wins, anything else moves on to the next
model after a backoff delay. Models are tried one at a time and never twice
within a call.
"""

import asyncio
import json
import re
import time
from collections import defaultdict
from typing import Dict, List, Optional, Union

from .prompt_manager import PromptManager, PromptSpec
from ..database.models import (
    AnalysisResult,
    CandidateItem,
    Item,
    ModelOutcome,
    OutcomeStatus,
)
from ..recovery.retry_logic import RetryConfig, RetryStrategy, calculate_delay
from ..storage.analysis_repository import AIAnalysisRepository
from ..utils.exceptions import AIError, ErrorCode
from ..utils.logging import get_logger_for_component
from ..utils.validators import detect_language


_THINK_BLOCK = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", re.DOTALL | re.IGNORECASE)
_FENCED = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)

_ERROR_CODE_OUTCOMES = {
    ErrorCode.AI_RATE_LIMIT: OutcomeStatus.RATE_LIMITED,
    ErrorCode.AI_PROVIDER_UNAVAILABLE: OutcomeStatus.UNAVAILABLE,
    ErrorCode.AI_INVALID_CREDENTIALS: OutcomeStatus.UNAVAILABLE,
    ErrorCode.AI_TIMEOUT: OutcomeStatus.TIMEOUT,
    ErrorCode.AI_INVALID_RESPONSE: OutcomeStatus.INVALID_RESPONSE,
}


def clean_response(text: Optional[str]) -> Optional[str]:
    """Strip reasoning blocks and code fences; None when nothing usable is left.

    Text that looks like a JSON object must parse as one.
    """
    if not text:
        return None

    cleaned = _THINK_BLOCK.sub("", text).strip()
    fenced = _FENCED.search(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()

    if not cleaned:
        return None

    if cleaned.startswith("{"):
        try:
            json.loads(cleaned)
        except ValueError:
            return None

    return cleaned


class AIAnalysisService:
    """Analyzes items with an ordered model fallback chain."""

    def __init__(
        self,
        completion_client,
        models: List[str],
        analysis_repo: Optional[AIAnalysisRepository] = None,
        prompt_manager: Optional[PromptManager] = None,
        retry_config: Optional[RetryConfig] = None,
        max_concurrent_requests: int = 3,
        request_timeout: float = 60.0,
    ):
        """Initialize analysis service.

        Args:
            completion_client: Object with `async complete(model, prompt)`
            models: Model identifiers in priority order
            analysis_repo: Repository for analyze_and_store
            prompt_manager: Prompt source for analyze_and_store
            retry_config: Delay policy applied before each fallback attempt
            max_concurrent_requests: Concurrent analyze() calls allowed
            request_timeout: Seconds allowed for each model attempt
        """
        if not models:
            raise AIError(
                "At least one model must be configured",
                error_code=ErrorCode.AI_PROVIDER_UNAVAILABLE,
                recoverable=False,
            )

        self.client = completion_client
        self.models = list(models)
        self.analysis_repo = analysis_repo
        self.prompt_manager = prompt_manager
        self.retry_config = retry_config or RetryConfig(
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF, base_delay=1.0, max_delay=30.0
        )
        self.request_timeout = request_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self.model_stats: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.logger = get_logger_for_component("analysis_service")

        self.logger.info(f"AI analysis service initialized with models: {self.models}")

    async def analyze(self, item: Union[Item, CandidateItem], prompt: PromptSpec) -> AnalysisResult:
        """Analyze one item, falling back through the configured models.

        Returns:
            AnalysisResult; on exhaustion success is False, every model is
            listed in models_attempted and error holds the last failure
        """
        item_id = getattr(item, "id", 0)
        language = prompt.language or detect_language(f"{item.title} {item.text_for_analysis()}")
        result = AnalysisResult(item_id=item_id, purpose=prompt.purpose, success=False, language=language)
        start = time.time()

        async with self._semaphore:
            for index, model in enumerate(self.models):
                if index > 0:
                    delay = calculate_delay(index, self.retry_config)
                    if delay > 0:
                        await asyncio.sleep(delay)

                outcome = await self._attempt_model(model, prompt)
                result.models_attempted.append(model)
                result.attempts.append(outcome)
                self.model_stats[model][outcome.status.value] += 1

                if outcome.succeeded:
                    response = outcome.response
                    result.success = True
                    result.model_used = model
                    result.result_text = response.text
                    result.tokens_prompt = response.tokens_prompt
                    result.tokens_completion = response.tokens_completion
                    result.usage = response.usage
                    result.usage_cache = response.usage_cache
                    result.usage_data = response.usage_data
                    result.usage_web = response.usage_web
                    result.usage_file = response.usage_file
                    result.error = None
                    break

                result.error = f"{model}: {outcome.status.value}: {outcome.error}"
                self.logger.warning(
                    f"Model {model} failed for item {item_id} ({outcome.status.value}): {outcome.error}"
                )

        result.duration_ms = int((time.time() - start) * 1000)

        if result.success:
            self.logger.info(
                f"Item {item_id} analyzed by {result.model_used} "
                f"after {len(result.models_attempted)} attempt(s), net cost {result.net_cost}"
            )
        else:
            self.logger.error(
                f"All models failed for item {item_id}. Last error: {result.error}"
            )
        return result

    async def _attempt_model(self, model: str, prompt: PromptSpec) -> ModelOutcome:
        """Call one model and convert whatever happens into a ModelOutcome."""
        start = time.time()

        def elapsed() -> int:
            return int((time.time() - start) * 1000)

        try:
            response = await asyncio.wait_for(
                self.client.complete(model, prompt), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            return ModelOutcome(
                model=model,
                status=OutcomeStatus.TIMEOUT,
                error=f"no response within {self.request_timeout}s",
                duration_ms=elapsed(),
            )
        except AIError as e:
            status = (
                OutcomeStatus.RATE_LIMITED
                if e.rate_limited
                else _ERROR_CODE_OUTCOMES.get(e.error_code, OutcomeStatus.ERROR)
            )
            return ModelOutcome(model=model, status=status, error=str(e), duration_ms=elapsed())
        except Exception as e:
            self.logger.error(f"Unexpected error from model {model}: {e}")
            return ModelOutcome(model=model, status=OutcomeStatus.ERROR, error=str(e), duration_ms=elapsed())

        cleaned = clean_response(response.text)
        if cleaned is None:
            return ModelOutcome(
                model=model,
                status=OutcomeStatus.INVALID_RESPONSE,
                response=response,
                error="empty or unparseable response",
                duration_ms=elapsed(),
            )

        response.text = cleaned
        return ModelOutcome(
            model=model, status=OutcomeStatus.SUCCESS, response=response, duration_ms=elapsed()
        )

    async def analyze_and_store(
        self, item: Item, prompt_id: Optional[str] = None
    ) -> Optional[AnalysisResult]:
        """Analyze an item unless it already has a current successful analysis.

        Both successful and failed results are stored.

        Returns:
            The new AnalysisResult, or None when the item was skipped
        """
        if self.analysis_repo is None or self.prompt_manager is None:
            raise AIError(
                "analyze_and_store requires an analysis repository and a prompt manager",
                error_code=ErrorCode.AI_PROCESSING_ERROR,
                recoverable=False,
            )

        purpose = self.prompt_manager.purpose
        if self.analysis_repo.has_analysis(item.id, purpose):
            self.logger.debug(f"Item {item.id} already analyzed for '{purpose}', skipping")
            return None

        prompt = self.prompt_manager.build(prompt_id or "default", item)
        result = await self.analyze(item, prompt)
        self.analysis_repo.store(item.id, result)
        return result

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Per-model outcome counts since startup."""
        return {model: dict(counts) for model, counts in self.model_stats.items()}
