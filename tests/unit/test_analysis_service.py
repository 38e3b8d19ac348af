"""
AI Analysis Service Tests
=========================

Fallback ordering, outcome classification, cost accounting and the
analyze-and-store flow, with the completion client mocked out.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from feedrelay.ai.analysis_service import AIAnalysisService, clean_response
from feedrelay.ai.prompt_manager import PromptManager, PromptSpec
from feedrelay.database.models import CandidateItem, OutcomeStatus, compute_net_cost
from feedrelay.recovery.retry_logic import RetryConfig, RetryStrategy
from feedrelay.storage.analysis_repository import AIAnalysisRepository
from feedrelay.storage.item_repository import ItemRepository
from feedrelay.utils.exceptions import AIError, ErrorCode


NO_DELAY = RetryConfig(strategy=RetryStrategy.FIXED_DELAY, base_delay=0, max_delay=0)


@pytest.fixture
def prompt():
    return PromptSpec(purpose="summary", system_prompt="Summarize.", user_message="{}", language="en")


@pytest.fixture
def item():
    return CandidateItem(guid="g1", title="Title", link="https://example.com/1", description="Body")


def _client(behaviours):
    """Completion client double; behaviours maps model -> response or exception."""
    client = MagicMock()

    async def complete(model, prompt):
        outcome = behaviours[model]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    client.complete = AsyncMock(side_effect=complete)
    return client


class TestCleanResponse:

    def test_strips_think_blocks(self):
        assert clean_response("<think>hmm</think>\nAnswer") == "Answer"

    def test_unwraps_json_fence(self):
        assert clean_response('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_invalid_json_object_rejected(self):
        assert clean_response('{"headline": "unterminated') is None

    def test_empty_rejected(self):
        assert clean_response("") is None
        assert clean_response("<thinking>only reasoning</thinking>") is None


class TestFallbackChain:

    @pytest.mark.asyncio
    async def test_falls_back_past_failing_model(self, prompt, item, completion_response):
        client = _client({
            "model-a": AIError("rate limited", model="model-a", rate_limited=True),
            "model-b": completion_response(usage=0.0002),
            "model-c": completion_response(),
        })
        service = AIAnalysisService(client, ["model-a", "model-b", "model-c"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.success
        assert result.model_used == "model-b"
        assert result.models_attempted == ["model-a", "model-b"]
        assert result.attempts[0].status == OutcomeStatus.RATE_LIMITED
        assert result.fallback_used
        assert [c.args[0] for c in client.complete.call_args_list] == ["model-a", "model-b"]

    @pytest.mark.asyncio
    async def test_middle_model_failure_still_tries_next(self, prompt, item, completion_response):
        client = _client({
            "A": AIError("bad gateway", error_code=ErrorCode.AI_PROVIDER_UNAVAILABLE),
            "B": AIError("boom"),
            "C": completion_response(),
        })
        service = AIAnalysisService(client, ["A", "B", "C"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.model_used == "C"
        assert [a.status for a in result.attempts] == [
            OutcomeStatus.UNAVAILABLE, OutcomeStatus.ERROR, OutcomeStatus.SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_first_success_stops_chain(self, prompt, item, completion_response):
        client = _client({"A": completion_response(), "B": completion_response()})
        service = AIAnalysisService(client, ["A", "B"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.models_attempted == ["A"]
        assert not result.fallback_used
        assert client.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_reports_every_model(self, prompt, item):
        client = _client({
            "A": AIError("down", error_code=ErrorCode.AI_PROVIDER_UNAVAILABLE),
            "B": AIError("timeout", error_code=ErrorCode.AI_TIMEOUT),
        })
        service = AIAnalysisService(client, ["A", "B"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert not result.success
        assert result.model_used is None
        assert result.models_attempted == ["A", "B"]
        assert result.error.startswith("B: timeout:")
        assert result.net_cost == Decimal("0")

    @pytest.mark.asyncio
    async def test_invalid_response_moves_on(self, prompt, item, completion_response):
        client = _client({
            "A": completion_response(text="{not json"),
            "B": completion_response(text="Plain summary"),
        })
        service = AIAnalysisService(client, ["A", "B"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.attempts[0].status == OutcomeStatus.INVALID_RESPONSE
        assert result.result_text == "Plain summary"

    @pytest.mark.asyncio
    async def test_slow_model_times_out(self, prompt, item, completion_response):
        client = MagicMock()

        async def complete(model, prompt):
            if model == "slow":
                await asyncio.sleep(1)
            return completion_response()

        client.complete = AsyncMock(side_effect=complete)
        service = AIAnalysisService(client, ["slow", "fast"], retry_config=NO_DELAY, request_timeout=0.05)

        result = await service.analyze(item, prompt)

        assert result.attempts[0].status == OutcomeStatus.TIMEOUT
        assert result.model_used == "fast"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, prompt, item, completion_response):
        client = _client({"A": RuntimeError("socket closed"), "B": completion_response()})
        service = AIAnalysisService(client, ["A", "B"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.success
        assert service.get_stats() == {"A": {"error": 1}, "B": {"success": 1}}

    def test_requires_models(self):
        with pytest.raises(AIError):
            AIAnalysisService(MagicMock(), [])


class TestCostAccounting:

    def test_net_cost_addition(self):
        assert compute_net_cost(0.0004, usage_cache=-0.0000257478) == Decimal("0.0003742522")

    @pytest.mark.parametrize(
        "components, expected",
        [
            ({"usage": 0.0003780711, "usage_data": -0.0000038189}, "0.0003742522"),
            ({"usage": 0.001, "usage_web": 0.0002}, "0.0012"),
            (
                {
                    "usage": 0.001,
                    "usage_cache": -0.0001,
                    "usage_data": -0.00002,
                    "usage_web": 0.0003,
                    "usage_file": 0.00004,
                },
                "0.00122",
            ),
        ],
    )
    def test_every_component_is_added_with_its_sign(self, components, expected):
        assert compute_net_cost(**components) == Decimal(expected)

    def test_missing_components_are_zero(self):
        assert compute_net_cost(None) == Decimal("0")
        assert compute_net_cost(0.001, None, None, None, None) == Decimal("0.001")

    @pytest.mark.asyncio
    async def test_cost_comes_from_successful_response(self, prompt, item, completion_response):
        client = _client({
            "A": completion_response(text="", usage=0.5),
            "B": completion_response(usage=0.0004, usage_cache=-0.0000257478, tokens_prompt=900),
        })
        service = AIAnalysisService(client, ["A", "B"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.usage == 0.0004
        assert result.tokens_prompt == 900
        assert result.net_cost == Decimal("0.0003742522")

    @pytest.mark.asyncio
    async def test_data_rebate_reduces_net_cost(self, prompt, item, completion_response):
        client = _client({"A": completion_response(usage=0.0003780711, usage_data=-0.0000038189)})
        service = AIAnalysisService(client, ["A"], retry_config=NO_DELAY)

        result = await service.analyze(item, prompt)

        assert result.usage_data == -0.0000038189
        assert result.net_cost == Decimal("0.0003742522")


class TestAnalyzeAndStore:

    @pytest.fixture
    def stored_item(self, db_connection, sample_candidate):
        repo = ItemRepository(db_connection)
        return repo.get_item(repo.save(1, sample_candidate))

    @pytest.fixture
    def service_factory(self, db_connection, tmp_path):
        def _make(client, models=("A",)):
            return AIAnalysisService(
                client,
                list(models),
                analysis_repo=AIAnalysisRepository(db_connection),
                prompt_manager=PromptManager(str(tmp_path / "prompts")),
                retry_config=NO_DELAY,
            )
        return _make

    @pytest.mark.asyncio
    async def test_stores_success_and_skips_next_time(self, stored_item, service_factory, completion_response):
        client = _client({"A": completion_response()})
        service = service_factory(client)

        first = await service.analyze_and_store(stored_item)
        second = await service.analyze_and_store(stored_item)

        assert first.success
        assert second is None
        assert client.complete.await_count == 1
        assert service.analysis_repo.has_analysis(stored_item.id, "summary")

    @pytest.mark.asyncio
    async def test_failed_analysis_is_stored_and_retried(self, stored_item, service_factory, completion_response):
        failing = service_factory(_client({"A": AIError("down")}))
        result = await failing.analyze_and_store(stored_item)

        assert not result.success
        assert not failing.analysis_repo.has_analysis(stored_item.id, "summary")

        working = service_factory(_client({"A": completion_response()}))
        retried = await working.analyze_and_store(stored_item)

        assert retried.success
        history = working.analysis_repo.get_history(stored_item.id, "summary")
        assert [a.is_current for a in history] == [False, True]

    @pytest.mark.asyncio
    async def test_missing_prompt_raises(self, stored_item, service_factory, completion_response):
        service = service_factory(_client({"A": completion_response()}))

        with pytest.raises(AIError) as exc_info:
            await service.analyze_and_store(stored_item, "does-not-exist")
        assert exc_info.value.error_code == ErrorCode.AI_PROMPT_MISSING
