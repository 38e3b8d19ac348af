"""
Pipeline Orchestration Tests
============================

FeedPipeline stages wired to a real database with the fetch runner, the
completion client and the Telegram bot replaced by doubles.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from feedrelay.ai.analysis_service import AIAnalysisService
from feedrelay.ai.prompt_manager import PromptManager
from feedrelay.config.settings import FeedRelaySettings
from feedrelay.database.models import AnalysisResult, PublicationStatus
from feedrelay.delivery.message_sender import TelegramSender
from feedrelay.processing.fetch_runner import FetchResult
from feedrelay.processing.pipeline import FeedPipeline, build_pipeline
from feedrelay.processing.run_context import RunContext
from feedrelay.recovery.retry_logic import RetryConfig, RetryStrategy
from feedrelay.storage.analysis_repository import AIAnalysisRepository
from feedrelay.storage.item_repository import ItemRepository
from feedrelay.storage.publication_repository import PublicationRepository
from feedrelay.utils.exceptions import AIError


TARGETS = {"bot": "1001", "channel": "@relay_channel"}


def make_settings(tmp_path, **processing):
    return FeedRelaySettings(
        telegram={"bot_token": "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11_test", "targets": TARGETS},
        ai={"openrouter_api_key": "test-key", "models": ["model-a", "model-b"], "prompts_dir": str(tmp_path / "prompts")},
        database={"path": str(tmp_path / "pipeline.db")},
        cache={"enabled": False, "directory": str(tmp_path / "cache")},
        processing=processing,
        feeds=[{"id": 1, "url": "https://example.com/feed.xml"}],
    )


def fetch_result(candidates, feed_id=1):
    return FetchResult(
        feed_id=feed_id, feed_url=f"https://example.com/{feed_id}.xml",
        success=True, items=list(candidates), status="ok",
    )


@pytest.fixture
def completion_client(completion_response):
    client = MagicMock()
    client.complete = AsyncMock(return_value=completion_response(usage=0.0004, usage_cache=-0.0000257478))
    return client


@pytest.fixture
def pipeline_factory(db_connection, tmp_path, mock_bot, completion_client):
    def _make(fetch_results, **processing):
        settings = make_settings(tmp_path, **processing)
        fetch_runner = MagicMock()
        fetch_runner.run = AsyncMock(side_effect=list(fetch_results))

        analysis_repo = AIAnalysisRepository(db_connection)
        analysis_service = AIAnalysisService(
            completion_client,
            settings.ai.models,
            analysis_repo=analysis_repo,
            prompt_manager=PromptManager(settings.ai.prompts_dir),
            retry_config=RetryConfig(strategy=RetryStrategy.FIXED_DELAY, base_delay=0, max_delay=0),
        )
        return FeedPipeline(
            settings,
            fetch_runner=fetch_runner,
            item_repo=ItemRepository(db_connection),
            publication_repo=PublicationRepository(db_connection),
            sender=TelegramSender(mock_bot, TARGETS),
            analysis_service=analysis_service,
            analysis_repo=analysis_repo,
        )
    return _make


class TestFeedPipeline:

    @pytest.mark.asyncio
    async def test_new_items_analyzed_and_published_everywhere(self, pipeline_factory, make_candidate, mock_bot):
        pipeline = pipeline_factory([[fetch_result([make_candidate(1), make_candidate(2)])]])

        report = await pipeline.run()

        assert report.items_stored == 2
        assert report.analyses_succeeded == 2
        assert report.publications["bot"].sent == 2
        assert report.publications["channel"].sent == 2
        assert mock_bot.send_message.await_count == 4
        assert str(report.net_cost) == "0.0007485044"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, pipeline_factory, make_candidate, mock_bot, completion_client):
        batch = [make_candidate(1), make_candidate(2)]
        pipeline = pipeline_factory([[fetch_result(batch)], [fetch_result(batch)]])

        await pipeline.run()
        second = await pipeline.run()

        assert second.items_stored == 0
        assert second.items_duplicate == 2
        assert second.analyses_succeeded == 0
        assert completion_client.complete.await_count == 2
        assert mock_bot.send_message.await_count == 4

    @pytest.mark.asyncio
    async def test_failed_analysis_blocks_publication(self, pipeline_factory, make_candidate, mock_bot, completion_client):
        completion_client.complete = AsyncMock(side_effect=AIError("down"))
        pipeline = pipeline_factory([[fetch_result([make_candidate(1)])]])

        report = await pipeline.run()

        assert report.analyses_failed == 1
        assert report.publications == {}
        mock_bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_without_analysis(self, pipeline_factory, make_candidate, mock_bot, completion_client):
        completion_client.complete = AsyncMock(side_effect=AIError("down"))
        pipeline = pipeline_factory(
            [[fetch_result([make_candidate(1)])]], publish_without_analysis=True
        )

        report = await pipeline.run()

        assert report.publications["bot"].sent == 1
        assert "Description of post 1" in mock_bot.send_message.call_args.kwargs["text"]

    @pytest.mark.asyncio
    async def test_backlog_item_analyzed_on_next_run(self, pipeline_factory, make_candidate, mock_bot, completion_client, completion_response):
        completion_client.complete = AsyncMock(side_effect=AIError("down"))
        pipeline = pipeline_factory([[fetch_result([make_candidate(1)])], [fetch_result([])]])

        await pipeline.run()
        completion_client.complete = AsyncMock(return_value=completion_response())
        second = await pipeline.run()

        assert second.analyses_succeeded == 1
        assert second.publications["channel"].sent == 1

    @pytest.mark.asyncio
    async def test_item_cap_limits_ingestion(self, pipeline_factory, make_candidate):
        pipeline = pipeline_factory([[fetch_result([make_candidate(n) for n in range(1, 6)])]])

        report = await pipeline.run(RunContext(max_items=2))

        assert report.items_stored == 2
        assert report.items_discovered == 2
        assert report.analyses_succeeded == 2
        assert report.stopped_reason == "item cap 2 reached"
        pipeline.fetch_runner.forget_validators.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_all_candidates_consumed_keeps_validators(self, pipeline_factory, make_candidate):
        pipeline = pipeline_factory([[fetch_result([make_candidate(1), make_candidate(2)])]])

        await pipeline.run(RunContext(max_items=2))

        pipeline.fetch_runner.forget_validators.assert_not_called()

    @pytest.mark.asyncio
    async def test_publication_queued_as_soon_as_analysis_succeeds(
        self, pipeline_factory, make_candidate, db_connection, mock_bot
    ):
        pipeline = pipeline_factory([[fetch_result([make_candidate(1)])], [fetch_result([])]])
        pipeline.publish_items = AsyncMock()

        await pipeline.run()

        queued = PublicationRepository(db_connection).get_retryable(max_attempts=5)
        assert sorted(p.target for p in queued) == ["bot", "channel"]
        assert all(p.status == PublicationStatus.PENDING for p in queued)
        mock_bot.send_message.assert_not_awaited()

        del pipeline.publish_items
        second = await pipeline.run()

        assert second.publications["bot"].sent == 1
        assert second.publications["channel"].sent == 1

    @pytest.mark.asyncio
    async def test_analyzed_item_without_publication_rows_is_recovered(
        self, pipeline_factory, make_candidate, db_connection, mock_bot, completion_client
    ):
        pipeline = pipeline_factory([[fetch_result([])]])
        item_id = ItemRepository(db_connection).save(1, make_candidate(1))
        AIAnalysisRepository(db_connection).store(
            item_id,
            AnalysisResult(
                item_id=item_id,
                purpose=pipeline.purpose,
                success=True,
                model_used="model-a",
                models_attempted=["model-a"],
                result_text='{"headline": "Recovered", "summary": "S"}',
            ),
        )

        report = await pipeline.run()

        assert report.publications["bot"].sent == 1
        assert report.publications["channel"].sent == 1
        assert "Recovered" in mock_bot.send_message.call_args.kwargs["text"]
        completion_client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_items_rejected(self, pipeline_factory, make_candidate):
        bad = make_candidate(2, title="", link=None)
        pipeline = pipeline_factory([[fetch_result([make_candidate(1), bad])]])

        report = await pipeline.run()

        assert report.items_rejected == 1
        assert report.items_stored == 1
        assert report.feeds[1].rejected == 1

    @pytest.mark.asyncio
    async def test_failed_publication_retried_next_run(self, pipeline_factory, make_candidate, mock_bot):
        from telegram.error import NetworkError

        original = mock_bot.send_message.side_effect

        async def flaky(**kwargs):
            if kwargs["chat_id"] == "1001":
                raise NetworkError("connection reset")
            return await original(**kwargs)

        mock_bot.send_message.side_effect = flaky
        pipeline = pipeline_factory([[fetch_result([make_candidate(1)])], [fetch_result([])]])

        first = await pipeline.run()
        assert first.publications["bot"].failed == 1
        assert first.publications["channel"].sent == 1

        mock_bot.send_message.side_effect = original
        second = await pipeline.run()

        assert second.publications["bot"].sent == 1
        assert "channel" not in second.publications

    @pytest.mark.asyncio
    async def test_stop_before_run_skips_work(self, pipeline_factory, make_candidate, mock_bot):
        pipeline = pipeline_factory([[fetch_result([make_candidate(1)])]])
        context = RunContext()
        context.request_stop("shutdown")

        report = await pipeline.run(context)

        assert report.items_stored == 0
        mock_bot.send_message.assert_not_awaited()


class TestBuildPipeline:

    def test_wires_components_from_settings(self, tmp_path, db_connection, mock_bot):
        settings = make_settings(tmp_path)

        pipeline = build_pipeline(settings, db=db_connection, bot=mock_bot)

        assert pipeline.targets == ["bot", "channel"]
        assert pipeline.analysis_enabled
        assert pipeline.analysis_service.models == ["model-a", "model-b"]
        assert pipeline.fetch_runner.cache is None

    def test_analysis_disabled(self, tmp_path, db_connection, mock_bot):
        settings = make_settings(tmp_path, analysis_enabled=False)

        pipeline = build_pipeline(settings, db=db_connection, bot=mock_bot)

        assert not pipeline.analysis_enabled
        assert pipeline.analysis_service is None
