"""
Processing Pipeline Orchestrator
================================

Runs one feed-to-channel pass: retry failed publications, fetch feeds,
store new items, analyze them and publish the results to every target.
All per-run state lives in the RunContext handed to run().
"""

import asyncio
from decimal import Decimal
from typing import Iterable, List, Optional

from telegram import Bot

from .fetch_runner import FetchResult, FetchRunner
from .run_context import FeedSummary, RunContext, RunReport
from ..ai.analysis_service import AIAnalysisService
from ..ai.completion_client import OpenRouterCompletionClient
from ..ai.prompt_manager import PromptManager
from ..config.settings import FeedRelaySettings
from ..database.connection import DatabaseConnection, get_db_manager
from ..database.models import AIAnalysis, AnalysisStatus, Item, PublicationOutcome, PublicationStatus
from ..delivery.formatter import MessageFormatter
from ..delivery.message_sender import TelegramSender
from ..ingestion.fetch_cache import FetchCache
from ..recovery.retry_logic import RetryConfig, RetryStrategy
from ..storage.analysis_repository import AIAnalysisRepository
from ..storage.feed_state_repository import FeedStateRepository
from ..storage.item_repository import ItemRepository
from ..storage.publication_repository import PublicationRepository
from ..utils.exceptions import AIError
from ..utils.logging import PerformanceLogger, get_logger_for_component


class FeedPipeline:
    """Feed-to-channel pipeline orchestrator."""

    def __init__(
        self,
        settings: FeedRelaySettings,
        fetch_runner: FetchRunner,
        item_repo: ItemRepository,
        publication_repo: PublicationRepository,
        sender: Optional[TelegramSender] = None,
        formatter: Optional[MessageFormatter] = None,
        analysis_service: Optional[AIAnalysisService] = None,
        analysis_repo: Optional[AIAnalysisRepository] = None,
    ):
        """Initialize pipeline.

        Args:
            settings: Application settings
            fetch_runner: Feed fetcher
            item_repo: Item deduplication gate
            publication_repo: Per-target delivery ledger
            sender: Send capability (None disables publishing)
            formatter: Message formatter
            analysis_service: AI analysis (None disables analysis)
            analysis_repo: Stored analyses, read when formatting messages
        """
        self.settings = settings
        self.fetch_runner = fetch_runner
        self.item_repo = item_repo
        self.publication_repo = publication_repo
        self.sender = sender
        self.formatter = formatter or MessageFormatter()
        self.analysis_service = analysis_service
        self.analysis_repo = analysis_repo
        self.purpose = settings.ai.purpose
        self.logger = get_logger_for_component("pipeline")

    @property
    def targets(self) -> List[str]:
        return list(self.sender.targets) if self.sender else []

    @property
    def analysis_enabled(self) -> bool:
        return self.settings.processing.analysis_enabled and self.analysis_service is not None

    @property
    def publishes_unanalyzed(self) -> bool:
        return self.settings.processing.publish_without_analysis or not self.analysis_enabled

    async def run(self, context: Optional[RunContext] = None) -> RunReport:
        """Run every stage once and return the run report.

        Raises:
            DatabaseError: Storage failures are not absorbed
        """
        context = context or RunContext(max_items=self.settings.processing.max_items_per_run)
        self.logger.info(f"Starting run {context.run_id}")

        with PerformanceLogger(self.logger, f"pipeline run {context.run_id}"):
            await self.retry_failed_publications(context)

            results = await self.fetch_runner.run(self.settings.get_feed_configs(), context)
            new_ids = self.store_items(results, context)

            analyzed_ids: List[int] = []
            if self.analysis_enabled:
                analyzed_ids = await self.analyze_items(new_ids, context)

            to_publish = list(analyzed_ids)
            if self.publishes_unanalyzed:
                to_publish.extend(i for i in new_ids if i not in analyzed_ids)
            await self.publish_items(to_publish, context)

        report = context.finish()
        self.logger.info(f"Run {context.run_id} finished\n{report.format_summary()}")
        return report

    async def retry_failed_publications(self, context: RunContext) -> None:
        """Re-attempt pending or failed publications below the retry limit.

        Analyzed items that never got publication rows (a run died between
        storing the analysis and queueing delivery) are queued first.
        """
        if not self.sender or context.should_stop:
            return

        if self.analysis_repo is not None:
            for item_id in self.analysis_repo.get_unpublished_item_ids(
                self.purpose, limit=self.settings.processing.pending_backlog_limit
            ):
                self.logger.info(f"Item {item_id} was analyzed but never queued for publication")
                self._record_publication_intent(item_id)

        for target in self.targets:
            retryable = self.publication_repo.get_retryable(
                max_attempts=self.settings.telegram.max_retries, target=target
            )
            if retryable:
                self.logger.info(f"Retrying {len(retryable)} publications to {target}")

            for publication in retryable:
                if context.should_stop:
                    return
                item = self.item_repo.get_item(publication.item_id)
                if item is None:
                    continue
                content = self.formatter.format_item(item, self._current_analysis(item.id))
                outcome = await self.publication_repo.publish(
                    item.id, target, self.sender.send_fn_for(target, content)
                )
                self._count_publication(context.report, outcome)

    def store_items(self, results: Iterable[FetchResult], context: RunContext) -> List[int]:
        """Pass fetched candidates through the deduplication gate.

        Returns:
            IDs of items stored for the first time in this run
        """
        report = context.report
        new_ids: List[int] = []

        for result in results:
            summary = FeedSummary(
                feed_id=result.feed_id,
                url=result.feed_url,
                success=result.success,
                status=result.status,
                candidates=result.item_count,
                from_cache=result.from_cache,
                skipped=result.skipped,
            )
            report.feeds[result.feed_id] = summary
            if result.error:
                report.errors.append(f"feed {result.feed_id}: {result.error}")

            for index, candidate in enumerate(result.items):
                if not context.accepting_items:
                    remaining = len(result.items) - index
                    self.logger.info(
                        f"Feed {result.feed_id}: {remaining} candidates left for the next run"
                    )
                    self.fetch_runner.forget_validators(result.feed_id)
                    break

                report.items_discovered += 1
                if candidate.is_malformed:
                    self.item_repo.save(result.feed_id, candidate)
                    summary.rejected += 1
                    report.items_rejected += 1
                    continue

                reserved = self.item_repo.reserve(result.feed_id, candidate)
                if reserved.created:
                    new_ids.append(reserved.item_id)
                    if self.publishes_unanalyzed:
                        self._record_publication_intent(reserved.item_id)
                    summary.stored += 1
                    report.items_stored += 1
                    context.note_item()
                else:
                    summary.duplicates += 1
                    report.items_duplicate += 1

        self.logger.info(
            f"Stored {report.items_stored} new items "
            f"({report.items_duplicate} duplicates, {report.items_rejected} rejected)"
        )
        return new_ids

    async def analyze_items(self, new_ids: List[int], context: RunContext) -> List[int]:
        """Analyze new items plus the pending backlog.

        Returns:
            IDs of items that now have a current successful analysis
        """
        item_ids = list(new_ids)
        if self.analysis_repo is not None and not context.should_stop:
            backlog = self.analysis_repo.get_pending_item_ids(
                self.purpose,
                limit=self.settings.processing.pending_backlog_limit,
                max_failures=self.settings.processing.max_analysis_failures,
            )
            item_ids.extend(i for i in backlog if i not in item_ids)

        if not item_ids:
            return []

        report = context.report

        async def analyze_one(item: Item) -> Optional[int]:
            if context.should_stop:
                return None
            try:
                result = await self.analysis_service.analyze_and_store(item, self.settings.ai.prompt_id)
            except AIError as e:
                self.logger.error(f"Analysis of item {item.id} failed: {e}")
                report.analyses_failed += 1
                report.errors.append(f"item {item.id}: {e}")
                return None

            if result is None:
                report.analyses_skipped += 1
                return None

            report.net_cost += result.net_cost
            if result.usage is not None:
                report.gross_cost += Decimal(str(result.usage))
            if result.success:
                report.analyses_succeeded += 1
                self._record_publication_intent(item.id)
                if result.fallback_used:
                    report.fallbacks_used += 1
                return item.id

            report.analyses_failed += 1
            return None

        items = self.item_repo.get_items(item_ids)
        with PerformanceLogger(self.logger, f"analysis of {len(items)} items"):
            analyzed = await asyncio.gather(*(analyze_one(item) for item in items))
        return [item_id for item_id in analyzed if item_id is not None]

    async def publish_items(self, item_ids: List[int], context: RunContext) -> None:
        """Publish items to every target; targets of one item run concurrently."""
        if not self.sender or not item_ids:
            return

        targets = self.targets
        for item_id in item_ids:
            self.publication_repo.ensure_pending(item_id, targets)

        for item in self.item_repo.get_items(item_ids):
            if context.should_stop:
                return

            content = self.formatter.format_item(item, self._current_analysis(item.id))
            outcomes = await asyncio.gather(
                *(
                    self.publication_repo.publish(item.id, target, self.sender.send_fn_for(target, content))
                    for target in targets
                )
            )
            for outcome in outcomes:
                self._count_publication(context.report, outcome)

    def _record_publication_intent(self, item_id: int) -> None:
        if self.sender:
            self.publication_repo.ensure_pending(item_id, self.targets)

    def _current_analysis(self, item_id: int) -> Optional[AIAnalysis]:
        if self.analysis_repo is None:
            return None
        analysis = self.analysis_repo.get_current(item_id, self.purpose)
        if analysis is None or analysis.status != AnalysisStatus.SUCCESS:
            return None
        return analysis

    @staticmethod
    def _count_publication(report: RunReport, outcome: PublicationOutcome) -> None:
        counts = report.target(outcome.target)
        if outcome.skipped:
            counts.skipped += 1
        elif outcome.sent_now:
            counts.sent += 1
        elif outcome.status == PublicationStatus.FAILED:
            counts.failed += 1
            report.errors.append(f"item {outcome.item_id} -> {outcome.target}: {outcome.error}")

    async def close(self) -> None:
        if self.sender is not None:
            await self.sender.close()
        if self.analysis_service is not None and hasattr(self.analysis_service.client, "close"):
            await self.analysis_service.client.close()


def build_pipeline(
    settings: FeedRelaySettings,
    db: Optional[DatabaseConnection] = None,
    bot: Optional[Bot] = None,
) -> FeedPipeline:
    """Wire a pipeline from settings."""
    db = db or get_db_manager(settings.database.path, settings.database.pool_size)

    cache = None
    if settings.cache.enabled:
        cache = FetchCache(settings.cache.directory, settings.cache.default_ttl)

    fetch_runner = FetchRunner(
        FeedStateRepository(db),
        cache=cache,
        parallel_feeds=settings.processing.parallel_feeds,
        request_timeout=settings.limits.request_timeout,
        backoff_config=RetryConfig(
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
            base_delay=settings.limits.base_backoff_seconds,
            max_delay=settings.limits.max_backoff_seconds,
        ),
        backoff_enabled=settings.processing.backoff_enabled,
    )

    analysis_repo = AIAnalysisRepository(db)
    analysis_service = None
    if settings.processing.analysis_enabled:
        prompt_manager = PromptManager(settings.ai.prompts_dir, purpose=settings.ai.purpose)
        analysis_service = AIAnalysisService(
            OpenRouterCompletionClient(
                api_key=settings.ai.openrouter_api_key,
                base_url=settings.ai.base_url,
                temperature=settings.ai.temperature,
                max_tokens=settings.ai.max_tokens,
            ),
            settings.ai.models,
            analysis_repo=analysis_repo,
            prompt_manager=prompt_manager,
            retry_config=RetryConfig(
                strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
                base_delay=settings.ai.retry_delay_seconds,
                max_delay=settings.ai.max_retry_delay_seconds,
            ),
            max_concurrent_requests=settings.ai.max_concurrent_requests,
            request_timeout=settings.ai.request_timeout,
        )

    sender = None
    if settings.telegram.targets:
        sender = TelegramSender(
            bot or Bot(token=settings.telegram.bot_token),
            settings.telegram.targets,
            disable_web_page_preview=settings.telegram.disable_web_page_preview,
            message_delay=settings.telegram.message_delay_seconds,
        )

    return FeedPipeline(
        settings,
        fetch_runner=fetch_runner,
        item_repo=ItemRepository(db),
        publication_repo=PublicationRepository(db, settings.telegram.claim_timeout_seconds),
        sender=sender,
        formatter=MessageFormatter(),
        analysis_service=analysis_service,
        analysis_repo=analysis_repo,
    )
