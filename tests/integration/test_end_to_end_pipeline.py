"""
End-to-End Pipeline Integration Test
====================================

Fetch -> store -> analyze -> publish through build_pipeline, with only the
network edges replaced: the HTTP session, the completion client and the
Telegram bot.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from feedrelay.config.settings import FeedRelaySettings
from feedrelay.processing.pipeline import build_pipeline
from feedrelay.processing.run_context import RunContext
from feedrelay.storage.feed_state_repository import FeedStateRepository
from feedrelay.storage.publication_repository import PublicationRepository


pytestmark = pytest.mark.integration


class StubResponse:
    def __init__(self, status, body=b"", headers=None):
        self.status = status
        self.reason = "stub"
        self.headers = headers or {}
        self._body = body

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class StubSession:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        route = self.routes[url]
        if isinstance(route, Exception):
            raise route
        return route


@pytest.fixture
def settings(tmp_path):
    return FeedRelaySettings(
        telegram={
            "bot_token": "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11_test",
            "targets": {"bot": "1001", "channel": "@relay_channel"},
            "message_delay_seconds": 0,
        },
        ai={
            "openrouter_api_key": "test-key",
            "models": ["primary/model", "backup/model"],
            "prompts_dir": str(tmp_path / "prompts"),
            "retry_delay_seconds": 0,
        },
        database={"path": str(tmp_path / "e2e.db")},
        cache={"enabled": True, "directory": str(tmp_path / "cache")},
        feeds=[
            {"id": 1, "url": "https://news.example.com/rss", "cache_ttl": 300},
            {"id": 2, "url": "https://broken.example.com/rss"},
        ],
    )


@pytest.fixture
def pipeline_with_stubs(settings, db_connection, mock_bot, completion_response, rss_factory):
    session = StubSession({
        "https://news.example.com/rss": StubResponse(200, rss_factory(3, "news"), {"ETag": '"v1"'}),
        "https://broken.example.com/rss": aiohttp.ClientConnectionError("connection refused"),
    })

    pipeline = build_pipeline(settings, db=db_connection, bot=mock_bot)

    @asynccontextmanager
    async def stub_session():
        yield session

    pipeline.fetch_runner.get_session = stub_session

    client = MagicMock()
    client.complete = AsyncMock(side_effect=[
        Exception("primary overloaded"),
        completion_response(usage=0.0004, usage_cache=-0.0000257478),
        completion_response(usage=0.0004, usage_cache=-0.0000257478),
        completion_response(usage=0.0004, usage_cache=-0.0000257478),
    ])
    client.close = AsyncMock()
    pipeline.analysis_service.client = client

    return pipeline, session, client


@pytest.mark.asyncio
async def test_full_run_then_idempotent_rerun(pipeline_with_stubs, db_connection, mock_bot):
    pipeline, session, client = pipeline_with_stubs

    report = await pipeline.run()

    assert report.feeds_succeeded == 1
    assert report.feeds_failed == 1
    assert report.items_stored == 3
    assert report.analyses_succeeded == 3
    assert report.fallbacks_used == 1
    assert report.publications["bot"].sent == 3
    assert report.publications["channel"].sent == 3
    assert str(report.net_cost) == "0.0011227566"

    states = FeedStateRepository(db_connection)
    assert states.get_state(1).fetch_token == '"v1"'
    assert states.get_state(2).failure_count == 1

    # Second run: feed 1 served from cache, feed 2 still backing off
    rerun = await pipeline.run()

    assert rerun.feeds[1].from_cache
    assert rerun.feeds[2].skipped
    assert rerun.items_duplicate == 3
    assert rerun.items_stored == 0
    assert session.calls.count("https://news.example.com/rss") == 1
    assert session.calls.count("https://broken.example.com/rss") == 1
    assert client.complete.await_count == 4
    assert mock_bot.send_message.await_count == 6

    stats = PublicationRepository(db_connection).get_stats()
    assert stats["bot"]["sent"] == 3
    assert stats["channel"]["sent"] == 3

    await pipeline.close()
    mock_bot.shutdown.assert_awaited_once()
    client.close.assert_awaited_once()


class ConditionalSession:
    """Serves one feed and answers 304 when the client presents the current ETag."""

    def __init__(self, url, body, etag='"v1"'):
        self.url = url
        self.body = body
        self.etag = etag
        self.sent_headers = []

    def get(self, url, headers=None, timeout=None):
        headers = dict(headers or {})
        self.sent_headers.append(headers)
        if headers.get("If-None-Match") == self.etag:
            return StubResponse(304)
        return StubResponse(200, self.body, {"ETag": self.etag})


def _single_feed_pipeline(tmp_path, db_connection, mock_bot, completion_response, session):
    settings = FeedRelaySettings(
        telegram={
            "bot_token": "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11_test",
            "targets": {"channel": "@relay_channel"},
            "message_delay_seconds": 0,
        },
        ai={"openrouter_api_key": "test-key", "models": ["primary/model"], "prompts_dir": str(tmp_path / "prompts")},
        database={"path": str(tmp_path / "single.db")},
        cache={"enabled": False, "directory": str(tmp_path / "cache")},
        feeds=[{"id": 1, "url": session.url}],
    )
    pipeline = build_pipeline(settings, db=db_connection, bot=mock_bot)

    @asynccontextmanager
    async def stub_session():
        yield session

    pipeline.fetch_runner.get_session = stub_session

    client = MagicMock()
    client.complete = AsyncMock(return_value=completion_response())
    client.close = AsyncMock()
    pipeline.analysis_service.client = client
    return pipeline


def _item_count(db_connection):
    return db_connection.execute_one("SELECT COUNT(*) AS total FROM items")["total"]


@pytest.mark.asyncio
async def test_item_cap_does_not_hide_items_behind_not_modified(
    tmp_path, db_connection, mock_bot, completion_response, rss_factory
):
    session = ConditionalSession("https://etag.example.com/rss", rss_factory(3, "etag"))
    pipeline = _single_feed_pipeline(tmp_path, db_connection, mock_bot, completion_response, session)

    first = await pipeline.run(RunContext(max_items=1))
    assert first.items_stored == 1
    assert FeedStateRepository(db_connection).get_state(1).fetch_token is None

    second = await pipeline.run(RunContext(max_items=10))
    assert "If-None-Match" not in session.sent_headers[1]
    assert second.items_stored == 2
    assert second.items_duplicate == 1

    third = await pipeline.run(RunContext(max_items=10))
    assert session.sent_headers[2]["If-None-Match"] == '"v1"'
    assert third.feeds[1].status == "not modified"
    assert third.items_stored == 0

    assert _item_count(db_connection) == 3
    assert mock_bot.send_message.await_count == 3


@pytest.mark.asyncio
async def test_malformed_entry_rejected_without_feed_failure(
    tmp_path, db_connection, mock_bot, completion_response
):
    body = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Mixed</title><link>https://mixed.example.com/</link>
  <item><guid>good-1</guid><title>Good item</title><link>https://mixed.example.com/1</link></item>
  <item><guid isPermaLink="false">bad-1</guid><description>No title and no link</description></item>
</channel></rss>"""
    session = ConditionalSession("https://mixed.example.com/rss", body)
    pipeline = _single_feed_pipeline(tmp_path, db_connection, mock_bot, completion_response, session)

    report = await pipeline.run()

    assert report.feeds[1].success
    assert report.feeds[1].candidates == 2
    assert report.items_rejected == 1
    assert report.items_stored == 1
    assert _item_count(db_connection) == 1

    state = FeedStateRepository(db_connection).get_state(1)
    assert state.failure_count == 0
    assert state.last_status == 200
