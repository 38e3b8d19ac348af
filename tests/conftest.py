"""
PyTest Configuration and Fixtures
=================================

Shared fixtures and configuration for FeedRelay tests.
"""

import pytest
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before any imports
os.environ["FEEDRELAY_TELEGRAM__BOT_TOKEN"] = (
    "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11_test"
)
os.environ["FEEDRELAY_AI__OPENROUTER_API_KEY"] = "test-openrouter-key-for-testing"
os.environ["FEEDRELAY_DEBUG"] = "true"

from feedrelay.database.connection import DatabaseConnection
from feedrelay.database.models import CandidateItem, CompletionResponse, FeedConfig
from feedrelay.database.schema import DatabaseSchema


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path):
    """Fresh database file with the full schema."""
    path = tmp_path / "feedrelay_test.db"
    DatabaseSchema(str(path)).create_tables()
    return str(path)


@pytest.fixture
def db_connection(db_path):
    """Connection manager over the test database."""
    conn = DatabaseConnection(db_path, pool_size=4)
    yield conn
    conn.close_all_connections()


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_candidate():
    """A well-formed candidate item."""
    return CandidateItem(
        guid="urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6a",
        link="https://example.com/posts/first?utm_source=rss",
        title="First post",
        description="Body of the first post about distributed systems.",
        categories=["Tech", "Distributed Systems"],
    )


@pytest.fixture
def make_candidate():
    """Factory for candidate items with unique GUIDs."""

    def _make(n: int, **overrides) -> CandidateItem:
        data = {
            "guid": f"guid-{n}",
            "link": f"https://example.com/posts/{n}",
            "title": f"Post number {n}",
            "description": f"Description of post {n}",
        }
        data.update(overrides)
        return CandidateItem(**data)

    return _make


@pytest.fixture
def sample_feed():
    return FeedConfig(id=1, url="https://example.com/feed.xml", name="Example")


@pytest.fixture
def mock_bot():
    """Telegram bot double whose send_message returns incrementing ids."""
    bot = MagicMock()
    counter = {"value": 100}

    async def send_message(**kwargs):
        counter["value"] += 1
        return MagicMock(message_id=counter["value"])

    bot.send_message = AsyncMock(side_effect=send_message)
    bot.initialize = AsyncMock()
    bot.shutdown = AsyncMock()
    return bot


@pytest.fixture
def completion_response():
    """Factory for normalized completion responses."""

    def _make(text='{"headline": "H", "summary": "S"}', **overrides) -> CompletionResponse:
        data = {"text": text, "tokens_prompt": 120, "tokens_completion": 40, "usage": 0.0001}
        data.update(overrides)
        return CompletionResponse(**data)

    return _make


RSS_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Feed</title>
    <link>https://example.com/</link>
    <description>Example channel</description>
    {items}
  </channel>
</rss>
"""

RSS_ITEM_TEMPLATE = """
    <item>
      <guid>{guid}</guid>
      <title>{title}</title>
      <link>{link}</link>
      <description>{description}</description>
      <category>News</category>
      <pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>
    </item>
"""


def build_rss(count: int, prefix: str = "item") -> bytes:
    """RSS 2.0 document with `count` items."""
    items = "".join(
        RSS_ITEM_TEMPLATE.format(
            guid=f"{prefix}-{n}",
            title=f"{prefix.title()} title {n}",
            link=f"https://example.com/{prefix}/{n}",
            description=f"Description for {prefix} {n}",
        )
        for n in range(1, count + 1)
    )
    return RSS_TEMPLATE.format(items=items).encode("utf-8")


@pytest.fixture
def rss_factory():
    return build_rss
