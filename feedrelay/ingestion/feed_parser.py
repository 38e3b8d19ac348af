"""
Feed Parser
===========

Thin adapter over feedparser that turns a raw RSS/Atom payload into a
ParsedFeed of normalized CandidateItem records.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

import feedparser

from ..database.models import CandidateItem
from ..utils.exceptions import FeedParseError
from ..utils.logging import get_logger_for_component
from ..utils.validators import ContentValidator


@dataclass
class ParsedFeed:
    """Channel-level metadata plus normalized entries."""

    title: Optional[str] = None
    link: Optional[str] = None
    description: Optional[str] = None
    items: List[CandidateItem] = field(default_factory=list)
    warning: Optional[str] = None


class FeedParser:
    """Parses raw feed payloads into candidate items."""

    DATE_FIELDS = ("published_parsed", "updated_parsed", "created_parsed")
    CONTENT_FIELDS = ("content", "summary", "description")

    def __init__(self):
        self.logger = get_logger_for_component("feed_parser")

    def parse(self, raw: bytes, feed_url: Optional[str] = None) -> ParsedFeed:
        """Parse a feed document.

        Args:
            raw: Raw response body
            feed_url: Source URL, for error context

        Returns:
            ParsedFeed with entries in document order

        Raises:
            FeedParseError: If the payload is not a usable feed
        """
        data = feedparser.parse(raw)
        entries = getattr(data, "entries", None) or []

        warning = None
        if getattr(data, "bozo", False):
            exc = getattr(data, "bozo_exception", None)
            warning = f"Feed parse error: {exc}" if exc else "Feed parse error: invalid XML structure"
            if not entries:
                raise FeedParseError(warning, feed_url=feed_url)
            self.logger.info(f"Feed has parse warnings but contains entries: {feed_url}")

        if not entries and not getattr(data, "version", ""):
            raise FeedParseError("Payload is not an RSS or Atom document", feed_url=feed_url)

        channel = data.get("feed", {})
        items = []
        for entry in entries:
            try:
                items.append(self.normalize_entry(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                self.logger.warning(
                    f"Failed to normalize entry in feed {feed_url}: {e}",
                    extra={"entry_title": entry.get("title", "Unknown")},
                )

        return ParsedFeed(
            title=ContentValidator.clean_title(channel.get("title")) or None,
            link=channel.get("link"),
            description=ContentValidator.clean_content(channel.get("subtitle")),
            items=items,
            warning=warning,
        )

    def normalize_entry(self, entry: Any) -> CandidateItem:
        """Map a feedparser entry onto a CandidateItem."""
        guid = (entry.get("id") or entry.get("guid") or "").strip() or None
        link = (entry.get("link") or "").strip() or None

        categories = ContentValidator.clean_categories(
            [tag.get("term") or tag.get("label") or "" for tag in entry.get("tags", [])]
        )

        return CandidateItem(
            guid=guid,
            link=link,
            title=ContentValidator.clean_title(entry.get("title")),
            description=self._extract_content(entry),
            categories=categories,
            published_at=self._parse_date(entry),
            author=(entry.get("author") or "").strip() or None,
            raw={
                "id": entry.get("id"),
                "link": entry.get("link"),
                "title": entry.get("title"),
                "published": entry.get("published") or entry.get("updated"),
                "enclosures": [
                    {"href": enc.get("href"), "type": enc.get("type"), "length": enc.get("length")}
                    for enc in entry.get("enclosures", [])
                ],
            },
        )

    def _extract_content(self, entry: Any) -> Optional[str]:
        """First non-empty body among content, summary and description."""
        for name in self.CONTENT_FIELDS:
            raw_content = entry.get(name)

            # Atom content is a list of dicts
            if isinstance(raw_content, list) and raw_content:
                raw_content = raw_content[0]
            if isinstance(raw_content, dict):
                raw_content = raw_content.get("value", "")

            if raw_content and isinstance(raw_content, str):
                cleaned = ContentValidator.clean_content(raw_content)
                if cleaned:
                    return cleaned

        return None

    def _parse_date(self, entry: Any) -> Optional[datetime]:
        """Publication date in UTC, None when absent or malformed."""
        for name in self.DATE_FIELDS:
            date_tuple = entry.get(name)
            if date_tuple:
                try:
                    return datetime.fromtimestamp(calendar.timegm(date_tuple), tz=timezone.utc)
                except (TypeError, ValueError, OverflowError):
                    continue
        return None
