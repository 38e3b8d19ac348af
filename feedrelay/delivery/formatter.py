"""
Message Formatter
=================

Renders a stored item and its analysis as a Telegram HTML message.
"""

import html
import re
from typing import Any, List, Optional

from ..database.models import AIAnalysis, Item
from ..utils.logging import get_logger_for_component


class MessageFormatter:
    """Formats items for delivery."""

    def __init__(self, max_message_length: int = 4096, summary_length: int = 800, max_hashtags: int = 5):
        self.max_message_length = max_message_length
        self.summary_length = summary_length
        self.max_hashtags = max_hashtags
        self.logger = get_logger_for_component("formatter")

    def format_item(self, item: Item, analysis: Optional[AIAnalysis] = None) -> str:
        """Build the HTML message for one item.

        The headline and summary come from the analysis JSON when present,
        otherwise from the raw analysis text, otherwise from the item itself.
        """
        title = item.title or item.link or "Untitled"
        summary = None

        if analysis is not None and analysis.result_text:
            payload = analysis.result_payload()
            if payload is not None:
                title = self._as_text(payload.get("headline")) or title
                summary = self._as_text(payload.get("summary"))
            else:
                summary = analysis.result_text

        if not summary:
            summary = item.description or ""

        parts = [self._format_title(self._truncate_text(title.strip(), 300), item.link)]

        summary = self._truncate_text(summary.strip(), self.summary_length)
        if summary:
            parts.append(html.escape(summary))

        hashtags = self._format_hashtags(item.categories)
        if hashtags:
            parts.append(hashtags)

        message = "\n\n".join(parts)
        if len(message) > self.max_message_length:
            self.logger.debug(f"Message for item {item.id} truncated to {self.max_message_length} chars")
            message = self._truncate_text(message, self.max_message_length)
        return message

    @staticmethod
    def _as_text(value: Any) -> Optional[str]:
        """Model output field as text; lists become lines, other shapes are ignored."""
        if isinstance(value, str):
            return value
        if isinstance(value, (list, tuple)):
            lines = [str(part).strip() for part in value if isinstance(part, (str, int, float))]
            return "\n".join(line for line in lines if line) or None
        return None

    def _format_title(self, title: str, link: Optional[str]) -> str:
        escaped = html.escape(title.strip())
        if link:
            return f'<b><a href="{html.escape(link, quote=True)}">{escaped}</a></b>'
        return f"<b>{escaped}</b>"

    def _format_hashtags(self, categories: List[str]) -> str:
        tags = []
        for category in categories:
            tag = re.sub(r"\W+", "_", category).strip("_")[:40]
            if tag and f"#{tag}" not in tags:
                tags.append(f"#{tag}")
            if len(tags) >= self.max_hashtags:
                break
        return " ".join(tags)

    def _truncate_text(self, text: str, max_length: int) -> str:
        """Truncate text to max_length with an ellipsis, preferring a word boundary."""
        if len(text) <= max_length:
            return text

        truncated = text[: max_length - 1]
        last_space = truncated.rfind(" ")
        if last_space > max_length * 0.8:
            truncated = truncated[:last_space]
        return truncated.rstrip() + "…"
