"""
FeedRelay Input Validators
==========================

URL normalization and text sanitization used by ingestion and delivery.
"""

import re
import html
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode
from typing import List, Optional

from bs4 import BeautifulSoup

from .exceptions import ValidationError, ErrorCode


class URLValidator:
    """URL validation and normalization utilities."""

    ALLOWED_SCHEMES = {"http", "https"}

    # Query parameters that never change the addressed resource
    TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid", "yclid"}

    @classmethod
    def validate_feed_url(cls, url: str) -> str:
        """Validate and normalize a feed URL.

        Args:
            url: URL to validate

        Returns:
            Normalized URL

        Raises:
            ValidationError: If URL is invalid
        """
        if not url or not isinstance(url, str):
            raise ValidationError(
                "URL is required and must be a string",
                error_code=ErrorCode.VALIDATION_REQUIRED_FIELD,
                field_name="url",
            )

        url = url.strip()

        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise ValidationError(
                f"Invalid URL format: {str(e)}",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        if parsed.scheme.lower() not in cls.ALLOWED_SCHEMES:
            raise ValidationError(
                "URL scheme must be http or https",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        if not parsed.netloc:
            raise ValidationError(
                "URL must include a hostname",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        return urlunparse(
            parsed._replace(
                scheme=parsed.scheme.lower(),
                netloc=parsed.netloc.lower(),
                path=parsed.path or "/",
                fragment="",
            )
        )

    @classmethod
    def normalize_link(cls, url: Optional[str]) -> str:
        """Normalize an item link for identity purposes.

        Lowercases scheme and host, drops the fragment, drops tracking query
        parameters (utm_* and known click ids) and sorts the remaining ones.
        Links that do not parse as absolute http(s) URLs are returned stripped.
        """
        if not url:
            return ""

        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme.lower() not in cls.ALLOWED_SCHEMES or not parsed.netloc:
            return url

        query = [
            (key, value)
            for key, value in parse_qsl(parsed.query, keep_blank_values=True)
            if not key.lower().startswith("utm_")
            and key.lower() not in cls.TRACKING_PARAMS
        ]
        query.sort()

        path = parsed.path or "/"
        if len(path) > 1 and path.endswith("/"):
            path = path.rstrip("/")

        return urlunparse(
            parsed._replace(
                scheme=parsed.scheme.lower(),
                netloc=parsed.netloc.lower(),
                path=path,
                query=urlencode(query),
                fragment="",
            )
        )


class ContentValidator:
    """Text sanitization for feed-provided content."""

    MAX_TITLE_LENGTH = 1000
    MAX_CONTENT_LENGTH = 50000

    _WHITESPACE = re.compile(r"\s+")

    @classmethod
    def strip_html(cls, value: Optional[str]) -> str:
        """Remove markup and entities, collapse whitespace."""
        if not value:
            return ""

        if "<" in value and ">" in value:
            text = BeautifulSoup(value, "html.parser").get_text(" ")
        else:
            text = value

        text = html.unescape(text)
        return cls._WHITESPACE.sub(" ", text).strip()

    @classmethod
    def clean_title(cls, title: Optional[str]) -> str:
        title = cls.strip_html(title)
        if len(title) > cls.MAX_TITLE_LENGTH:
            title = title[: cls.MAX_TITLE_LENGTH]
        return title

    @classmethod
    def clean_content(cls, content: Optional[str]) -> Optional[str]:
        """Strip markup from a body text; None when nothing is left."""
        text = cls.strip_html(content)
        if not text:
            return None
        if len(text) > cls.MAX_CONTENT_LENGTH:
            text = text[: cls.MAX_CONTENT_LENGTH] + "... [truncated]"
        return text

    @classmethod
    def clean_categories(cls, categories: List[str]) -> List[str]:
        """Strip and de-duplicate categories keeping first-seen order."""
        seen = set()
        cleaned = []
        for category in categories:
            value = cls.strip_html(category)
            if value and value not in seen:
                seen.add(value)
                cleaned.append(value)
        return cleaned


_CYRILLIC = re.compile(r"[Ѐ-ӿ]")


def detect_language(text: str) -> str:
    """Rough language guess for prompt hints: Cyrillic text is 'ru', else 'en'."""
    if text and _CYRILLIC.search(text):
        return "ru"
    return "en"
