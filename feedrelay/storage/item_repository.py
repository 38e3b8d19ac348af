"""
Item Repository
===============

Deduplicating storage for feed items. Every candidate is identified by a
content key derived from its GUID (or normalized link), and the
(feed_id, content_key) pair is reserved atomically: the first writer creates
the row, every later writer observes the existing one.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import List, Optional

from ..database.connection import DatabaseConnection
from ..database.models import CandidateItem, Item, format_timestamp, utc_now
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import DatabaseError, ErrorCode
from ..utils.validators import URLValidator


@dataclass
class ReserveResult:
    """Result of reserving a content key for a feed."""

    item_id: int
    content_key: str
    created: bool


def compute_content_key(candidate: CandidateItem) -> str:
    """Deterministic identity of a candidate item.

    GUID when present, otherwise the normalized link. Entries exposing
    neither fall back to their title.
    """
    guid = (candidate.guid or "").strip()
    if guid:
        basis = f"guid:{guid}"
    else:
        link = URLValidator.normalize_link(candidate.link)
        if link:
            basis = f"link:{link}"
        else:
            basis = f"title:{(candidate.title or '').strip().lower()}"
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


class ItemRepository:
    """Repository for deduplicated feed items."""

    def __init__(self, db_connection: DatabaseConnection):
        """Initialize item repository.

        Args:
            db_connection: Database connection manager
        """
        self.db = db_connection
        self.logger = get_logger_for_component("item_repository")

    def save(self, feed_id: int, candidate: CandidateItem) -> Optional[int]:
        """Store a candidate item once.

        Args:
            feed_id: Feed the candidate came from
            candidate: Normalized feed entry

        Returns:
            New item ID on first insert; None when the item already existed
            or was rejected as malformed

        Raises:
            DatabaseError: If the insert fails for a reason other than a duplicate
        """
        if candidate.is_malformed:
            self.logger.warning(
                f"Rejected malformed item from feed {feed_id}: no title and no link",
                extra={"feed_id": feed_id, "guid": candidate.guid},
            )
            return None

        result = self.reserve(feed_id, candidate)
        return result.item_id if result.created else None

    def reserve(self, feed_id: int, candidate: CandidateItem) -> ReserveResult:
        """Insert the item unless its content key exists; return the row either way.

        The insert and the lookup run inside one immediate transaction, so two
        concurrent callers for the same key see exactly one creation.
        """
        content_key = compute_content_key(candidate)

        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO items (
                        feed_id, content_key, guid, title, link, description,
                        categories_json, published_at, author, raw_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(feed_id, content_key) DO NOTHING
                """,
                    (
                        feed_id,
                        content_key,
                        candidate.guid,
                        candidate.title or "",
                        candidate.link,
                        candidate.description,
                        json.dumps(candidate.categories, ensure_ascii=False),
                        format_timestamp(candidate.published_at),
                        candidate.author,
                        json.dumps(candidate.raw, ensure_ascii=False, default=str),
                        format_timestamp(utc_now()),
                    ),
                )

                if cursor.rowcount == 1:
                    item_id = cursor.lastrowid
                    created = True
                else:
                    row = conn.execute(
                        "SELECT id FROM items WHERE feed_id = ? AND content_key = ?",
                        (feed_id, content_key),
                    ).fetchone()
                    item_id = row["id"]
                    created = False

        except Exception as e:
            self.logger.error(f"Failed to store item for feed {feed_id}: {e}")
            raise DatabaseError(
                f"Failed to store item: {e}", error_code=ErrorCode.DATABASE_ERROR
            )

        if created:
            self.logger.debug(f"Stored item {item_id} for feed {feed_id}: {candidate.title[:60]}")
        else:
            self.logger.debug(f"Duplicate item for feed {feed_id} (existing id {item_id})")

        return ReserveResult(item_id=item_id, content_key=content_key, created=created)

    def get_item(self, item_id: int) -> Optional[Item]:
        try:
            row = self.db.execute_one("SELECT * FROM items WHERE id = ?", (item_id,))
        except Exception as e:
            raise DatabaseError(
                f"Failed to load item {item_id}: {e}", error_code=ErrorCode.DATABASE_ERROR
            )
        return Item.from_db_row(row) if row else None

    def get_items(self, item_ids: List[int]) -> List[Item]:
        """Load several items, preserving the requested order."""
        if not item_ids:
            return []

        placeholders = ",".join("?" for _ in item_ids)
        try:
            rows = self.db.execute_query(
                f"SELECT * FROM items WHERE id IN ({placeholders})", tuple(item_ids)
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to load items: {e}", error_code=ErrorCode.DATABASE_ERROR
            )

        by_id = {row["id"]: Item.from_db_row(row) for row in rows}
        return [by_id[item_id] for item_id in item_ids if item_id in by_id]

    def get_by_content_key(self, feed_id: int, content_key: str) -> Optional[Item]:
        row = self.db.execute_one(
            "SELECT * FROM items WHERE feed_id = ? AND content_key = ?",
            (feed_id, content_key),
        )
        return Item.from_db_row(row) if row else None

    def count_for_feed(self, feed_id: int) -> int:
        row = self.db.execute_one(
            "SELECT COUNT(*) AS total FROM items WHERE feed_id = ?", (feed_id,)
        )
        return row["total"] if row else 0

    def get_recent(self, limit: int = 20) -> List[Item]:
        rows = self.db.execute_query(
            "SELECT * FROM items ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [Item.from_db_row(row) for row in rows]
