"""
Publication Repository
======================

Delivery accounting per (item, target) pair. A publish call claims the pair
atomically before invoking the send capability, so concurrent or repeated
calls can never produce two deliveries for the same pair. A sent row is
terminal.
"""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..database.connection import DatabaseConnection
from ..database.models import (
    Publication,
    PublicationOutcome,
    PublicationStatus,
    format_timestamp,
    utc_now,
)
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import DatabaseError, ErrorCode

SendFn = Callable[[], Awaitable[Any]]


class PublicationRepository:
    """Repository tracking publications of items to messaging targets."""

    def __init__(self, db_connection: DatabaseConnection, claim_timeout_seconds: int = 300):
        """Initialize publication repository.

        Args:
            db_connection: Database connection manager
            claim_timeout_seconds: Age after which an in-flight claim left by a
                crashed worker may be taken over
        """
        self.db = db_connection
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.logger = get_logger_for_component("publication_repository")

    async def publish(self, item_id: int, target: str, send_fn: SendFn) -> PublicationOutcome:
        """Deliver an item to a target at most once.

        Args:
            item_id: Item to publish
            target: Target name (e.g. "bot", "channel")
            send_fn: Zero-argument coroutine function performing the delivery
                and returning the platform message ID

        Returns:
            PublicationOutcome; a pair that is already sent (or being sent
            by another worker) is returned with skipped=True and send_fn is
            not called. Send failures are recorded, not raised.

        Raises:
            DatabaseError: If the publication state cannot be read or written
        """
        claimed, publication = self._claim(item_id, target)
        if not claimed:
            self.logger.debug(
                f"Skipping item {item_id} -> {target}: status {publication.status.value}"
                + (" (in flight)" if publication.claimed_at else "")
            )
            return PublicationOutcome.from_publication(publication, skipped=True)

        try:
            message_id = await send_fn()
        except asyncio.CancelledError:
            self._release_claim(item_id, target)
            raise
        except Exception as e:
            publication = self._mark_failed(item_id, target, str(e) or type(e).__name__)
            self.logger.warning(
                f"Publishing item {item_id} to {target} failed "
                f"(attempt {publication.attempts}): {e}",
                extra={"item_id": item_id, "target": target},
            )
            return PublicationOutcome.from_publication(publication)

        publication = self._mark_sent(item_id, target, message_id)
        self.logger.info(
            f"Published item {item_id} to {target} (message {publication.platform_message_id})",
            extra={"item_id": item_id, "target": target},
        )
        outcome = PublicationOutcome.from_publication(publication)
        outcome.sent_now = True
        return outcome

    def ensure_pending(self, item_id: int, targets: Iterable[str]) -> int:
        """Record the decision to deliver an item; existing rows are untouched.

        Returns:
            Number of new pending rows
        """
        now = format_timestamp(utc_now())
        created = 0
        try:
            with self.db.transaction() as conn:
                for target in targets:
                    created += conn.execute(
                        """
                        INSERT INTO publications (item_id, target, status, attempts, created_at, updated_at)
                        VALUES (?, ?, 'pending', 0, ?, ?)
                        ON CONFLICT(item_id, target) DO NOTHING
                    """,
                        (item_id, target, now, now),
                    ).rowcount
        except Exception as e:
            raise DatabaseError(
                f"Failed to create publications for item {item_id}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            )
        return created

    def _claim(self, item_id: int, target: str) -> Tuple[bool, Publication]:
        """Create the row if needed and take the in-flight claim.

        Only one caller can move claimed_at from NULL (or stale) to now; a
        failed row moves back to pending when claimed for a retry.
        """
        now = utc_now()
        now_str = format_timestamp(now)
        stale_before = format_timestamp(now - self.claim_timeout)

        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO publications (item_id, target, status, attempts, created_at, updated_at)
                    VALUES (?, ?, 'pending', 0, ?, ?)
                    ON CONFLICT(item_id, target) DO NOTHING
                """,
                    (item_id, target, now_str, now_str),
                )
                claimed = conn.execute(
                    """
                    UPDATE publications
                    SET claimed_at = ?, status = 'pending', updated_at = ?
                    WHERE item_id = ? AND target = ? AND status != 'sent'
                      AND (claimed_at IS NULL OR claimed_at < ?)
                """,
                    (now_str, now_str, item_id, target, stale_before),
                ).rowcount == 1
                row = conn.execute(
                    "SELECT * FROM publications WHERE item_id = ? AND target = ?",
                    (item_id, target),
                ).fetchone()
        except Exception as e:
            self.logger.error(f"Failed to claim publication {item_id} -> {target}: {e}")
            raise DatabaseError(
                f"Failed to claim publication: {e}", error_code=ErrorCode.DATABASE_TRANSACTION
            )

        return claimed, Publication.from_db_row(row)

    def _mark_sent(self, item_id: int, target: str, message_id: Any) -> Publication:
        now = format_timestamp(utc_now())
        return self._finish(
            """
            UPDATE publications
            SET status = 'sent', platform_message_id = ?, attempts = attempts + 1,
                last_error = NULL, claimed_at = NULL, updated_at = ?, sent_at = ?
            WHERE item_id = ? AND target = ? AND status != 'sent'
        """,
            (None if message_id is None else str(message_id), now, now, item_id, target),
            item_id,
            target,
        )

    def _mark_failed(self, item_id: int, target: str, error: str) -> Publication:
        now = format_timestamp(utc_now())
        return self._finish(
            """
            UPDATE publications
            SET status = 'failed', attempts = attempts + 1, last_error = ?,
                claimed_at = NULL, updated_at = ?
            WHERE item_id = ? AND target = ? AND status != 'sent'
        """,
            (error[:1000], now, item_id, target),
            item_id,
            target,
        )

    def _release_claim(self, item_id: int, target: str) -> None:
        self.db.execute_update(
            "UPDATE publications SET claimed_at = NULL WHERE item_id = ? AND target = ? AND status != 'sent'",
            (item_id, target),
        )

    def _finish(self, query: str, params: tuple, item_id: int, target: str) -> Publication:
        try:
            with self.db.transaction() as conn:
                conn.execute(query, params)
                row = conn.execute(
                    "SELECT * FROM publications WHERE item_id = ? AND target = ?",
                    (item_id, target),
                ).fetchone()
        except Exception as e:
            self.logger.error(f"Failed to record publication {item_id} -> {target}: {e}")
            raise DatabaseError(
                f"Failed to record publication result: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            )
        return Publication.from_db_row(row)

    def get_outcome(self, item_id: int, target: str) -> Optional[PublicationOutcome]:
        publication = self.get_publication(item_id, target)
        return PublicationOutcome.from_publication(publication) if publication else None

    def get_publication(self, item_id: int, target: str) -> Optional[Publication]:
        row = self.db.execute_one(
            "SELECT * FROM publications WHERE item_id = ? AND target = ?",
            (item_id, target),
        )
        return Publication.from_db_row(row) if row else None

    def get_retryable(
        self, max_attempts: int, target: Optional[str] = None, limit: int = 50
    ) -> List[Publication]:
        """Unclaimed pending or failed publications below the attempt limit."""
        query = """
            SELECT * FROM publications
            WHERE status IN ('pending', 'failed') AND claimed_at IS NULL AND attempts < ?
        """
        params: list = [max_attempts]
        if target:
            query += " AND target = ?"
            params.append(target)
        query += " ORDER BY updated_at LIMIT ?"
        params.append(limit)

        rows = self.db.execute_query(query, tuple(params))
        return [Publication.from_db_row(row) for row in rows]

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Publication counts per target and status."""
        rows = self.db.execute_query(
            "SELECT target, status, COUNT(*) AS total FROM publications GROUP BY target, status"
        )
        stats: Dict[str, Dict[str, int]] = {}
        for row in rows:
            per_target = stats.setdefault(
                row["target"], {status.value: 0 for status in PublicationStatus}
            )
            per_target[row["status"]] = row["total"]
        return stats
