"""
Feed State Repository
=====================

Per-feed fetch bookkeeping: last successful fetch, conditional request
tokens, consecutive failure count and backoff window.
"""

from datetime import datetime
from typing import List, Optional

from ..database.connection import DatabaseConnection
from ..database.models import FeedState, format_timestamp, utc_now
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import DatabaseError, ErrorCode


class FeedStateRepository:
    """Repository for feed fetch state."""

    def __init__(self, db_connection: DatabaseConnection):
        """Initialize feed state repository.

        Args:
            db_connection: Database connection manager
        """
        self.db = db_connection
        self.logger = get_logger_for_component("feed_state_repository")

    def get_state(self, feed_id: int) -> Optional[FeedState]:
        """Get the stored state of a feed, None before its first fetch attempt."""
        try:
            row = self.db.execute_one(
                "SELECT * FROM feed_state WHERE feed_id = ?", (feed_id,)
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to load state for feed {feed_id}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            )
        return self._row_to_state(row) if row else None

    def get_all_states(self) -> List[FeedState]:
        try:
            rows = self.db.execute_query("SELECT * FROM feed_state ORDER BY feed_id")
        except Exception as e:
            raise DatabaseError(
                f"Failed to list feed states: {e}", error_code=ErrorCode.DATABASE_ERROR
            )
        return [self._row_to_state(row) for row in rows]

    def record_success(
        self,
        feed_id: int,
        url: str,
        fetched_at: Optional[datetime] = None,
        status: int = 200,
        fetch_token: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> FeedState:
        """Record a successful fetch.

        Resets the failure count and backoff. last_fetch_at never moves
        backwards; conditional-request tokens are only replaced when the
        response provided new ones.
        """
        fetched = format_timestamp(fetched_at or utc_now())
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO feed_state (
                        feed_id, url, last_fetch_at, fetch_token, last_modified,
                        failure_count, last_status, last_error, last_attempt_at, backoff_until
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, NULL, ?, NULL)
                    ON CONFLICT(feed_id) DO UPDATE SET
                        url = excluded.url,
                        last_fetch_at = CASE
                            WHEN feed_state.last_fetch_at IS NULL
                                 OR feed_state.last_fetch_at < excluded.last_fetch_at
                            THEN excluded.last_fetch_at
                            ELSE feed_state.last_fetch_at
                        END,
                        fetch_token = COALESCE(excluded.fetch_token, feed_state.fetch_token),
                        last_modified = COALESCE(excluded.last_modified, feed_state.last_modified),
                        failure_count = 0,
                        last_status = excluded.last_status,
                        last_error = NULL,
                        last_attempt_at = excluded.last_attempt_at,
                        backoff_until = NULL
                """,
                    (feed_id, url, fetched, fetch_token, last_modified, status, fetched),
                )
                row = conn.execute(
                    "SELECT * FROM feed_state WHERE feed_id = ?", (feed_id,)
                ).fetchone()
        except Exception as e:
            self.logger.error(f"Failed to record success for feed {feed_id}: {e}")
            raise DatabaseError(
                f"Failed to record fetch success: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            )

        self.logger.debug(f"Feed {feed_id} fetch success recorded (status {status})")
        return self._row_to_state(row)

    def record_failure(
        self,
        feed_id: int,
        url: str,
        status: int,
        error: str,
        backoff_until: Optional[datetime] = None,
        attempted_at: Optional[datetime] = None,
    ) -> FeedState:
        """Record a failed fetch attempt and increment the failure count."""
        attempted = format_timestamp(attempted_at or utc_now())
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO feed_state (
                        feed_id, url, failure_count, last_status, last_error,
                        last_attempt_at, backoff_until
                    ) VALUES (?, ?, 1, ?, ?, ?, ?)
                    ON CONFLICT(feed_id) DO UPDATE SET
                        url = excluded.url,
                        failure_count = feed_state.failure_count + 1,
                        last_status = excluded.last_status,
                        last_error = excluded.last_error,
                        last_attempt_at = excluded.last_attempt_at,
                        backoff_until = excluded.backoff_until
                """,
                    (feed_id, url, status, error[:1000], attempted, format_timestamp(backoff_until)),
                )
                row = conn.execute(
                    "SELECT * FROM feed_state WHERE feed_id = ?", (feed_id,)
                ).fetchone()
        except Exception as e:
            self.logger.error(f"Failed to record failure for feed {feed_id}: {e}")
            raise DatabaseError(
                f"Failed to record fetch failure: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            )

        state = self._row_to_state(row)
        self.logger.warning(
            f"Feed {feed_id} failure #{state.failure_count}: {error}",
            extra={"feed_id": feed_id, "http_status": status},
        )
        return state

    def clear_validators(self, feed_id: int) -> bool:
        """Drop the ETag and Last-Modified of a feed so the next fetch is unconditional.

        Used when fetched candidates were not all consumed; a conditional
        request would otherwise answer 304 and hide them.
        """
        try:
            updated = self.db.execute_update(
                "UPDATE feed_state SET fetch_token = NULL, last_modified = NULL WHERE feed_id = ?",
                (feed_id,),
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to clear validators for feed {feed_id}: {e}",
                error_code=ErrorCode.DATABASE_ERROR,
            )
        if updated:
            self.logger.debug(f"Cleared conditional request validators of feed {feed_id}")
        return updated > 0

    def reset(self, feed_id: int) -> bool:
        """Clear failure count and backoff (operator action)."""
        try:
            updated = self.db.execute_update(
                "UPDATE feed_state SET failure_count = 0, backoff_until = NULL, last_error = NULL WHERE feed_id = ?",
                (feed_id,),
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to reset feed {feed_id}: {e}", error_code=ErrorCode.DATABASE_ERROR
            )
        return updated > 0

    def _row_to_state(self, row) -> FeedState:
        return FeedState.from_db_row(row)
