"""
FeedRelay Database Schema
=========================

SQLite schema for the feed-to-channel pipeline:
- feed_state: per-feed fetch bookkeeping
- items: deduplicated feed entries, unique per (feed_id, content_key)
- ai_analysis: analysis results and cost ledger, one current row per (item, purpose)
- publications: delivery status per (item, target)
"""

import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class DatabaseSchema:
    """Database schema manager for the FeedRelay SQLite database."""

    def __init__(self, db_path: str = "data/feedrelay.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables with proper schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA foreign_keys = ON")

            # Dependency order
            self._create_feed_state_table(conn)
            self._create_items_table(conn)
            self._create_ai_analysis_table(conn)
            self._create_publications_table(conn)

            self._create_indexes(conn)

            conn.commit()
            logger.info("Database schema created successfully")

    def _create_feed_state_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS feed_state (
                feed_id INTEGER PRIMARY KEY,
                url TEXT,
                last_fetch_at TEXT,
                fetch_token TEXT,
                last_modified TEXT,
                failure_count INTEGER NOT NULL DEFAULT 0 CHECK (failure_count >= 0),
                last_status INTEGER,
                last_error TEXT,
                last_attempt_at TEXT,
                backoff_until TEXT,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
            )
        """
        )

    def _create_items_table(self, conn: sqlite3.Connection) -> None:
        """Create items table; the unique key is the dedup gate."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                feed_id INTEGER NOT NULL,
                content_key TEXT NOT NULL,
                guid TEXT,
                title TEXT NOT NULL DEFAULT '',
                link TEXT,
                description TEXT,
                categories_json TEXT NOT NULL DEFAULT '[]',
                published_at TEXT,
                author TEXT,
                raw_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                UNIQUE(feed_id, content_key)
            )
        """
        )

    def _create_ai_analysis_table(self, conn: sqlite3.Connection) -> None:
        """Create analysis ledger with one current row per (item, purpose)."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_analysis (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id INTEGER NOT NULL,
                purpose TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('success', 'failed')),
                model_used TEXT,
                models_attempted_json TEXT NOT NULL DEFAULT '[]',
                result_text TEXT,
                tokens_prompt INTEGER NOT NULL DEFAULT 0,
                tokens_completion INTEGER NOT NULL DEFAULT 0,
                usage_gross REAL,
                usage_cache REAL,
                usage_data REAL,
                usage_web REAL,
                usage_file REAL,
                usage_net REAL,
                error_message TEXT,
                language TEXT,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                is_current INTEGER NOT NULL DEFAULT 1,
                superseded_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (item_id) REFERENCES items(id) ON DELETE CASCADE
            )
        """
        )
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_ai_analysis_current
            ON ai_analysis(item_id, purpose) WHERE is_current = 1
        """
        )

    def _create_publications_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS publications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id INTEGER NOT NULL,
                target TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'sent', 'failed')),
                platform_message_id TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                claimed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                sent_at TEXT,
                FOREIGN KEY (item_id) REFERENCES items(id) ON DELETE CASCADE,
                UNIQUE(item_id, target)
            )
        """
        )

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_items_feed ON items(feed_id)",
            "CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at)",
            "CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at)",
            "CREATE INDEX IF NOT EXISTS idx_ai_analysis_item ON ai_analysis(item_id)",
            "CREATE INDEX IF NOT EXISTS idx_ai_analysis_status ON ai_analysis(status, is_current)",
            "CREATE INDEX IF NOT EXISTS idx_publications_status ON publications(target, status)",
            "CREATE INDEX IF NOT EXISTS idx_feed_state_failures ON feed_state(failure_count)",
        ]

        for index_sql in indexes:
            conn.execute(index_sql)

    def drop_tables(self) -> None:
        """Drop all tables (for testing/reset purposes)."""
        with sqlite3.connect(self.db_path) as conn:
            for table in ["publications", "ai_analysis", "items", "feed_state"]:
                conn.execute(f"DROP TABLE IF EXISTS {table}")

            conn.commit()
            logger.info("All database tables dropped")

    def get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.row_factory = sqlite3.Row
        return conn

    def verify_schema(self) -> bool:
        """Verify database schema is correctly created."""
        try:
            conn = self.get_connection()
            try:
                cursor = conn.execute(
                    """
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name NOT LIKE 'sqlite_%'
                    ORDER BY name
                """
                )

                tables = {row[0] for row in cursor.fetchall()}
                expected_tables = {"feed_state", "items", "ai_analysis", "publications"}

                missing = expected_tables - tables
                if missing:
                    logger.error(f"Missing tables: {sorted(missing)}")
                    return False

                conn.execute("PRAGMA foreign_key_check")
            finally:
                conn.close()

            logger.info("Database schema verification passed")
            return True

        except sqlite3.Error as e:
            logger.error(f"Schema verification failed: {e}")
            return False


def create_tables(db_path: str = "data/feedrelay.db") -> None:
    """Convenience function to create database tables."""
    DatabaseSchema(db_path).create_tables()
