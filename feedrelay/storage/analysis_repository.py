"""
AI Analysis Repository
======================

Persistence of analysis results and their cost ledger. A new analysis for
an (item, purpose) pair supersedes the current one explicitly; superseded
rows stay in the table with is_current = 0.
"""

import json
from typing import Any, Dict, List, Optional

from ..database.connection import DatabaseConnection
from ..database.models import (
    AIAnalysis,
    AnalysisResult,
    AnalysisStatus,
    format_timestamp,
    utc_now,
)
from ..utils.logging import get_logger_for_component
from ..utils.exceptions import DatabaseError, ErrorCode


class AIAnalysisRepository:
    """Repository for AI analysis records."""

    def __init__(self, db_connection: DatabaseConnection):
        self.db = db_connection
        self.logger = get_logger_for_component("analysis_repository")

    def store(self, item_id: int, result: AnalysisResult) -> int:
        """Persist an analysis result as the current one for its purpose.

        Args:
            item_id: Analyzed item
            result: Successful or exhausted analysis

        Returns:
            ID of the new analysis row

        Raises:
            DatabaseError: If the write fails
        """
        now = format_timestamp(utc_now())
        status = AnalysisStatus.SUCCESS if result.success else AnalysisStatus.FAILED

        try:
            with self.db.transaction() as conn:
                superseded = conn.execute(
                    """
                    UPDATE ai_analysis SET is_current = 0, superseded_at = ?
                    WHERE item_id = ? AND purpose = ? AND is_current = 1
                """,
                    (now, item_id, result.purpose),
                ).rowcount

                cursor = conn.execute(
                    """
                    INSERT INTO ai_analysis (
                        item_id, purpose, status, model_used, models_attempted_json,
                        result_text, tokens_prompt, tokens_completion,
                        usage_gross, usage_cache, usage_data, usage_web, usage_file, usage_net,
                        error_message, language, duration_ms, is_current, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                    (
                        item_id,
                        result.purpose,
                        status.value,
                        result.model_used,
                        json.dumps(result.models_attempted),
                        result.result_text,
                        result.tokens_prompt,
                        result.tokens_completion,
                        result.usage,
                        result.usage_cache,
                        result.usage_data,
                        result.usage_web,
                        result.usage_file,
                        float(result.net_cost),
                        result.error,
                        result.language,
                        result.duration_ms,
                        now,
                    ),
                )
                analysis_id = cursor.lastrowid

        except Exception as e:
            self.logger.error(f"Failed to store analysis for item {item_id}: {e}")
            raise DatabaseError(
                f"Failed to store analysis: {e}", error_code=ErrorCode.DATABASE_ERROR
            )

        self.logger.info(
            f"Stored {status.value} analysis {analysis_id} for item {item_id} "
            f"(model={result.model_used}, net_cost={result.net_cost})",
            extra={"item_id": item_id, "superseded": superseded},
        )
        return analysis_id

    def has_analysis(self, item_id: int, purpose: str) -> bool:
        """True when a current successful analysis exists for the purpose."""
        row = self.db.execute_one(
            """
            SELECT 1 FROM ai_analysis
            WHERE item_id = ? AND purpose = ? AND is_current = 1 AND status = 'success'
        """,
            (item_id, purpose),
        )
        return row is not None

    def get_current(self, item_id: int, purpose: str) -> Optional[AIAnalysis]:
        row = self.db.execute_one(
            "SELECT * FROM ai_analysis WHERE item_id = ? AND purpose = ? AND is_current = 1",
            (item_id, purpose),
        )
        return AIAnalysis.from_db_row(row) if row else None

    def get_history(self, item_id: int, purpose: str) -> List[AIAnalysis]:
        """All analyses for an item and purpose, oldest first."""
        rows = self.db.execute_query(
            "SELECT * FROM ai_analysis WHERE item_id = ? AND purpose = ? ORDER BY id",
            (item_id, purpose),
        )
        return [AIAnalysis.from_db_row(row) for row in rows]

    def get_pending_item_ids(
        self, purpose: str, limit: int = 20, max_failures: Optional[int] = None
    ) -> List[int]:
        """Stored items that lack a current successful analysis, oldest first.

        Items with max_failures or more failed attempts are left out.
        """
        if limit <= 0:
            return []
        query = """
            SELECT i.id FROM items i
            WHERE NOT EXISTS (
                SELECT 1 FROM ai_analysis a
                WHERE a.item_id = i.id AND a.purpose = ?
                  AND a.is_current = 1 AND a.status = 'success'
            )
        """
        params: list = [purpose]
        if max_failures is not None:
            query += """
              AND (SELECT COUNT(*) FROM ai_analysis f
                   WHERE f.item_id = i.id AND f.purpose = ? AND f.status = 'failed') < ?
            """
            params.extend([purpose, max_failures])
        query += " ORDER BY i.id LIMIT ?"
        params.append(limit)

        rows = self.db.execute_query(query, tuple(params))
        return [row["id"] for row in rows]

    def get_unpublished_item_ids(self, purpose: str, limit: int = 20) -> List[int]:
        """Items with a current successful analysis and no publication row for any target."""
        if limit <= 0:
            return []
        rows = self.db.execute_query(
            """
            SELECT a.item_id FROM ai_analysis a
            WHERE a.purpose = ? AND a.is_current = 1 AND a.status = 'success'
              AND NOT EXISTS (SELECT 1 FROM publications p WHERE p.item_id = a.item_id)
            ORDER BY a.item_id LIMIT ?
        """,
            (purpose, limit),
        )
        return [row["item_id"] for row in rows]

    def get_cost_summary(self) -> Dict[str, Any]:
        """Totals per model over every stored attempt, superseded ones included."""
        rows = self.db.execute_query(
            """
            SELECT COALESCE(model_used, '-') AS model,
                   COUNT(*) AS analyses,
                   SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS succeeded,
                   SUM(tokens_prompt) AS tokens_prompt,
                   SUM(tokens_completion) AS tokens_completion,
                   SUM(COALESCE(usage_gross, 0)) AS gross,
                   SUM(COALESCE(usage_net, 0)) AS net
            FROM ai_analysis
            GROUP BY COALESCE(model_used, '-')
            ORDER BY net DESC
        """
        )

        by_model = {row["model"]: dict(row) for row in rows}
        return {
            "by_model": by_model,
            "total_analyses": sum(r["analyses"] for r in by_model.values()),
            "total_gross": sum(r["gross"] or 0 for r in by_model.values()),
            "total_net": sum(r["net"] or 0 for r in by_model.values()),
        }
