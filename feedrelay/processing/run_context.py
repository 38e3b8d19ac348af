"""
Run Context
===========

Explicit per-run state threaded through the pipeline stages: stop requests,
the item cap and the counters that end up in the run report.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..database.models import utc_now


@dataclass
class FeedSummary:
    """Per-feed outcome of a run."""

    feed_id: int
    url: str
    success: bool
    status: str
    candidates: int = 0
    stored: int = 0
    duplicates: int = 0
    rejected: int = 0
    from_cache: bool = False
    skipped: bool = False


@dataclass
class TargetSummary:
    """Per-target publication counters."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class RunReport:
    """Summary of one pipeline run."""

    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    feeds: Dict[int, FeedSummary] = field(default_factory=dict)
    items_discovered: int = 0
    items_stored: int = 0
    items_duplicate: int = 0
    items_rejected: int = 0
    analyses_succeeded: int = 0
    analyses_failed: int = 0
    analyses_skipped: int = 0
    fallbacks_used: int = 0
    gross_cost: Decimal = Decimal("0")
    net_cost: Decimal = Decimal("0")
    publications: Dict[str, TargetSummary] = field(default_factory=dict)
    stopped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def feeds_succeeded(self) -> int:
        return sum(1 for f in self.feeds.values() if f.success)

    @property
    def feeds_failed(self) -> int:
        return sum(1 for f in self.feeds.values() if not f.success and not f.skipped)

    @property
    def feeds_skipped(self) -> int:
        return sum(1 for f in self.feeds.values() if f.skipped)

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def target(self, name: str) -> TargetSummary:
        return self.publications.setdefault(name, TargetSummary())

    def format_summary(self) -> str:
        """Human-readable multi-line summary."""
        lines = [
            f"Run {self.run_id}: {self.duration_seconds:.1f}s"
            + (f" (stopped: {self.stopped_reason})" if self.stopped_reason else ""),
            f"Feeds: {self.feeds_succeeded} ok, {self.feeds_failed} failed, {self.feeds_skipped} skipped",
        ]
        for summary in self.feeds.values():
            mark = "ok" if summary.success else ("skip" if summary.skipped else "FAILED")
            lines.append(
                f"  [{mark}] feed {summary.feed_id}: {summary.status} "
                f"({summary.candidates} candidates, {summary.stored} new)"
            )
        lines.append(
            f"Items: {self.items_discovered} discovered, {self.items_stored} stored, "
            f"{self.items_duplicate} duplicates, {self.items_rejected} rejected"
        )
        lines.append(
            f"Analyses: {self.analyses_succeeded} succeeded, {self.analyses_failed} failed, "
            f"{self.analyses_skipped} skipped, net cost {self.net_cost}"
        )
        for target, counts in sorted(self.publications.items()):
            lines.append(
                f"Publications to {target}: {counts.sent} sent, "
                f"{counts.failed} failed, {counts.skipped} skipped"
            )
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "feeds": {
                feed_id: vars(summary) for feed_id, summary in self.feeds.items()
            },
            "items": {
                "discovered": self.items_discovered,
                "stored": self.items_stored,
                "duplicate": self.items_duplicate,
                "rejected": self.items_rejected,
            },
            "analyses": {
                "succeeded": self.analyses_succeeded,
                "failed": self.analyses_failed,
                "skipped": self.analyses_skipped,
                "fallbacks_used": self.fallbacks_used,
                "gross_cost": str(self.gross_cost),
                "net_cost": str(self.net_cost),
            },
            "publications": {
                target: vars(counts) for target, counts in self.publications.items()
            },
            "stopped_reason": self.stopped_reason,
            "errors": list(self.errors),
        }


class RunContext:
    """Cancellation flag, item cap and report of a single run."""

    def __init__(self, max_items: Optional[int] = None, run_id: Optional[str] = None):
        """Initialize run context.

        Args:
            max_items: Stop accepting new items after this many (None = no cap)
            run_id: Identifier for logs and reports
        """
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.started_at = utc_now()
        self.max_items = max_items
        self.items_processed = 0
        self.limit_reached = max_items is not None and max_items <= 0
        self._stop_reason: Optional[str] = None
        self.report = RunReport(run_id=self.run_id, started_at=self.started_at)

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask the pipeline to start no new work; in-flight work completes."""
        if self._stop_reason is None:
            self._stop_reason = reason
            self.report.stopped_reason = reason

    @property
    def should_stop(self) -> bool:
        return self._stop_reason is not None

    @property
    def accepting_items(self) -> bool:
        """False once a stop was requested or the item cap was reached."""
        return not self.should_stop and not self.limit_reached

    def note_item(self) -> None:
        """Count one newly stored item; reaching the cap stops further ingestion."""
        self.items_processed += 1
        if self.max_items is not None and self.items_processed >= self.max_items:
            self.limit_reached = True
            self.report.stopped_reason = f"item cap {self.max_items} reached"

    def finish(self) -> RunReport:
        self.report.finished_at = utc_now()
        return self.report
