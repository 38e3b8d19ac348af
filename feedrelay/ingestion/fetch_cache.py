"""
Fetch Cache
===========

File-backed cache of raw feed responses keyed by feed URL. Entries carry
their own expiry and the response validators (ETag, Last-Modified). Writes
go through a temporary file and an atomic rename, so concurrent readers
never observe a partial entry.
"""

import hashlib
import json
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..utils.logging import get_logger_for_component


@dataclass
class CachedResponse:
    """Raw response body plus the metadata needed to reuse it."""

    url: str
    body: bytes
    stored_at: float
    expires_at: float
    headers: Dict[str, str] = field(default_factory=dict)

    def is_fresh(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) < self.expires_at


class FetchCache:
    """TTL cache for raw feed payloads, safe for concurrent workers."""

    def __init__(self, directory: str = "data/cache", default_ttl: int = 300):
        """Initialize fetch cache.

        Args:
            directory: Directory holding cache entries
            default_ttl: TTL in seconds when store() is called without one
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.default_ttl = default_ttl
        self._lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "writes": 0, "errors": 0}
        self.logger = get_logger_for_component("fetch_cache")

    def _paths(self, url: str):
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.body", self.directory / f"{digest}.json"

    def get_cached(self, url: str) -> Optional[CachedResponse]:
        """Return a fresh entry for url, or None on miss or expiry."""
        body_path, meta_path = self._paths(url)
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            body = body_path.read_bytes()
        except FileNotFoundError:
            self._count("misses")
            return None
        except (OSError, ValueError) as e:
            self.logger.warning(f"Unreadable cache entry for {url}: {e}")
            self._count("errors")
            return None

        entry = CachedResponse(
            url=url,
            body=body,
            stored_at=meta.get("stored_at", 0.0),
            expires_at=meta.get("expires_at", 0.0),
            headers=meta.get("headers", {}),
        )

        # Metadata is written last, so a body mismatch means a concurrent rewrite
        if meta.get("sha256") != hashlib.sha256(body).hexdigest() or not entry.is_fresh():
            self._count("misses")
            return None

        self._count("hits")
        return entry

    def store(
        self,
        url: str,
        body: bytes,
        ttl: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Store a raw payload for url; ttl <= 0 disables storing."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return

        now = time.time()
        meta = {
            "url": url,
            "stored_at": now,
            "expires_at": now + ttl,
            "headers": headers or {},
            "sha256": hashlib.sha256(body).hexdigest(),
        }
        body_path, meta_path = self._paths(url)

        try:
            self._atomic_write(body_path, body)
            self._atomic_write(meta_path, json.dumps(meta).encode("utf-8"))
        except OSError as e:
            self.logger.warning(f"Failed to cache response for {url}: {e}")
            self._count("errors")
            return

        self._count("writes")

    def invalidate(self, url: str) -> None:
        for path in self._paths(url):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def clear(self) -> int:
        """Remove every cache entry; returns the number of files deleted."""
        removed = 0
        for path in self.directory.glob("*.body"):
            path.unlink(missing_ok=True)
            path.with_suffix(".json").unlink(missing_ok=True)
            removed += 1
        return removed

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _count(self, key: str) -> None:
        with self._lock:
            self.stats[key] += 1
