"""
Unit tests for ItemRepository - idempotent ingestion and content keys.
"""

import threading

import pytest

from feedrelay.database.models import CandidateItem
from feedrelay.storage.item_repository import ItemRepository, compute_content_key


@pytest.fixture
def item_repo(db_connection):
    return ItemRepository(db_connection)


class TestContentKey:
    """Content key derivation."""

    def test_guid_takes_precedence_over_link(self):
        a = CandidateItem(guid="abc", link="https://example.com/1", title="One")
        b = CandidateItem(guid="abc", link="https://example.com/2", title="Two")
        assert compute_content_key(a) == compute_content_key(b)

    def test_link_normalization_ignores_tracking_params(self):
        a = CandidateItem(link="https://Example.com/post?utm_source=rss&id=5#comments", title="T")
        b = CandidateItem(link="https://example.com/post?id=5", title="T")
        assert compute_content_key(a) == compute_content_key(b)

    def test_different_guids_give_different_keys(self):
        a = CandidateItem(guid="one", title="Same")
        b = CandidateItem(guid="two", title="Same")
        assert compute_content_key(a) != compute_content_key(b)

    def test_title_fallback_when_no_guid_or_link(self):
        a = CandidateItem(title="  Breaking News ")
        b = CandidateItem(title="breaking news")
        assert compute_content_key(a) == compute_content_key(b)

    def test_key_is_sha256_hex(self, sample_candidate):
        key = compute_content_key(sample_candidate)
        assert len(key) == 64
        int(key, 16)


class TestItemRepository:
    """Deduplicating storage."""

    def test_save_returns_id_once(self, item_repo, sample_candidate):
        first = item_repo.save(1, sample_candidate)
        second = item_repo.save(1, sample_candidate)

        assert first is not None
        assert second is None
        assert item_repo.count_for_feed(1) == 1

    def test_same_guid_in_other_feed_is_separate_item(self, item_repo, sample_candidate):
        assert item_repo.save(1, sample_candidate) is not None
        assert item_repo.save(2, sample_candidate) is not None

    def test_reserve_reports_existing_id(self, item_repo, sample_candidate):
        created = item_repo.reserve(1, sample_candidate)
        again = item_repo.reserve(1, sample_candidate)

        assert created.created is True
        assert again.created is False
        assert again.item_id == created.item_id
        assert again.content_key == created.content_key

    def test_malformed_item_rejected(self, item_repo):
        malformed = CandidateItem(guid="only-guid", title="   ", link=None)

        assert malformed.is_malformed
        assert item_repo.save(1, malformed) is None
        assert item_repo.count_for_feed(1) == 0

    def test_item_round_trip_keeps_fields(self, item_repo, sample_candidate):
        item_id = item_repo.save(1, sample_candidate)
        item = item_repo.get_item(item_id)

        assert item.title == "First post"
        assert item.guid == sample_candidate.guid
        assert item.categories == ["Tech", "Distributed Systems"]
        assert item.feed_id == 1
        assert item.created_at is not None

    def test_get_items_preserves_requested_order(self, item_repo, make_candidate):
        ids = [item_repo.save(1, make_candidate(n)) for n in range(1, 4)]

        items = item_repo.get_items(list(reversed(ids)))

        assert [item.id for item in items] == list(reversed(ids))

    def test_get_item_missing_returns_none(self, item_repo):
        assert item_repo.get_item(9999) is None

    def test_concurrent_reserve_creates_one_row(self, item_repo, sample_candidate):
        results = []

        def worker():
            results.append(item_repo.reserve(1, sample_candidate))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.created) == 1
        assert len({r.item_id for r in results}) == 1
        assert item_repo.count_for_feed(1) == 1
