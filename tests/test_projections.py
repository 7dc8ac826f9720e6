"""Tests for the pure page and entity projections."""

from kitcache.core.cache_store import EntityPage
from kitcache.core.projections import (
    filters_decidable,
    matches_filters,
    prepend_to_page,
    status_change_patch,
)

PAGE = EntityPage(items=({"id": "a"}, {"id": "b"}, {"id": "c"}), total_count=7)


class TestPrepend:
    def test_keeps_page_size(self):
        grown = prepend_to_page(PAGE, {"id": "new"}, page_size=3)

        assert grown.ids() == ["new", "a", "b"]
        assert grown.total_count == 8
        assert PAGE.ids() == ["a", "b", "c"]

    def test_unbounded_without_page_size(self):
        assert prepend_to_page(PAGE, {"id": "new"}).ids() == ["new", "a", "b", "c"]


class TestFilters:
    def test_open_filters_accept_everything(self):
        filters = {"status": "all", "search_term": "", "selected_tags": []}

        assert matches_filters({"id": "x"}, filters)
        assert filters_decidable({"id": "x"}, filters)

    def test_field_filters(self):
        entity = {"status": "wishlist", "title": "Night Owl", "tags": ["t1", "t2"]}

        assert matches_filters(entity, {"status": "wishlist"})
        assert not matches_filters(entity, {"status": "completed"})
        assert matches_filters(entity, {"search_term": "owl"})
        assert matches_filters(entity, {"selected_tags": ("t1",)})
        assert not matches_filters(entity, {"selected_tags": ["t3"]})
        assert not matches_filters(
            {"kit_category": "mini"}, {"include_mini_kits": False}
        )

    def test_undecidable_when_field_missing(self):
        assert not filters_decidable({"title": "x"}, {"status": "stash"})
        assert not filters_decidable({"status": "stash"}, {"search_term": "owl"})
        assert filters_decidable({"title": "Owl"}, {"search_term": "owl"})
        assert filters_decidable({}, {"include_mini_kits": False})


def test_status_change_patch():
    assert status_change_patch("stash", "completed", "2025-07-17") == {
        "status": "completed",
        "date_completed": "2025-07-17",
    }
    assert status_change_patch("completed", "stash", "2025-07-17") == {
        "status": "stash",
        "date_completed": None,
    }
    assert status_change_patch("stash", "progress", "2025-07-17") == {
        "status": "progress"
    }
