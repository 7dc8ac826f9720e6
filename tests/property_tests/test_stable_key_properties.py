"""
Property-based tests for cache keys and page projections.

Key areas:
- Encoding is independent of field order and of array order
- Owner hashes are deterministic and never leak the raw id
- Page projections never mutate their input and keep totals consistent
"""

import json
import re

from hypothesis import given, settings
from hypothesis import strategies as st

from kitcache.core.aggregates import DerivedAggregateEngine
from kitcache.core.cache_store import CacheStore, EntityPage
from kitcache.core.projections import (
    UNCHANGED,
    merge_into_page,
    prepend_to_page,
    remove_from_page,
)
from kitcache.core.stable_keys import (
    EntityKeys,
    encode_params,
    hash_owner_id,
    ordered_encoder,
)

OWNER_HASH = re.compile(r"^(guest|u_[0-9a-z]+)$")

scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-1000, max_value=1000),
    st.text(max_size=8),
)
params_strategy = st.dictionaries(
    st.text(min_size=1, max_size=6),
    st.one_of(scalars, st.lists(scalars, max_size=5)),
    max_size=6,
)
statuses = st.sampled_from(["wishlist", "stash", "progress", "completed"])


@st.composite
def pages(draw):
    ids = draw(st.lists(st.text(min_size=1, max_size=4), unique=True, max_size=10))
    items = tuple({"id": i, "status": draw(statuses)} for i in ids)
    extra = draw(st.integers(min_value=0, max_value=20))
    return EntityPage(items=items, total_count=len(items) + extra)


class TestEncodingProperties:
    @given(params_strategy, st.randoms())
    def test_field_and_array_order_do_not_matter(self, params, rng):
        keys = list(params)
        rng.shuffle(keys)
        shuffled = {}
        for key in keys:
            value = params[key]
            if isinstance(value, list):
                value = list(value)
                rng.shuffle(value)
            shuffled[key] = value

        assert encode_params(shuffled) == encode_params(params)

    @given(params_strategy)
    def test_encoding_is_valid_json(self, params):
        decoded = json.loads(encode_params(params))

        assert set(decoded) == set(params)

    @given(st.lists(st.integers(), min_size=2, max_size=6, unique=True))
    def test_ordered_fields_preserve_caller_order(self, values):
        encoder = ordered_encoder(["sort"])

        assert json.loads(encoder.encode({"sort": values}))["sort"] == values


class TestOwnerHashProperties:
    @given(st.text(max_size=40))
    def test_hash_shape_and_determinism(self, owner_id):
        hashed = hash_owner_id(owner_id)

        assert OWNER_HASH.match(hashed)
        assert hashed == hash_owner_id(owner_id)

    @given(st.text(min_size=2, max_size=40).filter(lambda s: s != "guest"))
    def test_keys_never_contain_raw_owner(self, owner_id):
        key = EntityKeys("projects").list(owner_id, {"page": 1})

        assert key[2] != owner_id


class TestProjectionProperties:
    @given(pages(), st.text(min_size=1, max_size=4), statuses)
    def test_merge_touches_only_target(self, page, entity_id, status):
        before = [dict(item) for item in page.items]

        merged = merge_into_page(page, entity_id, {"status": status})

        assert [dict(item) for item in page.items] == before
        if merged is UNCHANGED:
            assert not page.contains(entity_id)
            return
        assert merged.total_count == page.total_count
        for old, new in zip(page.items, merged.items, strict=True):
            if old["id"] == entity_id:
                assert new["status"] == status
            else:
                assert new == old

    @given(pages(), st.text(min_size=1, max_size=4))
    def test_remove_keeps_totals_consistent(self, page, entity_id):
        removed = remove_from_page(page, entity_id)

        if removed is UNCHANGED:
            assert not page.contains(entity_id)
        else:
            assert not removed.contains(entity_id)
            assert removed.total_count == page.total_count - 1
            assert len(removed.items) == len(page.items) - 1

    @given(pages())
    def test_prepend_then_remove_restores_items(self, page):
        grown = prepend_to_page(page, {"id": "optimistic-x", "status": "stash"})
        shrunk = remove_from_page(grown, "optimistic-x")

        assert shrunk.items == page.items
        assert shrunk.total_count == page.total_count


class TestCountProperties:
    @settings(max_examples=50)
    @given(st.lists(pages(), max_size=4))
    def test_counts_never_exceed_distinct_entities(self, page_list):
        engine = DerivedAggregateEngine(CacheStore(), remote=None)
        union = {item["id"]: item for page in page_list for item in page.items}

        counts = engine.count(union)

        assert sum(counts.values()) == len(union)
