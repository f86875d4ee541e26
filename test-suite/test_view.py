#!/usr/bin/env python3
import unittest
from collections import OrderedDict
from dataclasses import dataclass

from mihomo_tui.columns import CONNECTION_COLS, RULE_COLS, ColumnDef, canonical_text
from mihomo_tui.view import SearchState, SortSpec, derive_view, sortable_indexes


@dataclass
class _Item:
    name: str
    kind: str
    size: int

    @property
    def key(self) -> str:
        return self.name


COLS = [
    ColumnDef("name", "Name", lambda e: e.name),
    ColumnDef("kind", "Kind", lambda e: e.kind),
    ColumnDef("flag", "Flag", lambda e: "*", filterable=False, sortable=False),
    ColumnDef("size", "Size", lambda e: str(e.size), filterable=False, sort_key=lambda e: e.size),
]


def _entities(*items: _Item) -> "OrderedDict[str, _Item]":
    return OrderedDict((i.key, i) for i in items)


ITEMS = _entities(
    _Item("alpha", "Selector", 3),
    _Item("Beta", "URLTest", 10),
    _Item("gamma", "Selector", 3),
    _Item("delta", "Fallback", 1),
)


class TestDeriveView(unittest.TestCase):
    def test_no_pattern_no_sort_keeps_insertion_order(self):
        self.assertEqual(derive_view(ITEMS, COLS), ("alpha", "Beta", "gamma", "delta"))

    def test_pattern_is_case_insensitive_substring(self):
        self.assertEqual(derive_view(ITEMS, COLS, pattern="BETA"), ("Beta",))
        self.assertEqual(derive_view(ITEMS, COLS, pattern="selec"), ("alpha", "gamma"))

    def test_blank_pattern_keeps_everything(self):
        self.assertEqual(len(derive_view(ITEMS, COLS, pattern="   ")), 4)

    def test_pattern_ignores_non_filterable_columns(self):
        # "10" only appears in the non-filterable size column
        self.assertEqual(derive_view(ITEMS, COLS, pattern="10"), ())
        self.assertEqual(derive_view(ITEMS, COLS, pattern="*"), ())

    def test_result_is_subset_of_entities(self):
        view = derive_view(ITEMS, COLS, SortSpec(col=3), pattern="a")
        self.assertTrue(set(view) <= set(ITEMS))
        self.assertEqual(len(view), len(set(view)))

    def test_idempotent(self):
        spec = SortSpec(col=0, desc=False)
        self.assertEqual(derive_view(ITEMS, COLS, spec, "a"), derive_view(ITEMS, COLS, spec, "a"))

    def test_sort_by_key_descending_is_stable(self):
        view = derive_view(ITEMS, COLS, SortSpec(col=3, desc=True))
        # alpha and gamma tie on size 3 and keep insertion order
        self.assertEqual(view, ("Beta", "alpha", "gamma", "delta"))

    def test_sort_by_key_ascending_is_stable(self):
        view = derive_view(ITEMS, COLS, SortSpec(col=3, desc=False))
        self.assertEqual(view, ("delta", "alpha", "gamma", "Beta"))

    def test_sort_by_rendered_text(self):
        view = derive_view(ITEMS, COLS, SortSpec(col=1, desc=False))
        self.assertEqual(view, ("delta", "alpha", "gamma", "Beta"))

    def test_sort_on_non_sortable_column_keeps_order(self):
        self.assertEqual(derive_view(ITEMS, COLS, SortSpec(col=2)), ("alpha", "Beta", "gamma", "delta"))

    def test_out_of_range_sort_column_keeps_order(self):
        self.assertEqual(derive_view(ITEMS, COLS, SortSpec(col=42)), ("alpha", "Beta", "gamma", "delta"))

    def test_accepts_iterable_of_entities(self):
        self.assertEqual(derive_view(list(ITEMS.values()), COLS, pattern="delta"), ("delta",))

    def test_entities_are_not_mutated(self):
        before = list(ITEMS.items())
        derive_view(ITEMS, COLS, SortSpec(col=3), "a")
        self.assertEqual(list(ITEMS.items()), before)

    def test_canonical_text_joins_filterable_columns(self):
        self.assertEqual(canonical_text(ITEMS["alpha"], COLS), "alpha\nSelector")


class TestSortCycling(unittest.TestCase):
    def test_next_from_unsorted_picks_first_sortable_descending(self):
        s = SearchState(columns=COLS)
        self.assertEqual(s.sort_next(), SortSpec(col=0, desc=True))

    def test_prev_from_unsorted_picks_last_sortable_ascending(self):
        s = SearchState(columns=COLS)
        self.assertEqual(s.sort_prev(), SortSpec(col=3, desc=False))

    def test_cycling_skips_non_sortable_and_wraps(self):
        s = SearchState(columns=COLS)
        seen = [s.sort_next().col for _ in range(5)]
        self.assertEqual(seen, [0, 1, 3, 0, 1])
        self.assertNotIn(2, seen)

    def test_prev_skips_non_sortable(self):
        s = SearchState(columns=COLS, sort=SortSpec(col=3, desc=True))
        self.assertEqual(s.sort_prev(), SortSpec(col=1, desc=True))

    def test_cycling_keeps_direction(self):
        s = SearchState(columns=COLS, sort=SortSpec(col=0, desc=False))
        self.assertFalse(s.sort_next().desc)

    def test_reverse_and_clear(self):
        s = SearchState(columns=COLS)
        self.assertIsNone(s.sort_reverse())
        s.sort_next()
        self.assertEqual(s.sort_reverse(), SortSpec(col=0, desc=False))
        self.assertEqual(s.sort_label(), "Name asc")
        s.sort_clear()
        self.assertIsNone(s.sort)
        self.assertEqual(s.sort_label(), "unsorted")

    def test_kind_without_sortable_columns_stays_unsorted(self):
        s = SearchState(columns=RULE_COLS)
        self.assertEqual(sortable_indexes(RULE_COLS), [])
        self.assertIsNone(s.sort_next())
        self.assertIsNone(s.sort_prev())

    def test_connection_columns_are_all_sortable(self):
        idx = sortable_indexes(CONNECTION_COLS)
        self.assertEqual(idx, list(range(len(CONNECTION_COLS))))

    def test_set_pattern_blank_is_none(self):
        s = SearchState(columns=COLS)
        s.set_pattern("  ")
        self.assertIsNone(s.pattern)
        s.set_pattern(" abc ")
        self.assertEqual(s.pattern, "abc")


if __name__ == "__main__":
    unittest.main()
