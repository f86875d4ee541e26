"""
Sort/Filter engine.

derive_view() is a pure function: it never mutates the entities, it only
returns the ordered ids that should be displayed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .columns import ColumnDef, canonical_text


@dataclass(frozen=True)
class SortSpec:
    col: int          # index into the kind's column list
    desc: bool = True


def sortable_indexes(columns: List[ColumnDef]) -> List[int]:
    return [i for i, c in enumerate(columns) if c.sortable]


@dataclass
class SearchState:
    """
    Per-list search state: pattern + optional sort spec.

    Important:
      - sort_next()/sort_prev() only ever land on sortable columns and wrap
      - from unsorted, next picks the first sortable column (desc),
        prev picks the last one (asc)
      - a kind without sortable columns stays unsorted
    """
    columns: List[ColumnDef] = field(default_factory=list)
    pattern: Optional[str] = None
    sort: Optional[SortSpec] = None

    def sort_next(self) -> Optional[SortSpec]:
        return self._cycle(1)

    def sort_prev(self) -> Optional[SortSpec]:
        return self._cycle(-1)

    def _cycle(self, delta: int) -> Optional[SortSpec]:
        idx = sortable_indexes(self.columns)
        if not idx:
            self.sort = None
            return None
        if self.sort is None or self.sort.col not in idx:
            if delta >= 0:
                self.sort = SortSpec(col=idx[0], desc=True)
            else:
                self.sort = SortSpec(col=idx[-1], desc=False)
            return self.sort
        pos = idx.index(self.sort.col)
        nxt = idx[(pos + (1 if delta >= 0 else -1)) % len(idx)]
        self.sort = SortSpec(col=nxt, desc=self.sort.desc)
        return self.sort

    def sort_reverse(self) -> Optional[SortSpec]:
        if self.sort is not None:
            self.sort = SortSpec(col=self.sort.col, desc=not self.sort.desc)
        return self.sort

    def sort_clear(self) -> None:
        self.sort = None

    def set_pattern(self, pattern: Optional[str]) -> None:
        p = (pattern or "").strip()
        self.pattern = p or None

    def sort_label(self) -> str:
        if self.sort is None or not (0 <= self.sort.col < len(self.columns)):
            return "unsorted"
        arrow = "desc" if self.sort.desc else "asc"
        return f"{self.columns[self.sort.col].title} {arrow}"


def _items(entities: Any) -> Iterable[Tuple[str, Any]]:
    if isinstance(entities, Mapping):
        return entities.items()
    return ((getattr(e, "key"), e) for e in entities)


def derive_view(
        entities: Any,
        columns: List[ColumnDef],
        sort: Optional[SortSpec] = None,
        pattern: Optional[str] = None,
) -> Tuple[str, ...]:
    """
    Filter then sort entities, returning the ordered ids.

    entities: mapping id -> entity (insertion order is the base order),
              or an iterable of entities exposing `.key`.

    - pattern: case-insensitive substring over canonical_text(); empty/None
      keeps everything
    - sort: stable; ties keep insertion order in both directions; None or a
      non-sortable column keeps insertion order
    """
    rows = list(_items(entities))

    needle = (pattern or "").strip().lower()
    if needle:
        rows = [(k, e) for k, e in rows if needle in canonical_text(e, columns).lower()]

    if sort is not None and 0 <= sort.col < len(columns) and columns[sort.col].sortable:
        col = columns[sort.col]
        # list.sort is stable with reverse=True as well
        rows.sort(key=lambda kv: col.key_of(kv[1]), reverse=sort.desc)

    return tuple(k for k, _ in rows)
