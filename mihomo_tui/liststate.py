from __future__ import annotations

import copy
import enum
import logging
from collections import OrderedDict
from typing import Any, Callable, Iterable, List, Optional, Tuple

from .columns import ColumnDef
from .view import SearchState, SortSpec, derive_view

LOG = logging.getLogger("mihomo_tui.liststate")


class LiveMode(enum.Enum):
    LIVE = "live"
    PAUSED = "paused"


class ListState:
    """
    Authoritative id -> entity mapping for one entity kind plus its derived view.

    Features:
      - search: pattern + sort spec, kept per list (survives tab switches)
      - view: cached ordered ids from derive_view()
      - live/paused: paused lists ignore stream-driven replace()/notify_changed()
      - source: optional backing-store reader (ring buffer, log buffer);
        notify_changed() pulls from it

    Recompute policy:
      - entities changed: recompute only if the tab is active, otherwise
        mark dirty and recompute on activate()
      - pattern/sort changed by the user: recompute immediately
      - paused: stream changes never recompute
      - paused -> live: re-sync from source and recompute once

    Important:
      - with copy_entities=True the list holds shallow copies taken at sync
        time, so a paused view is pinned in content as well as order even
        while the backing store keeps mutating its own records.
      - only the dispatcher calls the mutating methods.
    """
    def __init__(
            self,
            kind: str,
            columns: List[ColumnDef],
            source: Optional[Callable[[], Iterable[Any]]] = None,
            copy_entities: bool = False,
    ):
        self.kind = kind
        self.columns = columns
        self.search = SearchState(columns=columns)
        self.entities: "OrderedDict[str, Any]" = OrderedDict()
        self.view: Tuple[str, ...] = ()
        self.dirty = False
        self.mode = LiveMode.LIVE
        self.active = False
        self.selected: Optional[str] = None
        # bumped on every recompute; renderers compare it to skip rebuilds
        self.view_version = 0

        self._source = source
        self._copy = copy_entities

    # --- read side ---
    @property
    def live(self) -> bool:
        return self.mode is LiveMode.LIVE

    @property
    def pattern(self) -> Optional[str]:
        return self.search.pattern

    @property
    def sort(self) -> Optional[SortSpec]:
        return self.search.sort

    def __len__(self) -> int:
        return len(self.entities)

    def get(self, key: str) -> Optional[Any]:
        return self.entities.get(key)

    def rows(self) -> List[Any]:
        """Entities in view order."""
        return [self.entities[k] for k in self.view if k in self.entities]

    def selected_entity(self) -> Optional[Any]:
        if self.selected is None:
            return None
        return self.entities.get(self.selected)

    # --- entity changes ---
    def replace(self, items: Iterable[Any], stream: bool = True) -> bool:
        """
        Replace all entities. Returns True if the view was recomputed.

        stream=True marks a change coming from a stream/refresh; it is
        ignored while paused. User-initiated reloads pass stream=False.
        """
        if stream and not self.live:
            return False
        fresh: "OrderedDict[str, Any]" = OrderedDict()
        for it in items:
            fresh[it.key] = copy.copy(it) if self._copy else it
        self.entities = fresh
        return self._entities_changed()

    def notify_changed(self) -> bool:
        """Backing store changed (stream event)."""
        if not self.live:
            return False
        if not self.active:
            # defer the copy as well; activate() syncs
            self.dirty = True
            return False
        return self._sync_and_recompute()

    def upsert(self, entity: Any) -> bool:
        """Insert or replace one entity in place (position kept)."""
        self.entities[entity.key] = entity
        return self._entities_changed()

    def touch(self) -> bool:
        """An entity owned by this list was mutated in place."""
        return self._entities_changed()

    def _entities_changed(self) -> bool:
        if self.active:
            self.recompute()
            return True
        self.dirty = True
        return False

    def _sync_and_recompute(self) -> bool:
        if self._source is not None:
            fresh: "OrderedDict[str, Any]" = OrderedDict()
            for it in self._source():
                fresh[it.key] = copy.copy(it) if self._copy else it
            self.entities = fresh
        self.recompute()
        return True

    # --- navigation ---
    def activate(self) -> None:
        self.active = True
        if self.dirty and self.live:
            if self._source is not None:
                self._sync_and_recompute()
            else:
                self.recompute()

    def deactivate(self) -> None:
        self.active = False

    def set_live(self, live: bool) -> None:
        if live == self.live:
            return
        self.mode = LiveMode.LIVE if live else LiveMode.PAUSED
        if live:
            self._sync_and_recompute()
        LOG.debug("ListState[%s]: mode=%s", self.kind, self.mode.value)

    def toggle_live(self) -> bool:
        self.set_live(not self.live)
        return self.live

    def set_pattern(self, pattern: Optional[str]) -> None:
        self.search.set_pattern(pattern)
        self.recompute()

    def cycle_sort(self, delta: int) -> Optional[SortSpec]:
        spec = self.search.sort_next() if delta >= 0 else self.search.sort_prev()
        self.recompute()
        return spec

    def reverse_sort(self) -> Optional[SortSpec]:
        spec = self.search.sort_reverse()
        self.recompute()
        return spec

    def clear_sort(self) -> None:
        self.search.sort_clear()
        self.recompute()

    def select(self, key: Optional[str]) -> None:
        self.selected = key if key in self.entities else None

    def recompute(self) -> None:
        self.view = derive_view(self.entities, self.columns, self.search.sort, self.search.pattern)
        self.dirty = False
        self.view_version += 1
        if self.selected is not None and self.selected not in self.entities:
            self.selected = None
