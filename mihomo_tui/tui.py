from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import tempfile
import time
from typing import Any, Callable, Dict, List, Optional

import urwid
import yaml

from .actions import (
    STREAMS,
    TAB_CONFIG,
    TAB_CONNECTIONS,
    TAB_LOGS,
    TAB_OVERVIEW,
    TAB_PROXIES,
    TAB_PROXY_PROVIDERS,
    TAB_RULE_PROVIDERS,
    TAB_RULES,
    TABS,
    Action,
    ConfigPatch,
    ConnectionTerminate,
    CoreAction,
    CoreActionKind,
    HealthCheck,
    LiveToggle,
    PatternEdit,
    ProviderUpdate,
    ProxyProviderHealthCheck,
    ProxyProviderUpdate,
    ProxySwitch,
    Quit,
    Reconnect,
    Refresh,
    RuleToggle,
    SelectRow,
    SortClear,
    SortCycle,
    SortReverse,
    TabSwitch,
)
from .columns import ColumnDef
from .dispatcher import KIND_PROXY_NODES, REFRESH_RULE_STATS, STREAM_LIVE, AppState, Dispatcher
from .formatting import delay_attr, fmt_full, fmt_rfc3339, fmt_ts, human_bytes
from .liststate import ListState
from .logsetup import log_throttled
from .models import HEALTH_FAILED, HEALTH_PENDING, Connection, Proxy

LOG = logging.getLogger("mihomo_tui.tui")

TICK_S = 0.5
RULE_STATS_INTERVAL_S = 5.0

TAB_TITLES: Dict[str, str] = {
    TAB_OVERVIEW: "Overview",
    TAB_CONNECTIONS: "Connections",
    TAB_PROXIES: "Proxies",
    TAB_PROXY_PROVIDERS: "ProxyProviders",
    TAB_RULES: "Rules",
    TAB_RULE_PROVIDERS: "RuleProviders",
    TAB_LOGS: "Logs",
    TAB_CONFIG: "Config",
}

# config tab: key -> (core action, confirmation label)
CORE_ACTION_KEYS: Dict[str, tuple] = {
    "l": (CoreActionKind.RELOAD, "Reload the core configuration"),
    "x": (CoreActionKind.RESTART, "Restart the core"),
    "k": (CoreActionKind.FLUSH_FAKEIP, "Flush the fake-ip cache"),
    "d": (CoreActionKind.FLUSH_DNS, "Flush the DNS cache"),
    "g": (CoreActionKind.UPDATE_GEO, "Update GEO databases"),
}

SPARK_CHARS = " ▁▂▃▄▅▆▇█"


# Pure helpers (rendering inputs)
def sparkline(values: List[int], width: int = 60) -> str:
    vals = list(values)[-width:]
    if not vals:
        return ""
    top = max(vals)
    if top <= 0:
        return SPARK_CHARS[0] * len(vals)
    steps = len(SPARK_CHARS) - 1
    return "".join(SPARK_CHARS[min(steps, int(round(v * steps / top)))] for v in vals)


def overview_lines(state: AppState) -> List[str]:
    lines: List[str] = []
    lines.append(f"Core:        {state.version or 'unknown'}")
    lines.append(f"Traffic:     up {human_bytes(state.traffic.up, '/s')}   down {human_bytes(state.traffic.down, '/s')}")
    lines.append(
        f"Total:       up {human_bytes(state.stats.upload_total)}   "
        f"down {human_bytes(state.stats.download_total)}"
    )
    lines.append(f"Connections: {state.stats.active} active, {len(state.ring)} tracked")
    mem = f"Memory:      {human_bytes(state.memory.inuse)}"
    if state.memory.oslimit:
        mem += f" / {human_bytes(state.memory.oslimit)}"
    lines.append(mem)
    lines.append("")
    lines.append("Download " + sparkline([t.down for t in state.traffic_history]))
    lines.append("Upload   " + sparkline([t.up for t in state.traffic_history]))
    lines.append("")
    lines.append("Streams:")
    for s in STREAMS:
        lines.append(f"  {s:<12} {state.streams.get(s, '-')}")
    if state.in_flight:
        lines.append("")
        lines.append("In flight:")
        for fl in state.in_flight.values():
            lines.append(f"  {fl.intent.describe()} ({time.time() - fl.started_ts:.1f}s)")
    lines.append("")
    lines.append("Recent errors:")
    if not state.errors:
        lines.append("  (none)")
    for ts, msg in reversed(state.errors):
        lines.append(f"  {fmt_ts(ts)}  {msg}")
    return lines


def connection_detail_lines(c: Connection) -> List[str]:
    md = c.metadata or {}
    lines = [
        f"ID:        {c.id}",
        f"Host:      {c.host()}",
        f"Source:    {md.get('sourceIP', '-')}:{md.get('sourcePort', '-')}",
        f"Network:   {md.get('network', '-')} ({md.get('type', '-')})",
        f"Chains:    {c.display_chains() or '-'}",
        f"Rule:      {c.rule}" + (f" ({c.rule_payload})" if c.rule_payload else ""),
        f"Upload:    {human_bytes(c.upload)} ({human_bytes(c.upload_rate, '/s')})",
        f"Download:  {human_bytes(c.download)} ({human_bytes(c.download_rate, '/s')})",
        f"Start:     {fmt_rfc3339(c.start)}",
        f"Seen:      {fmt_full(c.opened_ts)}",
    ]
    if c.closed and c.closed_ts is not None:
        lines.append(f"Closed:    {fmt_full(c.closed_ts)}")
    lines.append("")
    lines.append("Metadata:")
    for k in sorted(md):
        v = md[k]
        if v in ("", None):
            continue
        lines.append(f"  {k}: {v}")
    return lines


def config_diff(old: Dict[str, Any], new: Any) -> Dict[str, Any]:
    """Top-level keys whose value changed; removed keys are not patchable and ignored."""
    if not isinstance(new, dict):
        raise ValueError("edited config must be a YAML mapping")
    return {k: v for k, v in new.items() if old.get(k) != v}


def edit_in_editor(text: str, suffix: str = ".yaml") -> str:
    editor = os.environ.get("EDITOR") or "vi"
    fd, path = tempfile.mkstemp(prefix="mihomo-tui-", suffix=suffix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        subprocess.run(shlex.split(editor) + [path], check=True)
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    finally:
        try:
            os.unlink(path)
        except OSError:
            LOG.debug("cannot remove %s", path, exc_info=True)


# Widgets
class SelectableRow(urwid.WidgetWrap):
    def selectable(self) -> bool:
        return True

    def keypress(self, size, key):
        return key


class TableView(urwid.WidgetWrap):
    """
    Table widget over one ListState.

    Features:
      - info line: live/paused, visible/total rows, sort, pattern
      - header built from the kind's ColumnDef titles (fixed width or shared)
      - rows rebuilt only when ListState.view_version changes
      - focus follows the entity key across rebuilds

    Important:
      - reads ListState.rows() and column accessors only; every change
        goes through dispatcher actions.
    """
    def __init__(
            self,
            ls: ListState,
            title: str,
            cell_attr: Optional[Callable[[ColumnDef, Any], Optional[str]]] = None,
            row_attr: Optional[Callable[[Any], Optional[str]]] = None,
    ):
        self.ls = ls
        self.title = title
        self.cell_attr = cell_attr
        self.row_attr = row_attr
        self.walker = urwid.SimpleFocusListWalker([])
        self.listbox = urwid.ListBox(self.walker)
        self._seen_version = -1

        self._info = urwid.Text("", wrap="clip")
        self._titles = [urwid.Text(c.title, wrap="clip") for c in ls.columns]
        header = urwid.Columns(
            [self._sized(c, t) for c, t in zip(ls.columns, self._titles)],
            dividechars=1,
        )
        head = urwid.Pile([
            urwid.AttrMap(self._info, "info"),
            urwid.AttrMap(header, "header"),
        ])
        frame = urwid.Frame(self.listbox, header=head)
        super().__init__(frame)

    @staticmethod
    def _sized(c: ColumnDef, w: urwid.Widget):
        if c.width:
            return ("fixed", c.width, w)
        return ("weight", 1, w)

    def focused_key(self) -> Optional[str]:
        if not self.walker:
            return None
        w = self.walker[self.walker.focus]
        return getattr(w, "_key", None)

    def focused_entity(self) -> Optional[Any]:
        key = self.focused_key()
        return self.ls.get(key) if key is not None else None

    def _info_text(self) -> str:
        ls = self.ls
        mode = "LIVE" if ls.live else "PAUSED"
        parts = [f" {self.title}", f"[{mode}]", f"{len(ls.view)}/{len(ls)}", f"sort: {ls.search.sort_label()}"]
        if ls.pattern:
            parts.append(f"filter: {ls.pattern}")
        return "  ".join(parts)

    def _update_titles(self) -> None:
        sort = self.ls.sort
        for i, (c, t) in enumerate(zip(self.ls.columns, self._titles)):
            mark = ""
            if sort is not None and sort.col == i:
                mark = " ▼" if sort.desc else " ▲"
            t.set_text(c.title + mark)

    def _row(self, ent: Any) -> urwid.Widget:
        cells = []
        for c in self.ls.columns:
            text = c.render(ent)
            attr = self.cell_attr(c, ent) if self.cell_attr else None
            cells.append(self._sized(c, urwid.Text((attr, text) if attr else text, wrap="clip")))
        base = (self.row_attr(ent) if self.row_attr else None) or "bg"
        w = urwid.AttrMap(SelectableRow(urwid.Columns(cells, dividechars=1)), base, focus_map="focus")
        w._key = ent.key
        return w

    def refresh(self, force: bool = False) -> bool:
        """Rebuild rows if the view changed. Returns True on rebuild."""
        self._info.set_text(self._info_text())
        if not force and self.ls.view_version == self._seen_version:
            return False
        self._seen_version = self.ls.view_version
        self._update_titles()

        keep = self.focused_key() or self.ls.selected
        rows = [self._row(e) for e in self.ls.rows()]
        self.walker[:] = rows
        if rows:
            idx = 0
            if keep is not None:
                for i, w in enumerate(rows):
                    if w._key == keep:
                        idx = i
                        break
            self.walker.set_focus(idx)
        return True


class InputDialog(urwid.WidgetWrap):
    """
    Modal one-line input dialog (search pattern).

    Important:
      - handles Enter/Esc in its own keypress() so MainLoop.unhandled_input
        stays untouched and global hotkeys keep working after it closes.
    """
    def __init__(self, title: str, label: str, initial: str, on_apply, on_cancel, hint: str = ""):
        self._on_apply = on_apply
        self._on_cancel = on_cancel

        self.edit = urwid.Edit(edit_text=initial or "")
        line = urwid.Columns([
            ("fixed", len(label) + 1, urwid.Text(label)),
            urwid.AttrMap(self.edit, "popup_details"),
        ], dividechars=1)

        pile = urwid.Pile([
            line,
            urwid.Divider(),
            urwid.Text(hint or "Enter=apply  Esc=cancel"),
        ])
        box = urwid.LineBox(urwid.Padding(pile, left=1, right=1), title=title)
        super().__init__(urwid.AttrMap(box, "popup"))

    def keypress(self, size, key):
        if key == "enter":
            self._on_apply(self.edit.edit_text)
            return None
        if key == "esc":
            self._on_cancel()
            return None
        return super().keypress(size, key)


class ConfirmDialog(urwid.WidgetWrap):
    """Yes/no confirmation: y/Enter confirms, n/Esc cancels."""
    def __init__(self, question: str, on_yes, on_no):
        self._on_yes = on_yes
        self._on_no = on_no
        pile = urwid.Pile([
            urwid.Text(question),
            urwid.Divider(),
            urwid.Text("y/Enter=yes  n/Esc=no"),
        ])
        box = urwid.LineBox(urwid.Padding(pile, left=1, right=1), title="Confirm")
        super().__init__(urwid.AttrMap(box, "popup"))

    def selectable(self) -> bool:
        return True

    def keypress(self, size, key):
        if key in ("y", "Y", "enter"):
            self._on_yes()
            return None
        if key in ("n", "N", "esc"):
            self._on_no()
            return None
        return None


class TuiApp:
    """
    Main TUI controller.

    Tabs: Overview, Connections, Proxies (groups + member nodes),
    ProxyProviders, Rules, RuleProviders, Logs, Config.

    Manages:
      - global hotkeys (q, tab, 1-8, /, s/S/o/c, p, F5, R, ?)
      - per-tab command keys, translated into intents
      - overlays: help, connection details, search dialog, confirmations
      - the render tick (TICK_S), which also asks for rule hit counts
        while the Rules tab is shown

    Important:
      - never mutates AppState; every key becomes an action on the
        dispatcher queue and the tick renders whatever the state holds.
      - overlays must not break MainLoop.unhandled_input.
    """
    palette = [
        ("bg", "light gray", "dark blue"),
        ("row_error", "light red", "dark blue"),
        ("row_warn", "yellow", "dark blue"),
        ("row_closed", "dark gray", "dark blue"),
        ("header", "black", "light gray"),
        ("info", "yellow", "dark blue"),
        ("focus", "black", "light cyan"),
        ("footer", "black", "light gray"),
        ("tab", "light gray", "dark blue"),
        ("tab_active", "black", "yellow"),
        ("popup", "light gray", "dark blue"),
        ("popup_title", "black", "light gray"),
        ("popup_details", "black", "light gray"),
        ("delay_fast", "light green", "dark blue"),
        ("delay_medium", "yellow", "dark blue"),
        ("delay_slow", "light red", "dark blue"),
        ("delay_none", "dark gray", "dark blue"),
        ("now", "white,bold", "dark blue"),
    ]

    def __init__(self, dispatcher: Dispatcher, loop: asyncio.AbstractEventLoop):
        self.d = dispatcher
        self.state = dispatcher.state
        self.aio_loop = loop

        lists = self.state.lists
        self.tables: Dict[str, TableView] = {
            TAB_CONNECTIONS: TableView(lists[TAB_CONNECTIONS], "Connections", row_attr=self._conn_row_attr),
            TAB_PROXIES: TableView(lists[TAB_PROXIES], "Groups"),
            KIND_PROXY_NODES: TableView(lists[KIND_PROXY_NODES], "Nodes",
                                        cell_attr=self._node_cell_attr, row_attr=self._node_row_attr),
            TAB_PROXY_PROVIDERS: TableView(lists[TAB_PROXY_PROVIDERS], "Proxy providers",
                                           row_attr=self._health_row_attr),
            TAB_RULES: TableView(lists[TAB_RULES], "Rules", row_attr=self._rule_row_attr),
            TAB_RULE_PROVIDERS: TableView(lists[TAB_RULE_PROVIDERS], "Rule providers"),
            TAB_LOGS: TableView(lists[TAB_LOGS], "Logs", row_attr=self._log_row_attr),
        }

        self.proxies_cols = urwid.Columns([
            ("weight", 2, self.tables[TAB_PROXIES]),
            ("weight", 3, self.tables[KIND_PROXY_NODES]),
        ], dividechars=1)

        self.overview_text = urwid.Text("")
        self.config_text = urwid.Text("")
        config_hint = urwid.AttrMap(urwid.Text(
            " e edit (PATCH changed keys) | l reload | x restart | k flush fake-ip | "
            "d flush DNS | g update GEO | F5 refresh"
        ), "info")

        self.bodies: Dict[str, urwid.Widget] = {
            TAB_OVERVIEW: urwid.ListBox(urwid.SimpleFocusListWalker([self.overview_text])),
            TAB_CONNECTIONS: self.tables[TAB_CONNECTIONS],
            TAB_PROXIES: self.proxies_cols,
            TAB_PROXY_PROVIDERS: self.tables[TAB_PROXY_PROVIDERS],
            TAB_RULES: self.tables[TAB_RULES],
            TAB_RULE_PROVIDERS: self.tables[TAB_RULE_PROVIDERS],
            TAB_LOGS: self.tables[TAB_LOGS],
            TAB_CONFIG: urwid.Frame(
                urwid.ListBox(urwid.SimpleFocusListWalker([self.config_text])),
                header=config_hint,
            ),
        }

        self.tabs_bar = urwid.Text("", wrap="clip")
        self.hotkeys = urwid.Text("", align="left", wrap="clip")
        self.status = urwid.Text("", align="left", wrap="clip")
        self.footer_w = urwid.Pile([
            urwid.AttrMap(self.hotkeys, "footer"),
            urwid.AttrMap(self.status, "footer"),
        ])

        self._shown_tab: Optional[str] = None
        self._config_seen: Optional[Dict[str, Any]] = None
        self._last_rule_stats = 0.0
        self._overlay: Optional[urwid.Overlay] = None
        self._overlay_kind: Optional[str] = None

        self.top = urwid.Frame(
            urwid.AttrMap(self.bodies[TAB_OVERVIEW], "bg"),
            header=urwid.AttrMap(self.tabs_bar, "tab"),
            footer=self.footer_w,
        )

        self.loop = urwid.MainLoop(
            self.top,
            palette=self.palette,
            event_loop=urwid.AsyncioEventLoop(loop=self.aio_loop),
            unhandled_input=self.on_key,
        )

    # ---- row styling ----
    @staticmethod
    def _conn_row_attr(c: Connection) -> Optional[str]:
        return "row_closed" if c.closed else None

    @staticmethod
    def _health_row_attr(p: Any) -> Optional[str]:
        if p.health == HEALTH_FAILED:
            return "row_error"
        if p.health == HEALTH_PENDING:
            return "row_warn"
        return None

    def _node_row_attr(self, p: Proxy) -> Optional[str]:
        return self._health_row_attr(p)

    def _node_cell_attr(self, c: ColumnDef, p: Proxy) -> Optional[str]:
        if c.id == "delay":
            return delay_attr(p.latest_delay())
        if c.id == "name":
            group = self.state.lists[TAB_PROXIES].selected_entity()
            if group is not None and group.now == p.name:
                return "now"
        return None

    @staticmethod
    def _rule_row_attr(r: Any) -> Optional[str]:
        return "row_closed" if not r.enabled else None

    @staticmethod
    def _log_row_attr(line: Any) -> Optional[str]:
        lvl = (line.level or "").lower()
        if lvl == "error":
            return "row_error"
        if lvl in ("warning", "warn"):
            return "row_warn"
        return None

    # ---- dispatch helpers ----
    def set_status(self, msg: str) -> None:
        self.status.set_text(msg)

    def dispatch(self, action: Action) -> None:
        self.d.dispatch(action)
        # render right after the dispatcher had a chance to reduce it
        self.loop.set_alarm_in(0.05, lambda loop, data: self.refresh())

    def current_kind(self) -> Optional[str]:
        """List kind the list keys apply to on the current tab."""
        tab = self.state.tab
        if tab == TAB_PROXIES:
            return KIND_PROXY_NODES if self.proxies_cols.focus_position == 1 else TAB_PROXIES
        return tab if tab in self.tables else None

    def current_table(self) -> Optional[TableView]:
        kind = self.current_kind()
        return self.tables.get(kind) if kind else None

    # ---- rendering ----
    def _tabs_markup(self) -> list:
        out: list = []
        for i, tab in enumerate(TABS, start=1):
            attr = "tab_active" if tab == self.state.tab else "tab"
            out.append((attr, f" {i} {TAB_TITLES[tab]} "))
            out.append(" ")
        if self.state.version is not None:
            out.append(("tab", f"  {self.state.version}"))
        return out

    def _hotkeys_hint_text(self) -> str:
        tab = self.state.tab
        common = "q quit | Tab/1-8 tabs | ? help"
        lists = " | / search | s/S sort | o reverse | c unsort | p pause"
        if tab == TAB_CONNECTIONS:
            return common + lists + " | Enter details | x terminate"
        if tab == TAB_PROXIES:
            return common + lists + " | ←/→ groups/nodes | Enter select node | t test node | T test group"
        if tab == TAB_PROXY_PROVIDERS:
            return common + lists + " | u update | t health check"
        if tab == TAB_RULES:
            return common + lists + " | t enable/disable rule"
        if tab == TAB_RULE_PROVIDERS:
            return common + lists + " | u update | U update all"
        if tab == TAB_LOGS:
            return common + lists
        if tab == TAB_CONFIG:
            return common + " | e edit | l/x/k/d/g core actions"
        return common + " | R reconnect streams | F5 refresh"

    def _show_tab(self, tab: str) -> None:
        self._shown_tab = tab
        self.top.body = urwid.AttrMap(self.bodies[tab], "bg")
        self.hotkeys.set_text(self._hotkeys_hint_text())

    def _sync_selection(self, kind: str) -> None:
        table = self.tables[kind]
        key = table.focused_key()
        if key != table.ls.selected:
            self.d.dispatch(SelectRow(kind, key))

    def refresh(self) -> None:
        st = self.state
        if st.tab != self._shown_tab:
            self._show_tab(st.tab)
        self.tabs_bar.set_text(self._tabs_markup())
        self.status.set_text(st.status)

        tab = st.tab
        if tab == TAB_OVERVIEW:
            self.overview_text.set_text("\n".join(overview_lines(st)))
        elif tab == TAB_CONFIG:
            if st.config is not self._config_seen:
                self._config_seen = st.config
                body = yaml.safe_dump(st.config, sort_keys=True, allow_unicode=True) if st.config else "(not loaded)"
                self.config_text.set_text(body)
        elif tab == TAB_PROXIES:
            self.tables[TAB_PROXIES].refresh()
            self.tables[KIND_PROXY_NODES].refresh()
            self._sync_selection(TAB_PROXIES)
            self._sync_selection(KIND_PROXY_NODES)
        elif tab in self.tables:
            self.tables[tab].refresh()
            self._sync_selection(tab)

    def _maybe_refresh_rule_stats(self) -> None:
        if self.state.tab != TAB_RULES:
            return
        now = time.monotonic()
        if now - self._last_rule_stats < RULE_STATS_INTERVAL_S:
            return
        self._last_rule_stats = now
        if ("refresh", REFRESH_RULE_STATS) not in self.state.in_flight:
            self.d.dispatch(Refresh(REFRESH_RULE_STATS))

    async def _tick(self):
        try:
            self.refresh()
            self._maybe_refresh_rule_stats()
        except Exception:
            log_throttled(
                logging.DEBUG,
                key="tui_tick_refresh_failed",
                msg="TUI refresh tick failed",
                interval_s=5.0,
                exc_info=True,
            )
        self.loop.set_alarm_in(TICK_S, lambda loop, data: self.aio_loop.create_task(self._tick()))

    # ---- keys ----
    def switch_tab(self, tab: str) -> None:
        self.hide_overlay()
        if tab != self.state.tab:
            self.dispatch(TabSwitch(tab))

    def _tab_offset(self, delta: int) -> None:
        i = TABS.index(self.state.tab)
        self.switch_tab(TABS[(i + delta) % len(TABS)])

    def on_key(self, key):
        if key in ("q", "Q") and self._overlay_kind not in ("search",):
            self.d.dispatch(Quit())
            raise urwid.ExitMainLoop()

        if self._overlay is not None:
            if key in ("esc", "enter") and self._overlay_kind in ("help", "details"):
                self.hide_overlay()
            return

        if key == "tab":
            self._tab_offset(1)
            return
        if key == "shift tab":
            self._tab_offset(-1)
            return
        if isinstance(key, str) and len(key) == 1 and key.isdigit() and 1 <= int(key) <= len(TABS):
            self.switch_tab(TABS[int(key) - 1])
            return
        if key in ("?", "h", "H", "f1"):
            self.show_help()
            return
        if key == "f5":
            self.refresh_current_tab()
            return
        if key == "R":
            self.reconnect_streams()
            return

        kind = self.current_kind()
        if kind is not None and self._on_list_key(kind, key):
            return

        handler = {
            TAB_CONNECTIONS: self._on_connections_key,
            TAB_PROXIES: self._on_proxies_key,
            TAB_PROXY_PROVIDERS: self._on_proxy_providers_key,
            TAB_RULES: self._on_rules_key,
            TAB_RULE_PROVIDERS: self._on_rule_providers_key,
            TAB_CONFIG: self._on_config_key,
        }.get(self.state.tab)
        if handler is not None:
            handler(key)

    def _on_list_key(self, kind: str, key) -> bool:
        if key in ("/", "f", "F"):
            self.show_search_dialog(kind)
        elif key == "s":
            self.dispatch(SortCycle(kind, 1))
        elif key == "S":
            self.dispatch(SortCycle(kind, -1))
        elif key == "o":
            self.dispatch(SortReverse(kind))
        elif key == "c":
            self.dispatch(SortClear(kind))
        elif key in ("p", "P", " "):
            self.dispatch(LiveToggle(kind))
        else:
            return False
        return True

    def _on_connections_key(self, key) -> None:
        c = self.tables[TAB_CONNECTIONS].focused_entity()
        if c is None:
            return
        if key == "enter":
            self._overlay_message(f"Connection {c.host()}", urwid.ListBox(
                urwid.SimpleFocusListWalker([urwid.Text(line) for line in connection_detail_lines(c)])
            ), kind="details")
        elif key == "x":
            if c.closed:
                self.set_status("Connection already closed.")
                return
            self.confirm(f"Terminate connection {c.host()} ({c.id})?",
                         lambda: self.dispatch(ConnectionTerminate(c.id)))

    def _on_proxies_key(self, key) -> None:
        group = self.state.lists[TAB_PROXIES].selected_entity()
        on_nodes = self.proxies_cols.focus_position == 1
        if key == "enter":
            if not on_nodes:
                self.proxies_cols.focus_position = 1
                return
            node = self.tables[KIND_PROXY_NODES].focused_entity()
            if group is None or node is None:
                return
            if group.type.lower() != "selector":
                self.set_status(f"{group.name} is a {group.type} group; only Selector groups can be switched.")
                return
            self.dispatch(ProxySwitch(group.name, node.name))
        elif key == "t":
            target = self.tables[KIND_PROXY_NODES].focused_entity() if on_nodes else group
            if target is not None:
                self.dispatch(HealthCheck(target=target.name))
        elif key == "T":
            if group is not None:
                self.dispatch(HealthCheck(group=group.name))

    def _on_proxy_providers_key(self, key) -> None:
        p = self.tables[TAB_PROXY_PROVIDERS].focused_entity()
        if p is None:
            return
        if key == "u":
            self.dispatch(ProxyProviderUpdate(p.name))
        elif key == "t":
            self.dispatch(ProxyProviderHealthCheck(p.name))

    def _on_rules_key(self, key) -> None:
        r = self.tables[TAB_RULES].focused_entity()
        if r is None or key != "t":
            return
        if not r.supports_disable:
            self.set_status("This core does not support disabling rules.")
            return
        self.dispatch(RuleToggle(r.index, not r.enabled))

    def _on_rule_providers_key(self, key) -> None:
        table = self.tables[TAB_RULE_PROVIDERS]
        if key == "u":
            p = table.focused_entity()
            if p is not None:
                self.dispatch(ProviderUpdate(p.name))
        elif key == "U":
            for p in table.ls.rows():
                self.dispatch(ProviderUpdate(p.name))

    def _on_config_key(self, key) -> None:
        if key == "e":
            self.edit_config()
            return
        entry = CORE_ACTION_KEYS.get(key)
        if entry is not None:
            kind, label = entry
            self.confirm(f"{label}?", lambda: self.dispatch(CoreAction(kind)))

    # ---- commands ----
    def refresh_current_tab(self) -> None:
        tab = self.state.tab
        if tab in (TAB_CONNECTIONS, TAB_LOGS):
            self.set_status(f"{TAB_TITLES[tab]} are streamed; press p to resume a paused list.")
            return
        self.dispatch(Refresh(tab))

    def reconnect_streams(self) -> None:
        closed = [s for s in STREAMS if self.state.streams.get(s, "").startswith("closed")]
        if not closed:
            self.set_status("All streams are " + STREAM_LIVE + " or connecting.")
            return
        for s in closed:
            self.dispatch(Reconnect(s))

    def edit_config(self) -> None:
        old = dict(self.state.config)
        if not old:
            self.set_status("Config not loaded yet (F5 to refresh).")
            return
        text = yaml.safe_dump(old, sort_keys=True, allow_unicode=True)
        self.loop.screen.stop()
        try:
            edited = edit_in_editor(text)
        except (OSError, subprocess.CalledProcessError) as e:
            self.set_status(f"Editor failed: {e}")
            return
        finally:
            self.loop.screen.start()
        try:
            partial = config_diff(old, yaml.safe_load(edited))
        except (yaml.YAMLError, ValueError) as e:
            self.set_status(f"Config not applied: {e}")
            return
        if not partial:
            self.set_status("No config changes.")
            return
        self.dispatch(ConfigPatch(partial))

    # ---- overlays ----
    def show_help(self):
        txt = urwid.Text(
            "mihomo-tui\n\n"
            "Tabs:\n"
            "  Tab/Shift-Tab  next/previous tab\n"
            "  1..8           Overview, Connections, Proxies, ProxyProviders,\n"
            "                 Rules, RuleProviders, Logs, Config\n\n"
            "Global:\n"
            "  Q              quit\n"
            "  ? / H / F1     help\n"
            "  F5             reload the current tab from the core\n"
            "  R              reconnect closed streams\n\n"
            "Lists:\n"
            "  / or F         search (case-insensitive substring, empty clears)\n"
            "  s / S          sort by next / previous column\n"
            "  o              reverse sort direction\n"
            "  c              back to unsorted\n"
            "  p / Space      pause / resume live updates\n\n"
            "Connections:\n"
            "  Enter          details\n"
            "  x              terminate (asks first)\n\n"
            "Proxies:\n"
            "  Left/Right     groups / member nodes\n"
            "  Enter          on a node of a Selector group: switch to it\n"
            "  t / T          latency test node / whole group\n\n"
            "ProxyProviders:  u update, t health check\n"
            "Rules:           t enable/disable the focused rule\n"
            "RuleProviders:   u update, U update all\n\n"
            "Config:\n"
            "  e              edit in $EDITOR, changed keys are PATCHed\n"
            "  l / x          reload config / restart core\n"
            "  k / d / g      flush fake-ip / flush DNS / update GEO\n"
        )
        self._overlay_message("Help", urwid.Filler(txt, valign="top"), kind="help")

    def show_search_dialog(self, kind: str):
        ls = self.state.lists[kind]

        def _apply(text: str):
            self.hide_overlay()
            self.dispatch(PatternEdit(kind, text))

        def _cancel():
            self.hide_overlay()

        dlg = InputDialog("Search", "Pattern:", ls.pattern or "", _apply, _cancel,
                          hint="Enter=apply  Esc=cancel  Empty=clear")
        self._show_dialog(dlg, "search")

    def confirm(self, question: str, on_yes: Callable[[], None]) -> None:
        def _yes():
            self.hide_overlay()
            on_yes()

        self._show_dialog(ConfirmDialog(question, _yes, self.hide_overlay), "confirm")

    def _show_dialog(self, dlg: urwid.Widget, kind: str) -> None:
        self._overlay_kind = kind
        self._overlay = urwid.Overlay(
            dlg,
            self.top,
            align="center",
            width=("relative", 70),
            valign="middle",
            height=7,
            min_width=40,
            min_height=7,
        )
        self.loop.widget = self._overlay

    def hide_overlay(self):
        if self._overlay is not None:
            self.loop.widget = self.top
            self._overlay = None
        self._overlay_kind = None
        if self.loop.unhandled_input is not self.on_key:
            self.loop.unhandled_input = self.on_key

    def _overlay_message(self, title: str, body: urwid.Widget, kind: str = "details"):
        header = urwid.AttrMap(urwid.Text(f" {title} "), "popup_title")
        frame = urwid.Frame(body=body, header=header)
        box = urwid.LineBox(frame)
        overlay = urwid.Overlay(
            urwid.AttrMap(box, "popup"),
            self.top,
            align="center", width=("relative", 92),
            valign="middle", height=("relative", 88)
        )
        self.loop.widget = overlay
        self._overlay = overlay
        self._overlay_kind = kind
        self.loop.unhandled_input = self.on_key

    # ---- lifecycle ----
    def run(self, on_start: Optional[Callable[[], None]] = None):
        self._tick_task = self.aio_loop.create_task(self._tick())
        self.hotkeys.set_text(self._hotkeys_hint_text())
        if on_start is not None:
            on_start()
        try:
            self.loop.run()
        finally:
            self._tick_task.cancel()
