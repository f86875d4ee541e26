"""
Serialized action pipeline.

All state mutation happens inside Dispatcher.step(), one action at a time,
in queue order. Producers (stream pumps, effect completions, key handling)
only enqueue actions.
"""

from __future__ import annotations

import asyncio
import logging
import time
import warnings
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .actions import (
    STREAM_CONNECTIONS,
    STREAM_LOGS,
    STREAM_MEMORY,
    STREAM_TRAFFIC,
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
    ConfigLoaded,
    ConfigPatch,
    ConnectionEvents,
    ConnectionStatsReceived,
    ConnectionTerminate,
    CoreAction,
    CoreActionKind,
    EffectErr,
    EffectOk,
    Error,
    HealthCheck,
    Intent,
    LiveToggle,
    LogReceived,
    MemoryReceived,
    PatternEdit,
    ProviderUpdate,
    ProxiesLoaded,
    ProxyProviderHealthCheck,
    ProxyProvidersLoaded,
    ProxyProviderUpdate,
    ProxySwitch,
    Quit,
    Reconnect,
    Refresh,
    RuleProvidersLoaded,
    RulesLoaded,
    RuleToggle,
    SelectRow,
    SortClear,
    SortCycle,
    SortReverse,
    StreamClosed,
    TabSwitch,
    TrafficReceived,
    VersionLoaded,
)
from .columns import (
    CONNECTION_COLS,
    LOG_COLS,
    PROXY_GROUP_COLS,
    PROXY_NODE_COLS,
    PROXY_PROVIDER_COLS,
    RULE_COLS,
    RULE_PROVIDER_COLS,
)
from .errors import ApiError, ConsistencyWarning, MihomoTuiError
from .liststate import ListState
from .models import (
    EV_CLOSE,
    HEALTH_FAILED,
    HEALTH_OK,
    HEALTH_PENDING,
    ConnectionStats,
    Memory,
    Proxy,
    Traffic,
    Version,
)
from .store import ConnectionRing, LogBuffer

LOG = logging.getLogger("mihomo_tui.dispatcher")

# list kinds (tabs with a table, plus the proxy group detail)
KIND_PROXY_NODES = "proxy_nodes"

# Refresh kind for the periodic hit-count refresh of the rules tab
REFRESH_RULE_STATS = "rule_stats"

ERRORS_MAX = 50
TRAFFIC_HISTORY_MAX = 120

STREAM_LIVE = "live"
STREAM_CONNECTING = "connecting"


@dataclass
class InFlight:
    intent: Intent
    prev: Any = None  # pre-mutation value, restored on failure
    started_ts: float = field(default_factory=time.time)


@dataclass
class AppState:
    """
    Everything the UI renders. Owned by the dispatcher; views only read it.
    """
    tab: str = TAB_OVERVIEW
    ring: ConnectionRing = field(default_factory=ConnectionRing)
    logs: LogBuffer = field(default_factory=LogBuffer)
    lists: Dict[str, ListState] = field(default_factory=dict)

    # every proxy (groups and nodes) by name; groups also live in lists["proxies"]
    proxy_index: Dict[str, Proxy] = field(default_factory=dict)

    version: Optional[Version] = None
    stats: ConnectionStats = field(default_factory=ConnectionStats)
    traffic: Traffic = field(default_factory=Traffic)
    traffic_history: Deque[Traffic] = field(default_factory=lambda: deque(maxlen=TRAFFIC_HISTORY_MAX))
    memory: Memory = field(default_factory=Memory)
    config: Dict[str, Any] = field(default_factory=dict)

    # stream name -> "live" | "connecting" | "closed: <reason>"
    streams: Dict[str, str] = field(default_factory=dict)
    # ids seen in the first frame after the connections stream dropped;
    # None when no resubscription is pending
    conn_resync: Optional[Set[str]] = None

    errors: Deque[Tuple[float, str]] = field(default_factory=lambda: deque(maxlen=ERRORS_MAX))
    status: str = ""
    quit: bool = False

    in_flight: Dict[Tuple[str, str], InFlight] = field(default_factory=dict)
    deferred: Dict[Tuple[str, str], Deque[Intent]] = field(default_factory=dict)

    def list_for_tab(self, tab: str) -> Optional[ListState]:
        return self.lists.get(tab)


def new_state() -> AppState:
    st = AppState()
    st.lists = {
        TAB_CONNECTIONS: ListState(TAB_CONNECTIONS, CONNECTION_COLS, source=st.ring.snapshot, copy_entities=True),
        TAB_PROXIES: ListState(TAB_PROXIES, PROXY_GROUP_COLS),
        KIND_PROXY_NODES: ListState(KIND_PROXY_NODES, PROXY_NODE_COLS),
        TAB_PROXY_PROVIDERS: ListState(TAB_PROXY_PROVIDERS, PROXY_PROVIDER_COLS),
        TAB_RULES: ListState(TAB_RULES, RULE_COLS),
        TAB_RULE_PROVIDERS: ListState(TAB_RULE_PROVIDERS, RULE_PROVIDER_COLS),
        TAB_LOGS: ListState(TAB_LOGS, LOG_COLS, source=st.logs.snapshot),
    }
    st.streams = {s: STREAM_CONNECTING for s in STREAMS}
    return st


class Dispatcher:
    """
    Single serialized reducer loop + effect runner.

    Features:
      - one asyncio.Queue; run() reduces one action at a time
      - type -> handler table, unknown types are reported as errors
      - command intents issue exactly one Effect (an asyncio task); the
        result re-enters the queue as EffectOk/EffectErr
      - optimistic mutations record their pre-mutation value in the
        in-flight table, restored verbatim on failure
      - intents on an entity key that is already in flight are deferred
        and reduced right after the first one's result

    Important:
      - a failing reducer step is logged and turned into an Error action;
        the loop itself never stops on a single action.
    """
    def __init__(
            self,
            api: Any,
            state: Optional[AppState] = None,
            on_quit: Optional[Callable[[], None]] = None,
            stream_starter: Optional[Callable[[str], bool]] = None,
    ):
        self.api = api
        self.state = state or new_state()
        self.queue: "asyncio.Queue[Action]" = asyncio.Queue()
        self._on_quit = on_quit
        self.stream_starter = stream_starter
        self._tasks: Set[asyncio.Task] = set()

        self._handlers: Dict[type, Callable[[Any], None]] = {
            # stream
            ConnectionEvents: self._on_connection_events,
            ConnectionStatsReceived: self._on_connection_stats,
            LogReceived: self._on_log,
            TrafficReceived: self._on_traffic,
            MemoryReceived: self._on_memory,
            StreamClosed: self._on_stream_closed,
            # navigation
            TabSwitch: self._on_tab_switch,
            SelectRow: self._on_select_row,
            SortCycle: self._on_sort_cycle,
            SortReverse: self._on_sort_reverse,
            SortClear: self._on_sort_clear,
            PatternEdit: self._on_pattern_edit,
            LiveToggle: self._on_live_toggle,
            Quit: self._on_quit_action,
            # loaded data
            ProxiesLoaded: self._on_proxies_loaded,
            ProxyProvidersLoaded: self._on_proxy_providers_loaded,
            RulesLoaded: self._on_rules_loaded,
            RuleProvidersLoaded: self._on_rule_providers_loaded,
            ConfigLoaded: self._on_config_loaded,
            VersionLoaded: self._on_version_loaded,
            # results
            EffectOk: self._on_effect_ok,
            EffectErr: self._on_effect_err,
            Error: self._on_error,
        }

        # intent type -> (prepare, effect, on_ok, on_err)
        self._intents: Dict[type, Tuple[Optional[Callable], Callable, Optional[Callable], Optional[Callable]]] = {
            ProxySwitch: (None, self._fx_proxy_switch, self._ok_proxies_reload, None),
            HealthCheck: (self._prep_health_check, self._fx_health_check, self._ok_health_check, self._err_health_check),
            RuleToggle: (self._prep_rule_toggle, self._fx_rule_toggle, self._ok_rule_toggle, self._err_rule_toggle),
            ProviderUpdate: (self._prep_provider_update, self._fx_provider_update, self._ok_provider_update, self._err_provider_update),
            ProxyProviderUpdate: (self._prep_pp_pending, self._fx_pp_update, self._ok_pp_reload, self._err_pp),
            ProxyProviderHealthCheck: (self._prep_pp_pending, self._fx_pp_health_check, self._ok_pp_reload, self._err_pp),
            ConfigPatch: (None, self._fx_config_patch, self._ok_config_patch, None),
            CoreAction: (None, self._fx_core_action, self._ok_core_action, None),
            ConnectionTerminate: (None, self._fx_connection_terminate, self._ok_connection_terminate, None),
            Refresh: (None, self._fx_refresh, self._ok_refresh, None),
            Reconnect: (self._prep_reconnect, self._fx_reconnect, self._ok_reconnect, self._err_reconnect),
        }

    # --- queue ---
    def dispatch(self, action: Action) -> None:
        """Enqueue an action (safe from any task on the loop)."""
        self.queue.put_nowait(action)

    async def run(self) -> None:
        while True:
            action = await self.queue.get()
            try:
                self.step(action)
            finally:
                self.queue.task_done()

    def step(self, action: Action) -> None:
        """Reduce one action. Never raises."""
        try:
            if isinstance(action, Intent):
                self._on_intent(action)
                return
            handler = self._handlers.get(type(action))
            if handler is None:
                raise TypeError(f"unknown action type {type(action).__name__}")
            handler(action)
        except Exception as e:
            LOG.error("reducer failed for %s", type(action).__name__, exc_info=True)
            if not isinstance(action, Error):
                intent = action if isinstance(action, Intent) else getattr(action, "intent", None)
                self.dispatch(Error(f"{type(action).__name__}: {e}", intent))

    async def drain(self) -> None:
        """Reduce until the queue is empty and no effect is running (tests, shutdown)."""
        while True:
            while not self.queue.empty():
                self.step(self.queue.get_nowait())
                self.queue.task_done()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                # let done-callbacks of finished effects run
                await asyncio.sleep(0)
                if self.queue.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_effects(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    # --- intents / effects ---
    def _on_intent(self, intent: Intent) -> None:
        entry = self._intents.get(type(intent))
        if entry is None:
            raise TypeError(f"unknown intent type {type(intent).__name__}")
        prepare = entry[0]

        key = intent.entity_key
        if key is not None and key in self.state.in_flight:
            self.state.deferred.setdefault(key, deque()).append(intent)
            LOG.debug("intent deferred (key %s in flight): %s", key, intent.describe())
            return

        prev = prepare(intent) if prepare is not None else None
        if key is not None:
            self.state.in_flight[key] = InFlight(intent, prev)
        self.state.status = f"{intent.describe()}..."
        LOG.info("intent: %s", intent.describe())
        self._spawn(intent, entry[1])

    def _spawn(self, intent: Intent, effect: Callable) -> None:
        task = asyncio.get_running_loop().create_task(self._run_effect(intent, effect))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_effect(self, intent: Intent, effect: Callable) -> None:
        try:
            value = await effect(intent)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOG.debug("effect failed: %s: %r", intent.describe(), e)
            self.dispatch(EffectErr(intent, e))
            return
        self.dispatch(EffectOk(intent, value))

    def _in_flight_pop(self, intent: Intent) -> Optional[InFlight]:
        key = intent.entity_key
        if key is None:
            return None
        fl = self.state.in_flight.get(key)
        if fl is not None and fl.intent is intent:
            return self.state.in_flight.pop(key)
        return None

    def _release(self, intent: Intent) -> None:
        key = intent.entity_key
        if key is None:
            return
        # a deferred intent that fails to start must not strand the rest
        while key not in self.state.in_flight:
            q = self.state.deferred.get(key)
            if not q:
                self.state.deferred.pop(key, None)
                return
            nxt = q.popleft()
            if not q:
                self.state.deferred.pop(key, None)
            try:
                self._on_intent(nxt)
            except Exception as e:
                LOG.error("deferred intent failed to start: %s", nxt.describe(), exc_info=True)
                self.dispatch(Error(f"{type(nxt).__name__}: {e}", nxt))

    def _on_effect_ok(self, a: EffectOk) -> None:
        fl = self._in_flight_pop(a.intent)
        try:
            on_ok = self._intents[type(a.intent)][2]
            if on_ok is not None:
                on_ok(a.intent, a.value, fl)
            if self.state.status == f"{a.intent.describe()}...":
                self.state.status = f"{a.intent.describe()}: done"
        finally:
            self._release(a.intent)

    def _on_effect_err(self, a: EffectErr) -> None:
        fl = self._in_flight_pop(a.intent)
        try:
            on_err = self._intents[type(a.intent)][3]
            if on_err is not None:
                on_err(a.intent, fl)
        finally:
            if isinstance(a.error, MihomoTuiError):
                msg = str(a.error)
            else:
                msg = f"{a.intent.describe()} failed: {a.error}"
            self.dispatch(Error(msg, a.intent))
            self._release(a.intent)

    # --- stream reducers ---
    def _on_connection_events(self, a: ConnectionEvents) -> None:
        resync = self.state.conn_resync
        for ev in a.events:
            self.state.ring.capture(ev)
            if resync is not None and ev.kind != EV_CLOSE:
                resync.add(ev.conn_id)
        self.state.lists[TAB_CONNECTIONS].notify_changed()
        self.state.streams[STREAM_CONNECTIONS] = STREAM_LIVE

    def _on_connection_stats(self, a: ConnectionStatsReceived) -> None:
        self.state.stats = a.stats
        self.state.streams[STREAM_CONNECTIONS] = STREAM_LIVE
        # stats end a frame: the first frame of a new subscription is the
        # full set of open connections, anything else closed meanwhile
        resync = self.state.conn_resync
        if resync is not None:
            self.state.conn_resync = None
            n = self.state.ring.close_missing(resync)
            if n:
                LOG.info("connections: %d closed while the stream was down", n)
                self.state.lists[TAB_CONNECTIONS].notify_changed()

    def _on_log(self, a: LogReceived) -> None:
        self.state.logs.append(a.line)
        self.state.lists[TAB_LOGS].notify_changed()
        self.state.streams[STREAM_LOGS] = STREAM_LIVE

    def _on_traffic(self, a: TrafficReceived) -> None:
        self.state.traffic = a.traffic
        self.state.traffic_history.append(a.traffic)
        self.state.streams[STREAM_TRAFFIC] = STREAM_LIVE

    def _on_memory(self, a: MemoryReceived) -> None:
        self.state.memory = a.memory
        self.state.streams[STREAM_MEMORY] = STREAM_LIVE

    def _on_stream_closed(self, a: StreamClosed) -> None:
        self.state.streams[a.stream] = f"closed: {a.error}"
        if a.stream == STREAM_CONNECTIONS:
            self.state.conn_resync = set()
        LOG.warning("stream %s closed: %s", a.stream, a.error)

    # --- navigation reducers ---
    def _list(self, kind: str) -> ListState:
        ls = self.state.lists.get(kind)
        if ls is None:
            raise KeyError(f"no list {kind!r}")
        return ls

    def _on_tab_switch(self, a: TabSwitch) -> None:
        if a.tab not in TABS:
            raise ValueError(f"unknown tab {a.tab!r}")
        old = self.state.lists.get(self.state.tab)
        if old is not None:
            old.deactivate()
            if self.state.tab == TAB_PROXIES:
                self.state.lists[KIND_PROXY_NODES].deactivate()
        self.state.tab = a.tab
        new = self.state.lists.get(a.tab)
        if new is not None:
            new.activate()
            if a.tab == TAB_PROXIES:
                self.state.lists[KIND_PROXY_NODES].activate()

    def _on_select_row(self, a: SelectRow) -> None:
        ls = self._list(a.kind)
        ls.select(a.key)
        if a.kind == TAB_PROXIES:
            self._fill_group_nodes()

    def _fill_group_nodes(self) -> None:
        """Node table follows the selected group."""
        nodes = self.state.lists[KIND_PROXY_NODES]
        group = self.state.lists[TAB_PROXIES].selected_entity()
        members: List[Proxy] = []
        if group is not None:
            for name in group.all:
                p = self.state.proxy_index.get(name)
                members.append(p if p is not None else Proxy(name=name, type="?"))
        nodes.replace(members, stream=False)

    def _on_sort_cycle(self, a: SortCycle) -> None:
        self._list(a.kind).cycle_sort(a.delta)

    def _on_sort_reverse(self, a: SortReverse) -> None:
        self._list(a.kind).reverse_sort()

    def _on_sort_clear(self, a: SortClear) -> None:
        self._list(a.kind).clear_sort()

    def _on_pattern_edit(self, a: PatternEdit) -> None:
        self._list(a.kind).set_pattern(a.pattern)

    def _on_live_toggle(self, a: LiveToggle) -> None:
        ls = self._list(a.kind)
        if a.live is None:
            ls.toggle_live()
        else:
            ls.set_live(a.live)
        self.state.status = f"{a.kind}: {'live' if ls.live else 'paused'}"

    def _on_quit_action(self, a: Quit) -> None:
        self.state.quit = True
        if self._on_quit is not None:
            self._on_quit()

    # --- loaded data ---
    def _on_proxies_loaded(self, a: ProxiesLoaded) -> None:
        old = self.state.proxy_index
        index: Dict[str, Proxy] = {}
        for p in a.proxies:
            prev = old.get(p.name)
            # keep an in-progress check visible across reloads
            if prev is not None and prev.health == HEALTH_PENDING:
                p.health = HEALTH_PENDING
            index[p.name] = p
        self.state.proxy_index = index
        groups = self.state.lists[TAB_PROXIES]
        groups.replace([p for p in a.proxies if p.is_group and not p.hidden], stream=False)
        if groups.selected is None and len(groups):
            # an inactive list has a stale view; fall back to load order
            first = groups.view[0] if groups.view and not groups.dirty else next(iter(groups.entities))
            groups.select(first)
        self._fill_group_nodes()

    def _on_proxy_providers_loaded(self, a: ProxyProvidersLoaded) -> None:
        ls = self.state.lists[TAB_PROXY_PROVIDERS]
        for p in a.providers:
            if ("proxy_provider", p.name) in self.state.in_flight:
                p.health = HEALTH_PENDING
        ls.replace(a.providers, stream=False)

    def _on_rules_loaded(self, a: RulesLoaded) -> None:
        ls = self.state.lists[TAB_RULES]
        for r in a.rules:
            fl = self.state.in_flight.get(("rule", r.index))
            if fl is not None:
                # keep the optimistic value until the toggle resolves
                r.enabled = fl.intent.enabled
        ls.replace(a.rules, stream=False)

    def _on_rule_providers_loaded(self, a: RuleProvidersLoaded) -> None:
        for p in a.providers:
            if ("rule_provider", p.name) in self.state.in_flight:
                p.updating = True
        self.state.lists[TAB_RULE_PROVIDERS].replace(a.providers, stream=False)

    def _on_config_loaded(self, a: ConfigLoaded) -> None:
        self.state.config = dict(a.config)

    def _on_version_loaded(self, a: VersionLoaded) -> None:
        self.state.version = a.version

    def _on_error(self, a: Error) -> None:
        self.state.errors.append((time.time(), a.message))
        self.state.status = a.message
        LOG.warning("error: %s", a.message)

    # --- proxies ---
    async def _fx_proxy_switch(self, i: ProxySwitch):
        await self.api.switch_proxy(i.group, i.name)
        return await self.api.list_proxies()

    def _ok_proxies_reload(self, i: Intent, value: Any, fl: Optional[InFlight]) -> None:
        self._on_proxies_loaded(ProxiesLoaded(tuple(value)))

    def _health_targets(self, i: HealthCheck) -> List[str]:
        if i.target:
            return [i.target]
        group = self.state.proxy_index.get(i.group or "")
        if group is None:
            raise KeyError(f"unknown proxy group {i.group!r}")
        return list(group.all)

    def _touch_proxies(self) -> None:
        self.state.lists[TAB_PROXIES].touch()
        self.state.lists[KIND_PROXY_NODES].touch()

    def _prep_health_check(self, i: HealthCheck) -> Dict[str, Tuple[str, Optional[int]]]:
        prev: Dict[str, Tuple[str, Optional[int]]] = {}
        for name in self._health_targets(i):
            p = self.state.proxy_index.get(name)
            if p is None:
                continue
            prev[name] = (p.health, p.last_delay)
            p.health = HEALTH_PENDING
        self._touch_proxies()
        return prev

    async def _fx_health_check(self, i: HealthCheck):
        if i.target:
            delay = await self.api.health_check(i.target)
            return {i.target: delay}
        return await self.api.health_check_group(i.group)

    def _ok_health_check(self, i: HealthCheck, value: Dict[str, int], fl: Optional[InFlight]) -> None:
        names = list(fl.prev) if fl is not None and fl.prev else self._health_targets(i)
        for name in names:
            p = self.state.proxy_index.get(name)
            if p is None:
                continue
            delay = value.get(name)
            if delay is not None and delay > 0:
                p.health = HEALTH_OK
                p.last_delay = int(delay)
            else:
                p.health = HEALTH_FAILED
                p.last_delay = 0
        self._touch_proxies()

    def _err_health_check(self, i: HealthCheck, fl: Optional[InFlight]) -> None:
        for name in (fl.prev if fl is not None and fl.prev else {}):
            p = self.state.proxy_index.get(name)
            if p is not None:
                p.health = HEALTH_FAILED
                p.last_delay = 0
        self._touch_proxies()

    # --- rules ---
    def _prep_rule_toggle(self, i: RuleToggle) -> bool:
        ls = self.state.lists[TAB_RULES]
        rule = ls.get(i.id)
        if rule is None:
            raise KeyError(f"unknown rule {i.id!r}")
        if not rule.supports_disable:
            raise ValueError(f"rule {i.id} cannot be toggled by this core")
        prev = rule.enabled
        rule.enabled = i.enabled
        ls.touch()
        return prev

    async def _fx_rule_toggle(self, i: RuleToggle):
        await self.api.toggle_rule(i.id, i.enabled)
        # confirm with the server's actual state
        return await self.api.list_rules()

    def _ok_rule_toggle(self, i: RuleToggle, value: Any, fl: Optional[InFlight]) -> None:
        ls = self.state.lists[TAB_RULES]
        rule = ls.get(i.id)
        if rule is None:
            return
        server = next((r for r in (value or ()) if r.index == i.id), None)
        if server is None:
            LOG.warning("rule %s missing from server rule list after toggle", i.id)
            return
        rule.enabled = server.enabled
        if server.enabled != i.enabled:
            warnings.warn(
                ConsistencyWarning(
                    f"rule {i.id}: requested enabled={i.enabled}, server reports enabled={server.enabled}"
                ),
                stacklevel=2,
            )
        ls.touch()

    def _err_rule_toggle(self, i: RuleToggle, fl: Optional[InFlight]) -> None:
        if fl is None:
            return
        rule = self.state.lists[TAB_RULES].get(i.id)
        if rule is not None:
            rule.enabled = fl.prev
            self.state.lists[TAB_RULES].touch()

    # --- rule providers ---
    def _prep_provider_update(self, i: ProviderUpdate) -> bool:
        ls = self.state.lists[TAB_RULE_PROVIDERS]
        p = ls.get(i.name)
        if p is None:
            raise KeyError(f"unknown rule provider {i.name!r}")
        prev = p.updating
        p.updating = True
        ls.touch()
        return prev

    async def _fx_provider_update(self, i: ProviderUpdate):
        await self.api.update_provider(i.name)
        return await self.api.list_rule_providers()

    def _ok_provider_update(self, i: ProviderUpdate, value: Any, fl: Optional[InFlight]) -> None:
        self._on_rule_providers_loaded(RuleProvidersLoaded(tuple(value)))

    def _err_provider_update(self, i: ProviderUpdate, fl: Optional[InFlight]) -> None:
        ls = self.state.lists[TAB_RULE_PROVIDERS]
        p = ls.get(i.name)
        if p is not None:
            p.updating = bool(fl.prev) if fl is not None else False
            ls.touch()

    # --- proxy providers ---
    def _prep_pp_pending(self, i) -> Optional[str]:
        ls = self.state.lists[TAB_PROXY_PROVIDERS]
        p = ls.get(i.name)
        if p is None:
            raise KeyError(f"unknown proxy provider {i.name!r}")
        prev = p.health
        p.health = HEALTH_PENDING
        ls.touch()
        return prev

    async def _fx_pp_update(self, i: ProxyProviderUpdate):
        await self.api.update_proxy_provider(i.name)
        return await self.api.list_proxy_providers()

    async def _fx_pp_health_check(self, i: ProxyProviderHealthCheck):
        await self.api.health_check_proxy_provider(i.name)
        return await self.api.list_proxy_providers()

    def _ok_pp_reload(self, i, value: Any, fl: Optional[InFlight]) -> None:
        checked = isinstance(i, ProxyProviderHealthCheck)
        for p in value:
            if p.name == i.name:
                if checked:
                    p.health = HEALTH_OK
                elif fl is not None and fl.prev:
                    p.health = fl.prev
        self._on_proxy_providers_loaded(ProxyProvidersLoaded(tuple(value)))
        if checked:
            # node delays changed on the core side
            self.dispatch(Refresh(TAB_PROXIES))

    def _err_pp(self, i, fl: Optional[InFlight]) -> None:
        ls = self.state.lists[TAB_PROXY_PROVIDERS]
        p = ls.get(i.name)
        if p is not None:
            p.health = HEALTH_FAILED
            ls.touch()

    # --- config / core ---
    async def _fx_config_patch(self, i: ConfigPatch):
        await self.api.patch_config(i.partial)
        return await self.api.get_config()

    def _ok_config_patch(self, i: ConfigPatch, value: Any, fl: Optional[InFlight]) -> None:
        self._on_config_loaded(ConfigLoaded(value))
        for k, v in i.partial.items():
            if value.get(k) != v:
                LOG.info("config key %s not applied as requested (core reports %r)", k, value.get(k))

    async def _fx_core_action(self, i: CoreAction):
        await self.api.trigger_core_action(i.kind)
        if i.kind in (CoreActionKind.RELOAD, CoreActionKind.UPDATE_GEO):
            return await self.api.get_config()
        return None

    def _ok_core_action(self, i: CoreAction, value: Any, fl: Optional[InFlight]) -> None:
        if isinstance(value, dict):
            self._on_config_loaded(ConfigLoaded(value))

    # --- connections ---
    async def _fx_connection_terminate(self, i: ConnectionTerminate):
        await self.api.close_connection(i.id)

    def _ok_connection_terminate(self, i: ConnectionTerminate, value: Any, fl: Optional[InFlight]) -> None:
        self.state.status = f"connection {i.id} terminated"

    # --- refresh ---
    async def _fx_refresh(self, i: Refresh):
        k = i.kind
        if k == TAB_OVERVIEW:
            return await self.api.connect()
        if k == TAB_PROXIES:
            return await self.api.list_proxies()
        if k == TAB_PROXY_PROVIDERS:
            return await self.api.list_proxy_providers()
        if k == TAB_RULES:
            return await self.api.list_rules()
        if k == REFRESH_RULE_STATS:
            return await self.api.rule_stats()
        if k == TAB_RULE_PROVIDERS:
            return await self.api.list_rule_providers()
        if k == TAB_CONFIG:
            return await self.api.get_config()
        raise ValueError(f"nothing to refresh for {k!r}")

    def _ok_refresh(self, i: Refresh, value: Any, fl: Optional[InFlight]) -> None:
        k = i.kind
        if k == TAB_OVERVIEW:
            self._on_version_loaded(VersionLoaded(value))
        elif k == TAB_PROXIES:
            self._on_proxies_loaded(ProxiesLoaded(tuple(value)))
        elif k == TAB_PROXY_PROVIDERS:
            self._on_proxy_providers_loaded(ProxyProvidersLoaded(tuple(value)))
        elif k == TAB_RULES:
            self._on_rules_loaded(RulesLoaded(tuple(value)))
        elif k == REFRESH_RULE_STATS:
            self._apply_rule_stats(value)
        elif k == TAB_RULE_PROVIDERS:
            self._on_rule_providers_loaded(RuleProvidersLoaded(tuple(value)))
        elif k == TAB_CONFIG:
            self._on_config_loaded(ConfigLoaded(value))

    def _apply_rule_stats(self, rules: Any) -> None:
        """Hit counters only; enabled flags follow the server unless a toggle is in flight."""
        ls = self.state.lists[TAB_RULES]
        if not ls.live:
            return
        for srv in rules:
            cur = ls.get(srv.index)
            if cur is None:
                continue
            cur.hit_count = srv.hit_count
            cur.hit_at = srv.hit_at
            if ("rule", srv.index) not in self.state.in_flight:
                cur.enabled = srv.enabled
        ls.touch()

    # --- streams ---
    def _prep_reconnect(self, i: Reconnect) -> None:
        if i.stream not in STREAMS:
            raise ValueError(f"unknown stream {i.stream!r}")
        self.state.streams[i.stream] = STREAM_CONNECTING

    async def _fx_reconnect(self, i: Reconnect):
        if self.stream_starter is None:
            raise ApiError(f"reconnect {i.stream}", "streams are not managed here")
        return self.stream_starter(i.stream)

    def _ok_reconnect(self, i: Reconnect, value: Any, fl: Optional[InFlight]) -> None:
        if value is False:
            self.state.status = f"{i.stream} stream already running"

    def _err_reconnect(self, i: Reconnect, fl: Optional[InFlight]) -> None:
        self.state.streams[i.stream] = "closed: reconnect failed"
