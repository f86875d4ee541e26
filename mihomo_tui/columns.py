"""
Column definitions per entity kind.

A column renders one cell (accessor), may take part in filtering
(its rendered text joins the entity's canonical text) and in sorting
(by sort_key, or by the rendered text when there is no sort_key).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .formatting import delay_label, fmt_age, fmt_rfc3339, fmt_ts, format_rule_payload, human_bytes
from .models import Connection, Proxy, ProxyProvider, Rule


@dataclass(frozen=True)
class ColumnDef:
    id: str
    title: str
    accessor: Callable[[Any], str]
    filterable: bool = True
    sortable: bool = True
    sort_key: Optional[Callable[[Any], Any]] = None
    width: Optional[int] = None  # fixed width; None = share the remaining space

    def render(self, entity: Any) -> str:
        return self.accessor(entity)

    def key_of(self, entity: Any) -> Any:
        if self.sort_key is not None:
            return self.sort_key(entity)
        return self.accessor(entity)


def canonical_text(entity: Any, columns: List[ColumnDef]) -> str:
    """Filter text: rendered values of the filterable columns, one per line."""
    return "\n".join(c.accessor(entity) for c in columns if c.filterable)


# Connections
def _conn_age(c: Connection) -> str:
    end = c.closed_ts if c.closed_ts is not None else time.time()
    return fmt_age(end - (c.opened_ts or end))


CONNECTION_COLS: List[ColumnDef] = [
    ColumnDef("alive", "Alive", lambda c: "●" if not c.closed else "○",
              filterable=False, sort_key=lambda c: not c.closed, width=5),
    ColumnDef("host", "Host", lambda c: c.host()),
    ColumnDef("rule", "Rule", lambda c: c.rule, width=14),
    ColumnDef("chains", "Chains", lambda c: c.display_chains()),
    ColumnDef("down_rate", "DownRate", lambda c: human_bytes(c.download_rate, "/s"),
              filterable=False, sort_key=lambda c: c.download_rate, width=12),
    ColumnDef("up_rate", "UpRate", lambda c: human_bytes(c.upload_rate, "/s"),
              filterable=False, sort_key=lambda c: c.upload_rate, width=12),
    ColumnDef("down_total", "DownTotal", lambda c: human_bytes(c.download),
              filterable=False, sort_key=lambda c: c.download, width=10),
    ColumnDef("up_total", "UpTotal", lambda c: human_bytes(c.upload),
              filterable=False, sort_key=lambda c: c.upload, width=10),
    ColumnDef("age", "Age", _conn_age,
              filterable=False, sort_key=lambda c: c.opened_ts, width=7),
    ColumnDef("source_ip", "SourceIP", lambda c: c.source(), width=16),
]


# Proxies
def _group_now(p: Proxy) -> str:
    return p.now or "-"


PROXY_GROUP_COLS: List[ColumnDef] = [
    ColumnDef("name", "Group", lambda p: p.name),
    ColumnDef("type", "Type", lambda p: p.type, width=12),
    ColumnDef("now", "Selected", _group_now),
    ColumnDef("size", "Nodes", lambda p: str(len(p.all)),
              filterable=False, sort_key=lambda p: len(p.all), width=6),
]

# rows of one group's detail table
PROXY_NODE_COLS: List[ColumnDef] = [
    ColumnDef("name", "Name", lambda p: p.name),
    ColumnDef("type", "Type", lambda p: p.type, width=14),
    ColumnDef("delay", "Delay", lambda p: delay_label(p.latest_delay()),
              filterable=False,
              sort_key=lambda p: (p.latest_delay() is None, p.latest_delay() or 0),
              width=9),
    ColumnDef("health", "Health", lambda p: p.health, filterable=False, width=8),
]


# Proxy providers
def _sub_usage(p: ProxyProvider) -> str:
    s = p.subscription
    if s is None or s.total is None:
        return "-"
    used = (s.upload or 0) + (s.download or 0)
    return f"{human_bytes(used)} / {human_bytes(s.total)}"


def _sub_expire(p: ProxyProvider) -> str:
    s = p.subscription
    if s is None or not s.expire:
        return "-"
    return time.strftime("%Y-%m-%d", time.localtime(s.expire))


PROXY_PROVIDER_COLS: List[ColumnDef] = [
    ColumnDef("name", "Name", lambda p: p.name),
    ColumnDef("vehicle", "VehicleType", lambda p: p.vehicle_type, width=12),
    ColumnDef("count", "Proxies", lambda p: str(len(p.proxies)),
              filterable=False, sort_key=lambda p: len(p.proxies), width=8),
    ColumnDef("usage", "Usage", _sub_usage, filterable=False, sortable=False, width=22),
    ColumnDef("expire", "Expire", _sub_expire, filterable=False, width=11),
    ColumnDef("updated", "UpdatedAt", lambda p: fmt_rfc3339(p.updated_at),
              filterable=False, sort_key=lambda p: p.updated_at or "", width=20),
    ColumnDef("health", "Health", lambda p: p.health, filterable=False, sortable=False, width=8),
]


# Rules
def _rule_text(r: Rule) -> str:
    parts = [r.type]
    payload = format_rule_payload(r.type, r.payload)
    if payload:
        parts.append(payload)
    parts.append(r.proxy)
    return ",".join(parts)


def _rule_disabled(r: Rule) -> str:
    if not r.supports_disable:
        return "-"
    return "N" if r.enabled else "Y"


RULE_COLS: List[ColumnDef] = [
    ColumnDef("index", "Index", lambda r: r.index, filterable=False, sortable=False, width=6),
    ColumnDef("rule", "Rule", _rule_text, sortable=False),
    ColumnDef("size", "Size", lambda r: "-" if r.size <= -1 else str(r.size),
              filterable=False, sortable=False, width=8),
    ColumnDef("disabled", "Disabled", _rule_disabled, filterable=False, sortable=False, width=9),
    ColumnDef("hits", "Hits", lambda r: "-" if r.hit_count is None else str(r.hit_count),
              filterable=False, sortable=False, width=8),
    ColumnDef("hit_at", "HitAt", lambda r: fmt_rfc3339(r.hit_at) if r.hit_at else "-",
              filterable=False, sortable=False, width=20),
]


# Rule providers
RULE_PROVIDER_COLS: List[ColumnDef] = [
    ColumnDef("name", "Name", lambda p: p.name),
    ColumnDef("vehicle", "VehicleType", lambda p: p.vehicle_type, width=12),
    ColumnDef("behavior", "Behavior", lambda p: p.behavior, width=10),
    ColumnDef("count", "RuleCount", lambda p: str(p.rule_count),
              filterable=False, sort_key=lambda p: p.rule_count, width=10),
    ColumnDef("updated", "UpdatedAt", lambda p: "updating..." if p.updating else fmt_rfc3339(p.updated_at),
              filterable=False, sort_key=lambda p: p.updated_at or "", width=20),
]


# Logs
LOG_COLS: List[ColumnDef] = [
    ColumnDef("time", "Time", lambda l: fmt_ts(l.ts), filterable=False, sortable=False, width=9),
    ColumnDef("level", "Level", lambda l: l.level, sortable=False, width=8),
    ColumnDef("content", "Content", lambda l: l.payload, sortable=False),
]
