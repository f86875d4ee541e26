"""
Entity models for the mihomo control API.

Parsers take decoded JSON (dicts/lists) and return dataclasses; they raise
KeyError/TypeError/ValueError on malformed payloads and leave wrapping the
error to the API client.

Every entity exposes `key`, the id used by ListState.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Proxy / provider health-check status
HEALTH_UNKNOWN = "unknown"
HEALTH_PENDING = "pending"
HEALTH_OK = "ok"
HEALTH_FAILED = "failed"

# Connection event kinds
EV_ADD = "add"
EV_UPDATE = "update"
EV_CLOSE = "close"


# Connections
@dataclass
class Connection:
    """
    One proxied connection as reported by the /connections stream.

    Contains:
      - metadata: raw dict from the core (host, destinationIP, destinationPort,
        sourceIP, sourcePort, network, type, process, ...)
      - chains: hop order as reported by the core (final node first)
      - upload/download: cumulative byte counters, non-decreasing while open
      - upload_rate/download_rate: bytes/s derived from the previous update

    Important:
      - opened_ts/closed_ts/last_update_ts are local wall-clock stamps,
        `start` is the core's own RFC3339 string.
    """
    id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    upload: int = 0
    download: int = 0
    start: str = ""
    chains: List[str] = field(default_factory=list)
    rule: str = ""
    rule_payload: str = ""

    upload_rate: int = 0
    download_rate: int = 0

    opened_ts: float = 0.0
    closed: bool = False
    closed_ts: Optional[float] = None
    last_update_ts: float = 0.0

    @property
    def key(self) -> str:
        return self.id

    def host(self) -> str:
        """host:port, falling back to destinationIP:port ([v6]:port)."""
        md = self.metadata or {}
        port = md.get("destinationPort", "")
        port = "" if port is None else str(port)
        h = md.get("host") or ""
        if h:
            return f"{h}:{port}"
        dip = md.get("destinationIP") or ""
        if ":" in dip:
            return f"[{dip}]:{port}"
        return f"{dip}:{port}"

    def source(self) -> str:
        md = self.metadata or {}
        return str(md.get("sourceIP") or "-")

    def display_chains(self) -> str:
        # the core reports node first; show first group > ... > node
        return " > ".join(reversed(self.chains))


@dataclass
class ConnectionEvent:
    kind: str                      # add | update | close
    conn_id: str
    conn: Optional[Connection] = None
    ts: float = 0.0


@dataclass
class ConnectionStats:
    upload_total: int = 0
    download_total: int = 0
    active: int = 0
    memory: int = 0


# Logs / traffic / memory / version
@dataclass
class LogLine:
    level: str
    payload: str
    ts: float = 0.0
    seq: int = 0  # assigned by LogBuffer at ingest

    @property
    def key(self) -> str:
        return str(self.seq)


@dataclass
class Traffic:
    up: int = 0
    down: int = 0


@dataclass
class Memory:
    inuse: int = 0
    oslimit: int = 0


@dataclass
class Version:
    version: str
    meta: bool = False

    def __str__(self) -> str:
        return f"Clash(Meta) {self.version}" if self.meta else f"Clash {self.version}"


# Proxies
@dataclass
class DelayHistory:
    time: str
    delay: int  # ms; <= 0 means timeout


@dataclass
class Proxy:
    name: str
    type: str
    all: List[str] = field(default_factory=list)
    now: Optional[str] = None
    hidden: bool = False
    test_url: Optional[str] = None
    history: List[DelayHistory] = field(default_factory=list)

    health: str = HEALTH_UNKNOWN
    last_delay: Optional[int] = None

    @property
    def key(self) -> str:
        return self.name

    @property
    def is_group(self) -> bool:
        return bool(self.all)

    def latest_delay(self) -> Optional[int]:
        """Most recent measured delay in ms, None when unknown or timed out."""
        if self.last_delay is not None:
            return self.last_delay if self.last_delay > 0 else None
        if self.history:
            d = self.history[-1].delay
            return d if d > 0 else None
        return None


@dataclass
class SubscriptionInfo:
    upload: Optional[int] = None
    download: Optional[int] = None
    total: Optional[int] = None
    expire: Optional[int] = None  # unix seconds


@dataclass
class ProxyProvider:
    name: str
    vehicle_type: str
    proxies: List[Proxy] = field(default_factory=list)
    test_url: Optional[str] = None
    updated_at: Optional[str] = None
    subscription: Optional[SubscriptionInfo] = None
    health: str = HEALTH_UNKNOWN

    @property
    def key(self) -> str:
        return self.name


# Rules
@dataclass
class Rule:
    index: str
    type: str
    payload: str
    proxy: str
    size: int = -1
    enabled: bool = True
    supports_disable: bool = False
    hit_count: Optional[int] = None
    hit_at: Optional[str] = None

    @property
    def key(self) -> str:
        return self.index


@dataclass
class RuleProvider:
    name: str
    behavior: str
    vehicle_type: str
    rule_count: int = 0
    updated_at: Optional[str] = None
    updating: bool = False

    @property
    def key(self) -> str:
        return self.name


# Parsers
def _int(v: Any, default: int = 0) -> int:
    if v is None:
        return default
    return int(v)


def parse_connection(d: Dict[str, Any], now: Optional[float] = None) -> Connection:
    ts = time.time() if now is None else now
    return Connection(
        id=str(d["id"]),
        metadata=dict(d.get("metadata") or {}),
        upload=_int(d.get("upload")),
        download=_int(d.get("download")),
        start=str(d.get("start") or ""),
        chains=[str(x) for x in (d.get("chains") or [])],
        rule=str(d.get("rule") or ""),
        rule_payload=str(d.get("rulePayload") or ""),
        opened_ts=ts,
        last_update_ts=ts,
    )


def parse_connections_frame(
        d: Dict[str, Any],
        now: Optional[float] = None,
) -> Tuple[ConnectionStats, List[Connection]]:
    """One /connections snapshot -> (totals, connections)."""
    conns = [parse_connection(c, now) for c in (d.get("connections") or [])]
    stats = ConnectionStats(
        upload_total=_int(d.get("uploadTotal")),
        download_total=_int(d.get("downloadTotal")),
        active=len(conns),
        memory=_int(d.get("memory")),
    )
    return stats, conns


def parse_log(d: Dict[str, Any], now: Optional[float] = None) -> LogLine:
    return LogLine(
        level=str(d.get("type") or "info"),
        payload=str(d.get("payload") or ""),
        ts=time.time() if now is None else now,
    )


def parse_traffic(d: Dict[str, Any]) -> Traffic:
    return Traffic(up=_int(d.get("up")), down=_int(d.get("down")))


def parse_memory(d: Dict[str, Any]) -> Memory:
    return Memory(inuse=_int(d.get("inuse")), oslimit=_int(d.get("oslimit")))


def parse_version(d: Dict[str, Any]) -> Version:
    return Version(version=str(d["version"]), meta=bool(d.get("meta", False)))


def parse_proxy(d: Dict[str, Any]) -> Proxy:
    history = [
        DelayHistory(time=str(h.get("time") or ""), delay=_int(h.get("delay")))
        for h in (d.get("history") or [])
    ]
    return Proxy(
        name=str(d["name"]),
        type=str(d.get("type") or ""),
        all=[str(x) for x in (d.get("all") or [])],
        now=d.get("now") or None,
        hidden=bool(d.get("hidden", False)),
        test_url=d.get("testUrl") or None,
        history=history,
    )


def parse_proxies(d: Dict[str, Any]) -> List[Proxy]:
    """
    Parse GET /proxies.

    Groups come first, in the order of GLOBAL's `all` list (the order the
    core was configured with); groups GLOBAL does not list follow by name,
    GLOBAL itself last. Plain nodes follow the groups by name.
    """
    raw = d.get("proxies") or {}
    proxies = {name: parse_proxy(p) for name, p in raw.items()}

    order: Dict[str, int] = {}
    glob = proxies.get("GLOBAL")
    if glob is not None:
        for i, name in enumerate(glob.all):
            order.setdefault(name, i)

    def _group_key(p: Proxy):
        if p.name == "GLOBAL":
            return (2, 0, p.name)
        if p.name in order:
            return (0, order[p.name], p.name)
        return (1, 0, p.name)

    groups = sorted((p for p in proxies.values() if p.is_group), key=_group_key)
    nodes = sorted((p for p in proxies.values() if not p.is_group), key=lambda p: p.name)
    return groups + nodes


def parse_proxy_providers(d: Dict[str, Any]) -> List[ProxyProvider]:
    out: List[ProxyProvider] = []
    for name, p in (d.get("providers") or {}).items():
        vt = str(p.get("vehicleType") or "")
        # the built-in "default" provider (vehicle Compatible) just mirrors config proxies
        if vt.lower() == "compatible":
            continue
        sub = p.get("subscriptionInfo")
        out.append(ProxyProvider(
            name=str(p.get("name") or name),
            vehicle_type=vt,
            proxies=[parse_proxy(x) for x in (p.get("proxies") or [])],
            test_url=p.get("testUrl") or None,
            updated_at=p.get("updatedAt") or None,
            subscription=SubscriptionInfo(
                upload=sub.get("Upload", sub.get("upload")),
                download=sub.get("Download", sub.get("download")),
                total=sub.get("Total", sub.get("total")),
                expire=sub.get("Expire", sub.get("expire")),
            ) if isinstance(sub, dict) else None,
        ))
    out.sort(key=lambda x: x.name)
    return out


def parse_rules(d: Dict[str, Any]) -> List[Rule]:
    """
    Parse GET /rules.

    Newer cores attach `index` and `extra` (disabled/hitCount/hitAt); only
    then can a rule be toggled. Without an index the list position is used.
    """
    out: List[Rule] = []
    for pos, r in enumerate(d.get("rules") or []):
        idx = r.get("index")
        extra = r.get("extra")
        has_extra = isinstance(extra, dict) and idx is not None
        out.append(Rule(
            index=str(idx if idx is not None else pos),
            type=str(r.get("type") or ""),
            payload=str(r.get("payload") or ""),
            proxy=str(r.get("proxy") or ""),
            size=_int(r.get("size"), -1),
            enabled=not bool(extra.get("disabled", False)) if has_extra else True,
            supports_disable=has_extra,
            hit_count=_int(extra.get("hitCount")) if has_extra else None,
            hit_at=(extra.get("hitAt") or None) if has_extra else None,
        ))
    return out


def parse_rule_providers(d: Dict[str, Any]) -> List[RuleProvider]:
    out: List[RuleProvider] = []
    for name, p in (d.get("providers") or {}).items():
        out.append(RuleProvider(
            name=str(p.get("name") or name),
            behavior=str(p.get("behavior") or ""),
            vehicle_type=str(p.get("vehicleType") or ""),
            rule_count=_int(p.get("ruleCount")),
            updated_at=p.get("updatedAt") or None,
        ))
    out.sort(key=lambda x: x.name)
    return out
