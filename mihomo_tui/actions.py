"""
Closed set of actions processed by the dispatcher.

Every action is a frozen dataclass. Command intents carry an `entity_key`
(kind, id) used to serialize intents on the same entity.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .models import (
    ConnectionEvent,
    ConnectionStats,
    LogLine,
    Memory,
    Traffic,
    Version,
)

# tabs, in display order
TAB_OVERVIEW = "overview"
TAB_CONNECTIONS = "connections"
TAB_PROXIES = "proxies"
TAB_PROXY_PROVIDERS = "proxy_providers"
TAB_RULES = "rules"
TAB_RULE_PROVIDERS = "rule_providers"
TAB_LOGS = "logs"
TAB_CONFIG = "config"

TABS: Tuple[str, ...] = (
    TAB_OVERVIEW,
    TAB_CONNECTIONS,
    TAB_PROXIES,
    TAB_PROXY_PROVIDERS,
    TAB_RULES,
    TAB_RULE_PROVIDERS,
    TAB_LOGS,
    TAB_CONFIG,
)

# stream names
STREAM_CONNECTIONS = "connections"
STREAM_LOGS = "logs"
STREAM_TRAFFIC = "traffic"
STREAM_MEMORY = "memory"
STREAMS: Tuple[str, ...] = (STREAM_CONNECTIONS, STREAM_LOGS, STREAM_TRAFFIC, STREAM_MEMORY)


class CoreActionKind(str, enum.Enum):
    RELOAD = "reload"
    RESTART = "restart"
    FLUSH_FAKEIP = "flush_fakeip"
    FLUSH_DNS = "flush_dns"
    UPDATE_GEO = "update_geo"


class Action:
    """Marker base class."""


class Intent(Action):
    """Command intent: issues exactly one Effect."""

    @property
    def entity_key(self) -> Optional[Tuple[str, str]]:
        return None

    def describe(self) -> str:
        return type(self).__name__


# Stream events
@dataclass(frozen=True)
class ConnectionEvents(Action):
    """Events decoded from one /connections frame."""
    events: Tuple[ConnectionEvent, ...]


@dataclass(frozen=True)
class ConnectionStatsReceived(Action):
    stats: ConnectionStats


@dataclass(frozen=True)
class LogReceived(Action):
    line: LogLine


@dataclass(frozen=True)
class TrafficReceived(Action):
    traffic: Traffic


@dataclass(frozen=True)
class MemoryReceived(Action):
    memory: Memory


@dataclass(frozen=True)
class StreamClosed(Action):
    stream: str
    error: str


# Navigation
@dataclass(frozen=True)
class TabSwitch(Action):
    tab: str


@dataclass(frozen=True)
class SelectRow(Action):
    kind: str
    key: Optional[str]


@dataclass(frozen=True)
class SortCycle(Action):
    kind: str
    delta: int = 1


@dataclass(frozen=True)
class SortReverse(Action):
    kind: str


@dataclass(frozen=True)
class SortClear(Action):
    kind: str


@dataclass(frozen=True)
class PatternEdit(Action):
    kind: str
    pattern: Optional[str]


@dataclass(frozen=True)
class LiveToggle(Action):
    kind: str
    live: Optional[bool] = None  # None flips


@dataclass(frozen=True)
class Quit(Action):
    pass


# Command intents
@dataclass(frozen=True)
class ProxySwitch(Intent):
    group: str
    name: str

    @property
    def entity_key(self):
        return ("proxy", self.group)

    def describe(self) -> str:
        return f"switch {self.group} -> {self.name}"


@dataclass(frozen=True)
class HealthCheck(Intent):
    """target=None with a group checks every member of the group."""
    target: Optional[str] = None
    group: Optional[str] = None

    @property
    def entity_key(self):
        return ("health", self.target or f"group:{self.group}")

    def describe(self) -> str:
        if self.target:
            return f"health check {self.target}"
        return f"health check group {self.group}"


@dataclass(frozen=True)
class RuleToggle(Intent):
    id: str
    enabled: bool

    @property
    def entity_key(self):
        return ("rule", self.id)

    def describe(self) -> str:
        return f"{'enable' if self.enabled else 'disable'} rule {self.id}"


@dataclass(frozen=True)
class ProviderUpdate(Intent):
    """Update a rule provider."""
    name: str

    @property
    def entity_key(self):
        return ("rule_provider", self.name)

    def describe(self) -> str:
        return f"update rule provider {self.name}"


@dataclass(frozen=True)
class ProxyProviderUpdate(Intent):
    name: str

    @property
    def entity_key(self):
        return ("proxy_provider", self.name)

    def describe(self) -> str:
        return f"update proxy provider {self.name}"


@dataclass(frozen=True)
class ProxyProviderHealthCheck(Intent):
    name: str

    @property
    def entity_key(self):
        return ("proxy_provider", self.name)

    def describe(self) -> str:
        return f"health check proxy provider {self.name}"


@dataclass(frozen=True)
class ConfigPatch(Intent):
    partial: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_key(self):
        return ("config", "core")

    def describe(self) -> str:
        return "patch config: " + ", ".join(sorted(self.partial)) if self.partial else "patch config"


@dataclass(frozen=True)
class CoreAction(Intent):
    kind: CoreActionKind

    @property
    def entity_key(self):
        return ("config", "core")

    def describe(self) -> str:
        return f"core action {self.kind.value}"


@dataclass(frozen=True)
class ConnectionTerminate(Intent):
    id: str

    @property
    def entity_key(self):
        return ("connection", self.id)

    def describe(self) -> str:
        return f"terminate connection {self.id}"


@dataclass(frozen=True)
class Refresh(Intent):
    """Reload one entity kind (a tab name) from the API."""
    kind: str

    @property
    def entity_key(self):
        return ("refresh", self.kind)

    def describe(self) -> str:
        return f"refresh {self.kind}"


@dataclass(frozen=True)
class Reconnect(Intent):
    stream: str

    def describe(self) -> str:
        return f"reconnect {self.stream}"


# Loaded data
@dataclass(frozen=True)
class ProxiesLoaded(Action):
    proxies: Tuple[Any, ...]


@dataclass(frozen=True)
class ProxyProvidersLoaded(Action):
    providers: Tuple[Any, ...]


@dataclass(frozen=True)
class RulesLoaded(Action):
    rules: Tuple[Any, ...]


@dataclass(frozen=True)
class RuleProvidersLoaded(Action):
    providers: Tuple[Any, ...]


@dataclass(frozen=True)
class ConfigLoaded(Action):
    config: Dict[str, Any]


@dataclass(frozen=True)
class VersionLoaded(Action):
    version: Version


# Effect results
@dataclass(frozen=True)
class EffectOk(Action):
    intent: Intent
    value: Any = None


@dataclass(frozen=True)
class EffectErr(Action):
    intent: Intent
    error: BaseException


@dataclass(frozen=True)
class Error(Action):
    message: str
    intent: Optional[Intent] = None
