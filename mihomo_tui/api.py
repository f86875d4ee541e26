"""
Client for the mihomo control API.

REST calls go through one httpx.AsyncClient; the long-lived streams
(/connections, /logs, /traffic, /memory) are websockets.

The client owns no UI state: every call returns a value or raises
ApiError, every stream yields values and ends with a StreamError item.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx
import websockets
from websockets.exceptions import WebSocketException

from . import __version__
from .actions import CoreActionKind
from .config import AppConfig
from .errors import ApiError, ConnectError, StreamError
from .logsetup import log_throttled
from .models import (
    EV_ADD,
    EV_CLOSE,
    EV_UPDATE,
    Connection,
    ConnectionEvent,
    ConnectionStats,
    LogLine,
    Memory,
    Proxy,
    ProxyProvider,
    Rule,
    RuleProvider,
    Traffic,
    Version,
    parse_connections_frame,
    parse_log,
    parse_memory,
    parse_proxies,
    parse_proxy_providers,
    parse_rule_providers,
    parse_rules,
    parse_traffic,
    parse_version,
)

LOG = logging.getLogger("mihomo_tui.api")

DEFAULT_HTTP_TIMEOUT_S = 10.0
WS_MAX_FRAME = 2 ** 24  # /connections snapshots can be large

# (method, path, json body, query)
_CORE_ACTIONS: Dict[CoreActionKind, Tuple[str, str, Optional[dict], Optional[dict]]] = {
    CoreActionKind.RELOAD: ("PUT", "/configs", {"path": "", "payload": ""}, {"force": "true"}),
    CoreActionKind.RESTART: ("POST", "/restart", None, None),
    CoreActionKind.FLUSH_FAKEIP: ("POST", "/cache/fakeip/flush", None, None),
    CoreActionKind.FLUSH_DNS: ("POST", "/cache/dns/flush", None, None),
    CoreActionKind.UPDATE_GEO: ("POST", "/configs/geo", None, None),
}

ConnectionStreamItem = Union[ConnectionEvent, ConnectionStats, StreamError]


def _one_line(s: str, limit: int = 300) -> str:
    s = (s or "").replace("\r", " ").replace("\n", " ").strip()
    if len(s) > limit:
        s = s[:limit] + "…"
    return s


def _seg(name: str) -> str:
    """Percent-encode one path segment (proxy/group/provider names)."""
    return quote(name, safe="")


def _exc_text(e: BaseException) -> str:
    return _one_line(str(e)) or type(e).__name__


def _error_message(resp: httpx.Response) -> str:
    # mihomo answers errors as {"message": "..."}
    try:
        data = resp.json()
        if isinstance(data, dict) and data.get("message"):
            return _one_line(str(data["message"]))
    except ValueError:
        pass
    return _one_line(resp.text) or resp.reason_phrase


def _default_ws_connect(url: str):
    return websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=20,
        open_timeout=10,
        max_size=WS_MAX_FRAME,
        proxy=None,  # never route the controller through a system proxy
    )


class ConnectionDiffer:
    """
    Turns consecutive /connections snapshots into add/update/close events.

    Important:
      - new id -> add; id gone from the snapshot -> close
      - present id -> update when its counters moved, or when they moved in
        the previous frame (so rates can drop back to zero)
      - a fresh differ (fresh subscription) reports everything as add
    """
    def __init__(self):
        # id -> (upload, download, moved_last_frame)
        self._last: Dict[str, Tuple[int, int, bool]] = {}

    def feed(self, conns: List[Connection], now: Optional[float] = None) -> List[ConnectionEvent]:
        ts = time.time() if now is None else now
        events: List[ConnectionEvent] = []
        seen: Dict[str, Tuple[int, int, bool]] = {}

        for c in conns:
            prev = self._last.get(c.id)
            if prev is None:
                events.append(ConnectionEvent(EV_ADD, c.id, c, ts))
                seen[c.id] = (c.upload, c.download, False)
                continue
            moved = (c.upload, c.download) != prev[:2]
            if moved or prev[2]:
                events.append(ConnectionEvent(EV_UPDATE, c.id, c, ts))
            seen[c.id] = (c.upload, c.download, moved)

        for cid in self._last:
            if cid not in seen:
                events.append(ConnectionEvent(EV_CLOSE, cid, None, ts))

        self._last = seen
        return events


class MihomoApi:
    """
    Typed adapter over the mihomo control API.

    Features:
      - Authorization: Bearer <secret> on REST calls (only when a secret is set)
      - the secret goes into the `token` query parameter for websockets
      - trust_env=False: system proxies are never applied to the controller

    Testing:
      - transport: an httpx transport (httpx.MockTransport in tests)
      - ws_connect: callable(url) -> async context manager yielding an
        async-iterable of text frames
    """
    def __init__(
            self,
            cfg: AppConfig,
            transport: Optional[httpx.AsyncBaseTransport] = None,
            ws_connect: Optional[Callable[[str], Any]] = None,
            timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
    ):
        self.cfg = cfg
        self.base_url = cfg.mihomo_api
        headers = {"User-Agent": f"mihomo-tui/{__version__}"}
        if cfg.mihomo_secret:
            headers["Authorization"] = f"Bearer {cfg.mihomo_secret}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_s),
            transport=transport,
            trust_env=False,
        )
        self._ws_connect = ws_connect or _default_ws_connect

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- REST plumbing ---
    async def _request(
            self,
            op: str,
            method: str,
            path: str,
            *,
            params: Optional[Dict[str, Any]] = None,
            body: Optional[Any] = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, params=params, json=body)
        except httpx.TimeoutException as e:
            raise ApiError(op, "timed out") from e
        except httpx.HTTPError as e:
            raise ApiError(op, _exc_text(e)) from e

        if resp.status_code >= 400:
            raise ApiError(op, _error_message(resp), status=resp.status_code)

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            # some endpoints answer plain text on success
            return None

    @staticmethod
    def _decode(op: str, fn: Callable[[Any], Any], data: Any) -> Any:
        if data is None:
            raise ApiError(op, "empty response")
        try:
            return fn(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ApiError(op, f"unexpected response: {_exc_text(e)}") from e

    # --- session ---
    async def connect(self) -> Version:
        """GET /version; any failure is fatal and raised as ConnectError (no retry)."""
        try:
            data = await self._request("connect", "GET", "/version")
            ver = self._decode("connect", parse_version, data)
        except ApiError as e:
            reason = e.message
            if e.status == 401:
                reason = "unauthorized (check mihomo-secret)"
            elif e.status is not None:
                reason = f"HTTP {e.status}: {e.message}"
            raise ConnectError(self.base_url, reason) from e
        LOG.info("Connected to %s: %s", self.base_url, ver)
        return ver

    # --- proxies ---
    async def list_proxies(self) -> List[Proxy]:
        data = await self._request("list proxies", "GET", "/proxies")
        return self._decode("list proxies", parse_proxies, data)

    async def switch_proxy(self, group: str, name: str) -> None:
        await self._request(
            f"switch {group} -> {name}", "PUT", f"/proxies/{_seg(group)}", body={"name": name},
        )

    async def health_check(self, name: str, url: Optional[str] = None, timeout_ms: Optional[int] = None) -> int:
        """One latency probe; returns delay in ms. A failed probe raises ApiError."""
        op = f"health check {name}"
        data = await self._request(op, "GET", f"/proxies/{_seg(name)}/delay", params=self._probe_params(url, timeout_ms))
        return self._decode(op, lambda d: int(d["delay"]), data)

    async def health_check_group(
            self, group: str, url: Optional[str] = None, timeout_ms: Optional[int] = None,
    ) -> Dict[str, int]:
        """Probe every member of a group; returns name -> delay (members that failed are absent)."""
        op = f"health check group {group}"
        data = await self._request(op, "GET", f"/group/{_seg(group)}/delay", params=self._probe_params(url, timeout_ms))
        return self._decode(op, lambda d: {str(k): int(v) for k, v in d.items()}, data)

    def _probe_params(self, url: Optional[str], timeout_ms: Optional[int]) -> Dict[str, Any]:
        return {
            "url": url or self.cfg.proxy_test_url,
            "timeout": int(timeout_ms or self.cfg.proxy_test_timeout),
        }

    # --- proxy providers ---
    async def list_proxy_providers(self) -> List[ProxyProvider]:
        data = await self._request("list proxy providers", "GET", "/providers/proxies")
        return self._decode("list proxy providers", parse_proxy_providers, data)

    async def update_proxy_provider(self, name: str) -> None:
        await self._request(f"update proxy provider {name}", "PUT", f"/providers/proxies/{_seg(name)}")

    async def health_check_proxy_provider(self, name: str) -> None:
        await self._request(
            f"health check proxy provider {name}", "GET", f"/providers/proxies/{_seg(name)}/healthcheck",
        )

    # --- rules ---
    async def list_rules(self) -> List[Rule]:
        data = await self._request("list rules", "GET", "/rules")
        return self._decode("list rules", parse_rules, data)

    async def rule_stats(self) -> List[Rule]:
        """Same payload as list_rules(); used for the hit-count refresh."""
        data = await self._request("rule stats", "GET", "/rules")
        return self._decode("rule stats", parse_rules, data)

    async def toggle_rule(self, rule_id: str, enabled: bool) -> None:
        op = f"{'enable' if enabled else 'disable'} rule {rule_id}"
        try:
            idx = int(rule_id)
        except ValueError:
            raise ApiError(op, "rule has no numeric index") from None
        # body is {index: disabled}
        await self._request(op, "PATCH", "/rules/disable", body={str(idx): not enabled})

    # --- rule providers ---
    async def list_rule_providers(self) -> List[RuleProvider]:
        data = await self._request("list rule providers", "GET", "/providers/rules")
        return self._decode("list rule providers", parse_rule_providers, data)

    async def update_provider(self, name: str) -> None:
        await self._request(f"update rule provider {name}", "PUT", f"/providers/rules/{_seg(name)}")

    # --- config / core ---
    async def get_config(self) -> Dict[str, Any]:
        data = await self._request("get config", "GET", "/configs")
        if not isinstance(data, dict):
            raise ApiError("get config", "unexpected response: not an object")
        return data

    async def patch_config(self, partial: Dict[str, Any]) -> None:
        await self._request("patch config", "PATCH", "/configs", body=partial)

    async def trigger_core_action(self, kind: CoreActionKind) -> None:
        method, path, body, params = _CORE_ACTIONS[CoreActionKind(kind)]
        await self._request(f"core action {CoreActionKind(kind).value}", method, path, params=params, body=body)

    # --- connections ---
    async def close_connection(self, conn_id: str) -> None:
        await self._request(f"terminate connection {conn_id}", "DELETE", f"/connections/{_seg(conn_id)}")

    # --- streams ---
    def ws_url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        u = httpx.URL(self.base_url)
        scheme = "wss" if u.scheme == "https" else "ws"
        q = {k: str(v) for k, v in (params or {}).items() if v is not None}
        if self.cfg.mihomo_secret:
            q["token"] = self.cfg.mihomo_secret
        u = u.copy_with(scheme=scheme, path=u.path.rstrip("/") + path)
        return str(u.copy_merge_params(q)) if q else str(u)

    async def _frames(self, stream: str, path: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[Any]:
        """Decoded JSON frames; the last item is always a StreamError."""
        url = self.ws_url(path, params)
        try:
            async with self._ws_connect(url) as ws:
                LOG.info("stream %s: subscribed", stream)
                async for message in ws:
                    try:
                        data = json.loads(message)
                    except ValueError:
                        log_throttled(
                            logging.WARNING,
                            f"api.stream.{stream}.decode",
                            f"stream {stream}: undecodable frame",
                            interval_s=5.0,
                        )
                        continue
                    yield data
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            LOG.warning("stream %s: terminated: %s", stream, _exc_text(e))
            yield StreamError(stream, _exc_text(e))
            return
        LOG.info("stream %s: closed by server", stream)
        yield StreamError(stream, "closed by server")

    async def stream_connections(self) -> AsyncIterator[ConnectionStreamItem]:
        """
        Events of each snapshot frame, followed by that frame's ConnectionStats.
        A fresh call re-subscribes with a fresh differ.
        """
        differ = ConnectionDiffer()
        async for frame in self._frames("connections", "/connections"):
            if isinstance(frame, StreamError):
                yield frame
                return
            try:
                stats, conns = parse_connections_frame(frame)
            except (KeyError, TypeError, ValueError, AttributeError):
                log_throttled(
                    logging.WARNING,
                    "api.stream.connections.parse",
                    "stream connections: malformed frame",
                    interval_s=5.0,
                    exc_info=True,
                )
                continue
            for ev in differ.feed(conns):
                yield ev
            yield stats

    async def stream_logs(self, level: Optional[str] = None) -> AsyncIterator[Union[LogLine, StreamError]]:
        lvl = level or self.cfg.log_stream_level
        async for frame in self._frames("logs", "/logs", {"level": lvl}):
            if isinstance(frame, StreamError):
                yield frame
                return
            try:
                yield parse_log(frame)
            except (TypeError, ValueError, AttributeError):
                log_throttled(logging.WARNING, "api.stream.logs.parse", "stream logs: malformed frame", interval_s=5.0)

    async def stream_traffic(self) -> AsyncIterator[Union[Traffic, StreamError]]:
        async for frame in self._frames("traffic", "/traffic"):
            if isinstance(frame, StreamError):
                yield frame
                return
            try:
                yield parse_traffic(frame)
            except (TypeError, ValueError, AttributeError):
                log_throttled(logging.WARNING, "api.stream.traffic.parse", "stream traffic: malformed frame", interval_s=5.0)

    async def stream_memory(self) -> AsyncIterator[Union[Memory, StreamError]]:
        async for frame in self._frames("memory", "/memory"):
            if isinstance(frame, StreamError):
                yield frame
                return
            try:
                yield parse_memory(frame)
            except (TypeError, ValueError, AttributeError):
                log_throttled(logging.WARNING, "api.stream.memory.parse", "stream memory: malformed frame", interval_s=5.0)
