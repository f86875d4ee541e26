from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List

from .actions import (
    STREAM_CONNECTIONS,
    STREAM_LOGS,
    STREAM_MEMORY,
    STREAM_TRAFFIC,
    STREAMS,
    Action,
    ConnectionEvents,
    ConnectionStatsReceived,
    Error,
    LogReceived,
    MemoryReceived,
    StreamClosed,
    TrafficReceived,
)
from .errors import StreamError
from .models import ConnectionEvent, ConnectionStats, LogLine, Memory, Traffic

LOG = logging.getLogger("mihomo_tui.pumps")


class StreamPumps:
    """
    One task per stream, turning stream items into actions.

    Important:
      - pumps only enqueue actions, they never touch state
      - pausing a list never cancels its pump
      - a terminated stream is reported once (StreamClosed + Error) and is
        not retried; start(stream) after that is an explicit reconnect
    """
    def __init__(self, api: Any, dispatch: Callable[[Action], None]):
        self.api = api
        self.dispatch = dispatch
        self._tasks: Dict[str, asyncio.Task] = {}

    def running(self, stream: str) -> bool:
        t = self._tasks.get(stream)
        return t is not None and not t.done()

    def start(self, stream: str) -> bool:
        """Start a pump; False if it is already running."""
        if stream not in STREAMS:
            raise ValueError(f"unknown stream {stream!r}")
        if self.running(stream):
            return False
        self._tasks[stream] = asyncio.get_running_loop().create_task(self._run(stream))
        LOG.info("pump %s: started", stream)
        return True

    def start_all(self) -> None:
        for s in STREAMS:
            self.start(s)

    async def stop_all(self) -> None:
        tasks: List[asyncio.Task] = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _run(self, stream: str) -> None:
        try:
            if stream == STREAM_CONNECTIONS:
                await self._pump_connections()
            elif stream == STREAM_LOGS:
                await self._pump_simple(stream, self.api.stream_logs(), LogLine, LogReceived)
            elif stream == STREAM_TRAFFIC:
                await self._pump_simple(stream, self.api.stream_traffic(), Traffic, TrafficReceived)
            elif stream == STREAM_MEMORY:
                await self._pump_simple(stream, self.api.stream_memory(), Memory, MemoryReceived)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # a bug in decoding must not kill the loop silently
            LOG.error("pump %s crashed", stream, exc_info=True)
            self._closed(StreamError(stream, f"internal error: {e}"))

    async def _pump_connections(self) -> None:
        batch: List[ConnectionEvent] = []
        async for item in self.api.stream_connections():
            if isinstance(item, ConnectionEvent):
                batch.append(item)
            elif isinstance(item, ConnectionStats):
                # one action per snapshot frame
                if batch:
                    self.dispatch(ConnectionEvents(tuple(batch)))
                    batch = []
                self.dispatch(ConnectionStatsReceived(item))
            elif isinstance(item, StreamError):
                if batch:
                    self.dispatch(ConnectionEvents(tuple(batch)))
                self._closed(item)
                return

    async def _pump_simple(self, stream: str, it, item_type: type, action_type: type) -> None:
        async for item in it:
            if isinstance(item, StreamError):
                self._closed(item)
                return
            if isinstance(item, item_type):
                self.dispatch(action_type(item))
            else:
                LOG.debug("pump %s: ignoring %r", stream, type(item).__name__)

    def _closed(self, err: StreamError) -> None:
        self.dispatch(StreamClosed(err.stream, err.message))
        self.dispatch(Error(f"{err} (press R to reconnect)"))
