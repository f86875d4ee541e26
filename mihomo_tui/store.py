from __future__ import annotations

import logging
import time
from collections import OrderedDict, deque
from typing import Deque, Iterable, List, Optional

from .models import (
    EV_ADD,
    EV_CLOSE,
    EV_UPDATE,
    Connection,
    ConnectionEvent,
    LogLine,
)

LOG = logging.getLogger("mihomo_tui.store")

CONNS_BUFFER_SIZE = 500
LOGS_BUFFER_SIZE = 500


class ConnectionRing:
    """
    Bounded store of captured connection records (Connections view).

    Features:
      - insertion-ordered; newest appended, oldest evicted first
      - eviction is strict FIFO regardless of open/closed status
      - closed connections stay visible until evicted

    Important:
      - capture(event) is the only mutation path; it is called from the
        dispatcher's reducer only, so no lock is needed.
      - an update/close for an unseen id is an implicit add (stream
        resubscription can race with history).
      - a closed record is never mutated again.
    """
    def __init__(self, capacity: int = CONNS_BUFFER_SIZE):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._records: "OrderedDict[str, Connection]" = OrderedDict()
        # bumped on every mutation, lets readers skip unchanged snapshots
        self.version = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._records

    def get(self, conn_id: str) -> Optional[Connection]:
        return self._records.get(conn_id)

    def snapshot(self) -> List[Connection]:
        """Records in insertion order (oldest first)."""
        return list(self._records.values())

    def ids(self) -> List[str]:
        return list(self._records.keys())

    def close_missing(self, open_ids: Iterable[str], now: Optional[float] = None) -> int:
        """Close every open record not in open_ids. Returns how many were closed."""
        keep = set(open_ids)
        ts = time.time() if now is None else now
        n = 0
        for cid, cur in self._records.items():
            if cur.closed or cid in keep:
                continue
            cur.closed = True
            cur.closed_ts = ts
            cur.upload_rate = 0
            cur.download_rate = 0
            n += 1
        if n:
            self.version += 1
        return n

    def capture(self, ev: ConnectionEvent) -> None:
        now = ev.ts or time.time()
        cur = self._records.get(ev.conn_id)

        if cur is None:
            if ev.kind not in (EV_ADD, EV_UPDATE, EV_CLOSE):
                LOG.debug("ConnectionRing.capture: unknown event kind=%r id=%s", ev.kind, ev.conn_id)
                return
            conn = ev.conn or Connection(id=ev.conn_id)
            self._append(conn, now)
            if ev.kind == EV_CLOSE:
                conn.closed = True
                conn.closed_ts = now
            return

        if cur.closed:
            return

        if ev.kind in (EV_ADD, EV_UPDATE):
            if ev.conn is not None:
                self._apply_update(cur, ev.conn, now)
            self.version += 1
        elif ev.kind == EV_CLOSE:
            if ev.conn is not None:
                self._apply_update(cur, ev.conn, now)
            cur.closed = True
            cur.closed_ts = now
            cur.upload_rate = 0
            cur.download_rate = 0
            self.version += 1
        else:
            LOG.debug("ConnectionRing.capture: unknown event kind=%r id=%s", ev.kind, ev.conn_id)

    def _append(self, conn: Connection, now: float) -> None:
        while len(self._records) >= self.capacity:
            old_id, _ = self._records.popitem(last=False)
            LOG.debug("ConnectionRing: evicted %s", old_id)
        if not conn.opened_ts:
            conn.opened_ts = now
        conn.last_update_ts = now
        self._records[conn.id] = conn
        self.version += 1

    @staticmethod
    def _apply_update(cur: Connection, new: Connection, now: float) -> None:
        dt = now - (cur.last_update_ts or now)
        # counters never go backwards while open
        up = max(cur.upload, new.upload)
        down = max(cur.download, new.download)
        if dt > 0:
            cur.upload_rate = int((up - cur.upload) / dt)
            cur.download_rate = int((down - cur.download) / dt)
        cur.upload = up
        cur.download = down
        if new.chains:
            cur.chains = list(new.chains)
        if new.rule:
            cur.rule = new.rule
            cur.rule_payload = new.rule_payload
        if new.metadata:
            cur.metadata = dict(new.metadata)
        cur.last_update_ts = now


class LogBuffer:
    """Bounded FIFO of log lines from the core's /logs stream."""
    def __init__(self, capacity: int = LOGS_BUFFER_SIZE):
        self._lines: Deque[LogLine] = deque(maxlen=int(capacity))
        self._seq = 0
        self.version = 0

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, line: LogLine) -> LogLine:
        self._seq += 1
        line.seq = self._seq
        self._lines.append(line)
        self.version += 1
        return line

    def snapshot(self) -> List[LogLine]:
        return list(self._lines)
