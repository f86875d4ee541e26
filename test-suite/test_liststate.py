#!/usr/bin/env python3
import unittest

from mihomo_tui.actions import (
    TAB_CONNECTIONS,
    TAB_LOGS,
    TAB_RULES,
    ConnectionEvents,
    LiveToggle,
    LogReceived,
    PatternEdit,
    SortCycle,
    TabSwitch,
)
from mihomo_tui.columns import CONNECTION_COLS
from mihomo_tui.dispatcher import Dispatcher
from mihomo_tui.liststate import ListState, LiveMode
from mihomo_tui.models import EV_ADD, EV_UPDATE, Connection, ConnectionEvent, LogLine
from mihomo_tui.store import ConnectionRing


def _ev(kind: str, cid: str, ts: float, host: str = "example.com", down: int = 0) -> ConnectionEvent:
    conn = Connection(id=cid, metadata={"host": host, "destinationPort": "443"}, download=down, rule="Match")
    return ConnectionEvent(kind=kind, conn_id=cid, conn=conn, ts=ts)


class TestListStateDirect(unittest.TestCase):
    def setUp(self):
        self.ring = ConnectionRing(10)
        self.ls = ListState(TAB_CONNECTIONS, CONNECTION_COLS, source=self.ring.snapshot, copy_entities=True)

    def test_inactive_list_is_marked_dirty_and_synced_on_activate(self):
        self.ring.capture(_ev(EV_ADD, "a", 1.0))
        self.assertFalse(self.ls.notify_changed())
        self.assertTrue(self.ls.dirty)
        self.assertEqual(self.ls.view, ())

        self.ls.activate()
        self.assertFalse(self.ls.dirty)
        self.assertEqual(self.ls.view, ("a",))

    def test_paused_list_ignores_replace_from_streams(self):
        self.ls.activate()
        self.ls.set_live(False)
        self.assertIs(self.ls.mode, LiveMode.PAUSED)
        self.assertFalse(self.ls.replace([Connection(id="x")]))
        self.assertEqual(len(self.ls), 0)
        # a user reload still goes through
        self.assertTrue(self.ls.replace([Connection(id="x")], stream=False))
        self.assertEqual(self.ls.view, ("x",))

    def test_select_only_existing_keys(self):
        self.ls.replace([Connection(id="a")], stream=False)
        self.ls.select("a")
        self.assertEqual(self.ls.selected, "a")
        self.ls.select("nope")
        self.assertIsNone(self.ls.selected)

    def test_selection_dropped_when_entity_disappears(self):
        self.ls.activate()
        self.ls.replace([Connection(id="a"), Connection(id="b")])
        self.ls.select("a")
        self.ls.replace([Connection(id="b")])
        self.assertIsNone(self.ls.selected)

    def test_view_version_bumps_on_recompute(self):
        v = self.ls.view_version
        self.ls.set_pattern("x")
        self.assertEqual(self.ls.view_version, v + 1)


class TestLiveMode(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.d = Dispatcher(api=None)
        self.st = self.d.state
        self.d.step(TabSwitch(TAB_CONNECTIONS))
        self.conns = self.st.lists[TAB_CONNECTIONS]

    def _feed(self, *events: ConnectionEvent) -> None:
        self.d.step(ConnectionEvents(tuple(events)))

    async def test_live_list_follows_the_ring(self):
        self._feed(_ev(EV_ADD, "a", 1.0), _ev(EV_ADD, "b", 2.0))
        self.assertEqual(self.conns.view, ("a", "b"))

    async def test_paused_list_is_frozen_in_order_and_content(self):
        self._feed(_ev(EV_ADD, "a", 1.0, down=10), _ev(EV_ADD, "b", 2.0, down=5))
        self.d.step(SortCycle(TAB_CONNECTIONS))  # Alive desc: ties keep order
        self.d.step(LiveToggle(TAB_CONNECTIONS))
        self.assertFalse(self.conns.live)
        frozen_view = self.conns.view
        frozen_version = self.conns.view_version

        self._feed(
            _ev(EV_UPDATE, "a", 3.0, down=5000),
            _ev(EV_ADD, "c", 3.5),
        )
        self.assertEqual(self.conns.view, frozen_view)
        self.assertEqual(self.conns.view_version, frozen_version)
        self.assertEqual(self.conns.get("a").download, 10)
        self.assertNotIn("c", self.conns.entities)
        # the ring itself kept capturing
        self.assertEqual(self.st.ring.get("a").download, 5000)
        self.assertIn("c", self.st.ring)

    async def test_resume_resyncs_once(self):
        self._feed(_ev(EV_ADD, "a", 1.0))
        self.d.step(LiveToggle(TAB_CONNECTIONS, live=False))
        self._feed(_ev(EV_ADD, "b", 2.0))
        self.d.step(LiveToggle(TAB_CONNECTIONS, live=True))
        self.assertTrue(self.conns.live)
        self.assertEqual(self.conns.view, ("a", "b"))
        self.assertEqual(self.st.status, f"{TAB_CONNECTIONS}: live")

    async def test_user_search_while_paused_recomputes_frozen_set(self):
        self._feed(_ev(EV_ADD, "a", 1.0, host="alpha.test"), _ev(EV_ADD, "b", 2.0, host="beta.test"))
        self.d.step(LiveToggle(TAB_CONNECTIONS))
        self._feed(_ev(EV_ADD, "c", 3.0, host="alpha2.test"))
        self.d.step(PatternEdit(TAB_CONNECTIONS, "alpha"))
        self.assertEqual(self.conns.view, ("a",))

    async def test_pattern_survives_tab_switches(self):
        self._feed(_ev(EV_ADD, "a", 1.0, host="alpha.test"), _ev(EV_ADD, "b", 2.0, host="beta.test"))
        self.d.step(PatternEdit(TAB_CONNECTIONS, "beta"))
        self.d.step(TabSwitch(TAB_LOGS))
        self.d.step(PatternEdit(TAB_LOGS, "warn"))
        self.d.step(TabSwitch(TAB_RULES))
        self.d.step(TabSwitch(TAB_CONNECTIONS))

        self.assertEqual(self.conns.pattern, "beta")
        self.assertEqual(self.conns.view, ("b",))
        self.assertEqual(self.st.lists[TAB_LOGS].pattern, "warn")

    async def test_background_changes_apply_on_return(self):
        self._feed(_ev(EV_ADD, "a", 1.0))
        self.d.step(TabSwitch(TAB_LOGS))
        self.assertFalse(self.conns.active)
        self._feed(_ev(EV_ADD, "b", 2.0))
        self.assertTrue(self.conns.dirty)
        self.assertEqual(self.conns.view, ("a",))

        self.d.step(TabSwitch(TAB_CONNECTIONS))
        self.assertEqual(self.conns.view, ("a", "b"))

    async def test_logs_tab_reads_log_buffer(self):
        self.d.step(TabSwitch(TAB_LOGS))
        self.d.step(LogReceived(LogLine(level="info", payload="hello")))
        self.d.step(LogReceived(LogLine(level="warning", payload="careful")))
        logs = self.st.lists[TAB_LOGS]
        self.assertEqual([l.payload for l in logs.rows()], ["hello", "careful"])
        self.d.step(PatternEdit(TAB_LOGS, "WARN"))
        self.assertEqual([l.payload for l in logs.rows()], ["careful"])


if __name__ == "__main__":
    unittest.main()
