#!/usr/bin/env python3
import os
import time
import unittest
from subprocess import CalledProcessError
from unittest import mock

from mihomo_tui.actions import HealthCheck
from mihomo_tui.columns import PROXY_NODE_COLS
from mihomo_tui.dispatcher import InFlight, new_state
from mihomo_tui.liststate import ListState
from mihomo_tui.models import Connection, Memory, Proxy, Traffic, Version
from mihomo_tui.tui import (
    SPARK_CHARS,
    TableView,
    config_diff,
    connection_detail_lines,
    edit_in_editor,
    overview_lines,
    sparkline,
)


def _nodes(*names):
    return [Proxy(name=n, type="Shadowsocks") for n in names]


class TestSparkline(unittest.TestCase):
    def test_empty_and_flat(self):
        self.assertEqual(sparkline([]), "")
        self.assertEqual(sparkline([0, 0, 0]), SPARK_CHARS[0] * 3)

    def test_scaled_to_max(self):
        s = sparkline([0, 50, 100])
        self.assertEqual(s[0], SPARK_CHARS[0])
        self.assertEqual(s[-1], SPARK_CHARS[-1])
        self.assertEqual(len(s), 3)

    def test_width_keeps_most_recent(self):
        s = sparkline(list(range(100)), width=10)
        self.assertEqual(len(s), 10)
        self.assertEqual(s[-1], SPARK_CHARS[-1])


class TestConfigDiff(unittest.TestCase):
    def test_changed_and_added_keys_only(self):
        old = {"mode": "rule", "log-level": "info", "allow-lan": False}
        new = {"mode": "global", "log-level": "info", "ipv6": True}
        self.assertEqual(config_diff(old, new), {"mode": "global", "ipv6": True})

    def test_non_mapping_rejected(self):
        with self.assertRaises(ValueError):
            config_diff({}, ["mode"])
        with self.assertRaises(ValueError):
            config_diff({}, None)


class TestTextPanels(unittest.TestCase):
    def test_overview(self):
        st = new_state()
        st.version = Version("v1.18.1", meta=True)
        st.traffic = Traffic(up=1024, down=2048)
        st.memory = Memory(inuse=10 * 1024 * 1024, oslimit=0)
        st.streams["traffic"] = "live"
        st.errors.append((time.time(), "rules refresh failed: timeout"))
        st.in_flight[("health", "group:Auto")] = InFlight(HealthCheck(group="Auto"))

        text = "\n".join(overview_lines(st))
        self.assertIn("Clash(Meta) v1.18.1", text)
        self.assertIn("down 2.0 KB/s", text)
        self.assertIn("10.0 MB", text)
        self.assertIn("live", text)
        self.assertIn("In flight:", text)
        self.assertIn("rules refresh failed: timeout", text)

    def test_overview_without_errors(self):
        text = "\n".join(overview_lines(new_state()))
        self.assertIn("Core:        unknown", text)
        self.assertIn("(none)", text)
        self.assertNotIn("In flight:", text)

    def test_connection_details(self):
        c = Connection(
            id="abc", chains=["HK-01", "Proxy"], rule="DomainSuffix", rule_payload="google.com",
            metadata={"host": "www.google.com", "destinationPort": "443", "sourceIP": "192.168.1.5",
                      "sourcePort": "50000", "network": "tcp", "type": "Tun", "process": ""},
        )
        lines = connection_detail_lines(c)
        self.assertIn("Host:      www.google.com:443", lines)
        self.assertIn("Chains:    Proxy > HK-01", lines)
        self.assertIn("Rule:      DomainSuffix (google.com)", lines)
        self.assertIn("  network: tcp", lines)
        self.assertFalse(any(line.startswith("  process") for line in lines))


@unittest.skipIf(os.name == "nt", "needs POSIX true/false commands")
class TestEditInEditor(unittest.TestCase):
    def test_unchanged_text_returned(self):
        with mock.patch.dict(os.environ, {"EDITOR": "true"}):
            self.assertEqual(edit_in_editor("mode: rule\n"), "mode: rule\n")

    def test_editor_failure_raises(self):
        with mock.patch.dict(os.environ, {"EDITOR": "false"}):
            with self.assertRaises(CalledProcessError):
                edit_in_editor("mode: rule\n")


class TestTableView(unittest.TestCase):
    def setUp(self):
        self.ls = ListState("proxy_nodes", PROXY_NODE_COLS)
        self.ls.activate()
        self.ls.replace(_nodes("b-node", "a-node", "c-node"))
        self.table = TableView(self.ls, "Nodes")

    def _keys(self):
        return [w._key for w in self.table.walker]

    def test_rows_follow_view(self):
        self.assertTrue(self.table.refresh())
        self.assertEqual(self._keys(), ["b-node", "a-node", "c-node"])
        self.assertEqual(self.table.focused_key(), "b-node")
        self.assertEqual(self.table.focused_entity().name, "b-node")

    def test_unchanged_view_not_rebuilt(self):
        self.table.refresh()
        self.assertFalse(self.table.refresh())
        self.assertTrue(self.table.refresh(force=True))

    def test_focus_kept_across_sort(self):
        self.table.refresh()
        self.table.walker.set_focus(2)
        self.assertEqual(self.table.focused_key(), "c-node")

        self.ls.cycle_sort(+1)
        self.assertTrue(self.table.refresh())
        self.assertEqual(self._keys(), ["c-node", "b-node", "a-node"])
        self.assertEqual(self.table.focused_key(), "c-node")
        self.assertEqual(self.table._titles[0].text, "Name ▼")

    def test_info_line(self):
        self.ls.set_pattern("a-")
        self.table.refresh()
        info = self.table._info.text
        self.assertIn("[LIVE]", info)
        self.assertIn("1/3", info)
        self.assertIn("filter: a-", info)
        self.assertEqual(self._keys(), ["a-node"])

    def test_empty_list(self):
        table = TableView(ListState("proxy_nodes", PROXY_NODE_COLS), "Nodes")
        table.refresh()
        self.assertIsNone(table.focused_key())
        self.assertIsNone(table.focused_entity())


if __name__ == "__main__":
    unittest.main()
