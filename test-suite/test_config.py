#!/usr/bin/env python3
import os
import tempfile
import unittest
from unittest import mock

import yaml

from mihomo_tui.config import (
    DEFAULT_TEST_TIMEOUT_MS,
    DEFAULT_TEST_URL,
    candidate_paths,
    discover_config,
    dump_example_config,
    load_config,
    parse_config,
)
from mihomo_tui.errors import ConfigError


class TestParseConfig(unittest.TestCase):
    def test_minimal_config_gets_defaults(self):
        cfg = parse_config({"mihomo-api": "http://127.0.0.1:9090/"})
        self.assertEqual(cfg.mihomo_api, "http://127.0.0.1:9090")
        self.assertIsNone(cfg.mihomo_secret)
        self.assertIsNone(cfg.log_file)
        self.assertEqual(cfg.log_level, "error")
        self.assertEqual(cfg.proxy_test_url, DEFAULT_TEST_URL)
        self.assertEqual(cfg.proxy_test_timeout, DEFAULT_TEST_TIMEOUT_MS)
        self.assertEqual(cfg.log_stream_level, "info")

    def test_full_config(self):
        cfg = parse_config({
            "mihomo-api": "https://core.lan:9443",
            "mihomo-secret": 12345,
            "log-file": "/tmp/mihomo-tui.log",
            "log-level": "DEBUG",
            "proxy-test-url": "http://cp.cloudflare.com",
            "proxy-test-timeout": "2500",
            "log-stream-level": "warning",
        }, source_path="x.yaml")
        self.assertEqual(cfg.mihomo_secret, "12345")
        self.assertEqual(cfg.log_level, "debug")
        self.assertEqual(cfg.proxy_test_timeout, 2500)
        self.assertEqual(cfg.log_stream_level, "warning")
        self.assertEqual(cfg.source_path, "x.yaml")

    def test_invalid_configs(self):
        bad = [
            None,
            ["mihomo-api"],
            {},
            {"mihomo-api": "127.0.0.1:9090"},
            {"mihomo-api": "ftp://127.0.0.1"},
            {"mihomo-api": "http://127.0.0.1:9090", "log-level": "loud"},
            {"mihomo-api": "http://127.0.0.1:9090", "log-stream-level": "trace"},
            {"mihomo-api": "http://127.0.0.1:9090", "proxy-test-timeout": "soon"},
            {"mihomo-api": "http://127.0.0.1:9090", "proxy-test-timeout": 0},
        ]
        for raw in bad:
            with self.subTest(raw=raw):
                with self.assertRaises(ConfigError):
                    parse_config(raw)

    def test_example_config_round_trips(self):
        raw = yaml.safe_load(dump_example_config())
        cfg = parse_config(raw)
        self.assertEqual(cfg.mihomo_api, "http://127.0.0.1:9090")


class TestLoadConfig(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def _write(self, name: str, text: str) -> str:
        path = os.path.join(self.tmp.name, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path

    def test_load_file(self):
        path = self._write("config.yaml", "mihomo-api: http://10.0.0.1:9090\nmihomo-secret: abc\n")
        cfg = load_config(path)
        self.assertEqual(cfg.mihomo_secret, "abc")
        self.assertEqual(cfg.source_path, path)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_config(os.path.join(self.tmp.name, "nope.yaml"))

    def test_invalid_yaml(self):
        path = self._write("bad.yaml", "mihomo-api: [unclosed\n")
        with self.assertRaises(ConfigError):
            load_config(path)

    def test_discovery_order(self):
        xdg = os.path.join(self.tmp.name, "xdg")
        cwd = os.path.join(self.tmp.name, "work")
        os.makedirs(cwd)
        with mock.patch.dict(os.environ, {"XDG_CONFIG_HOME": xdg}), mock.patch("os.getcwd", return_value=cwd):
            self.assertEqual(candidate_paths(), [
                os.path.join(cwd, "config.yaml"),
                os.path.join(xdg, "mihomo-tui", "config.yaml"),
            ])
            with self.assertRaises(ConfigError):
                discover_config()

            xdg_cfg = self._write(os.path.join("xdg", "mihomo-tui", "config.yaml"), "mihomo-api: http://a:1\n")
            self.assertEqual(discover_config(), xdg_cfg)

            local_cfg = self._write(os.path.join("work", "config.yaml"), "mihomo-api: http://b:1\n")
            self.assertEqual(discover_config(), local_cfg)

            self.assertEqual(discover_config("/explicit.yaml"), "/explicit.yaml")


if __name__ == "__main__":
    unittest.main()
