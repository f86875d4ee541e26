#!/usr/bin/env python3
import logging
import os
import tempfile
import unittest
import warnings
from logging.handlers import RotatingFileHandler

from mihomo_tui.errors import ConsistencyWarning
from mihomo_tui.logsetup import TRACE, level_from_name, log_throttled, setup_logging


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.messages = []

    def emit(self, record):
        self.messages.append(record.getMessage())


class TestSetupLogging(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self._saved = (list(root.handlers), root.level)
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        handlers, level = self._saved
        for h in handlers:
            root.addHandler(h)
        root.setLevel(level)
        logging.captureWarnings(False)
        self.tmp.cleanup()

    def test_level_names(self):
        self.assertEqual(level_from_name("trace"), TRACE)
        self.assertEqual(level_from_name("DEBUG"), logging.DEBUG)
        self.assertEqual(level_from_name(None), logging.ERROR)
        self.assertGreater(level_from_name("silent"), logging.CRITICAL)

    def test_without_log_file_only_null_handler(self):
        setup_logging(None, "debug")
        handlers = logging.getLogger().handlers
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0], logging.NullHandler)

    def test_rotating_file_handler(self):
        path = os.path.join(self.tmp.name, "sub", "mihomo-tui.log")
        setup_logging(path, "info")
        handlers = logging.getLogger().handlers
        self.assertEqual(len(handlers), 1)
        fh = handlers[0]
        self.assertIsInstance(fh, RotatingFileHandler)
        self.assertEqual(fh.maxBytes, 10 * 1024 * 1024)
        self.assertEqual(fh.backupCount, 5)

        logging.getLogger("mihomo_tui.test").info("hello file")
        fh.flush()
        with open(path, encoding="utf-8") as f:
            text = f.read()
        self.assertIn("INFO mihomo_tui.test: hello file", text)

    def test_repeated_setup_does_not_duplicate_handlers(self):
        path = os.path.join(self.tmp.name, "a.log")
        setup_logging(path, "info")
        setup_logging(path, "info")
        self.assertEqual(len(logging.getLogger().handlers), 1)

    def test_silent_suppresses_everything(self):
        path = os.path.join(self.tmp.name, "silent.log")
        setup_logging(path, "silent")
        logging.getLogger("mihomo_tui.test").critical("nope")
        logging.getLogger().handlers[0].flush()
        with open(path, encoding="utf-8") as f:
            self.assertNotIn("nope", f.read())

    def test_warnings_end_up_in_log_file(self):
        path = os.path.join(self.tmp.name, "warn.log")
        setup_logging(path, "warning")
        with warnings.catch_warnings():
            warnings.simplefilter("always")
            warnings.warn("rule 3 state differs from server", UserWarning)
        logging.getLogger().handlers[0].flush()
        with open(path, encoding="utf-8") as f:
            self.assertIn("rule 3 state differs from server", f.read())

    def test_repeated_consistency_warnings_all_logged(self):
        path = os.path.join(self.tmp.name, "mismatch.log")
        with warnings.catch_warnings():
            setup_logging(path, "warning")
            for _ in range(3):
                warnings.warn(ConsistencyWarning("rule 3: requested enabled=False, server reports enabled=True"))
        logging.getLogger().handlers[0].flush()
        with open(path, encoding="utf-8") as f:
            self.assertEqual(f.read().count("server reports enabled=True"), 3)


class TestLogThrottled(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("mihomo_tui.test.throttle")
        self.logger.propagate = False
        self.logger.setLevel(logging.DEBUG)
        self.h = _ListHandler()
        self.logger.addHandler(self.h)

    def tearDown(self):
        self.logger.removeHandler(self.h)

    def test_suppresses_within_interval_and_reports_count(self):
        key = f"throttle-{id(self)}"
        for _ in range(3):
            log_throttled(logging.WARNING, key, "stream hiccup", interval_s=60.0, logger=self.logger)
        self.assertEqual(self.h.messages, ["stream hiccup"])

        log_throttled(logging.WARNING, key, "stream hiccup", interval_s=0.0, logger=self.logger)
        self.assertEqual(self.h.messages[-1], "stream hiccup (suppressed 2 similar messages)")


if __name__ == "__main__":
    unittest.main()
