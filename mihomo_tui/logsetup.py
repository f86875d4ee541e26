from __future__ import annotations

import logging
import os
import sys
import time
import warnings
from logging.handlers import RotatingFileHandler
from typing import Optional

from .errors import ConsistencyWarning

# quiet asyncio noise (e.g. "Task was destroyed but it is pending" on shutdown)
logging.getLogger("asyncio").setLevel(logging.ERROR)

LOG = logging.getLogger("mihomo_tui")

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# silent is above CRITICAL so nothing passes
LOG_LEVELS = {
    "silent": logging.CRITICAL + 10,
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
DEFAULT_LOG_LEVEL = "error"

# Throttled logging (single-threaded asyncio loop)
_LOG_THROTTLE_STATE: dict[str, tuple[float, int]] = {}
# key -> (last_ts, suppressed_count)


def log_throttled(
    level: int,
    key: str,
    msg: str,
    *args,
    interval_s: float = 2.0,
    exc_info: bool = False,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    Log a message at most once per interval for a given key.

    Keeps a suppressed counter; when it logs again it appends:
      " (suppressed N similar messages)"
    """
    lg = logger or LOG
    now = time.time()
    last_ts, suppressed = _LOG_THROTTLE_STATE.get(key, (0.0, 0))

    if (now - last_ts) < float(interval_s):
        _LOG_THROTTLE_STATE[key] = (last_ts, suppressed + 1)
        return

    _LOG_THROTTLE_STATE[key] = (now, 0)
    if suppressed:
        msg = f"{msg} (suppressed {suppressed} similar messages)"
    lg.log(level, msg, *args, exc_info=exc_info)


def level_from_name(name: Optional[str]) -> int:
    """Map a config log-level name to a logging level (unknown -> error)."""
    return LOG_LEVELS.get((name or DEFAULT_LOG_LEVEL).strip().lower(), logging.ERROR)


def setup_logging(log_path: Optional[str], level: str = DEFAULT_LOG_LEVEL) -> None:
    """Configure application logging.

    Logging is only enabled when a log file is configured; otherwise the
    package logger gets a NullHandler so nothing leaks onto the terminal
    while the TUI owns it.

    Args:
        log_path: Path to the log file, or None to disable logging.
        level: One of silent/trace/debug/info/warning/error.
    """
    lvl = level_from_name(level)
    # ConsistencyWarning and friends end up in the log, not on the terminal
    logging.captureWarnings(True)
    # every mismatch is logged, not only the first one per call site
    warnings.simplefilter("always", ConsistencyWarning)

    root = logging.getLogger()
    # Avoid duplicate handlers (e.g. repeated setup in tests)
    for h in list(root.handlers):
        root.removeHandler(h)

    if not log_path:
        root.addHandler(logging.NullHandler())
        root.setLevel(lvl)
        return

    log_path = os.path.expanduser(log_path)
    d = os.path.dirname(log_path)
    if d:
        try:
            os.makedirs(d, exist_ok=True)
        except OSError:
            # fall back to current directory
            log_path = os.path.basename(log_path) or "mihomo-tui.log"

    root.setLevel(lvl)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        fh = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,   # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
        fh.setLevel(lvl)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError:
        # Last resort: stderr
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(lvl)
        sh.setFormatter(fmt)
        root.addHandler(sh)

    LOG.info("Logging initialized: %s level=%s", log_path, logging.getLevelName(lvl))
