from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

import yaml

from .errors import ConfigError
from .logsetup import DEFAULT_LOG_LEVEL, LOG_LEVELS

DEFAULT_TEST_URL = "https://www.gstatic.com/generate_204"
DEFAULT_TEST_TIMEOUT_MS = 5000
DEFAULT_LOG_STREAM_LEVEL = "info"
LOG_STREAM_LEVELS = ("debug", "info", "warning", "error", "silent")

CONFIG_FILENAME = "config.yaml"


# Config model
@dataclass
class AppConfig:
    mihomo_api: str
    mihomo_secret: Optional[str] = None
    log_file: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL

    # health checks (GET /proxies/<name>/delay)
    proxy_test_url: str = DEFAULT_TEST_URL
    proxy_test_timeout: int = DEFAULT_TEST_TIMEOUT_MS

    # level requested from the core's /logs stream
    log_stream_level: str = DEFAULT_LOG_STREAM_LEVEL

    source_path: Optional[str] = None


def dump_example_config() -> str:
    example = {
        "mihomo-api": "http://127.0.0.1:9090",
        "mihomo-secret": None,
        "log-file": None,
        "log-level": DEFAULT_LOG_LEVEL,
        "proxy-test-url": DEFAULT_TEST_URL,
        "proxy-test-timeout": DEFAULT_TEST_TIMEOUT_MS,
        "log-stream-level": DEFAULT_LOG_STREAM_LEVEL,
    }
    return yaml.safe_dump(example, sort_keys=False)


def candidate_paths() -> List[str]:
    """Config discovery order when no --config is given."""
    xdg = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return [
        os.path.join(os.getcwd(), CONFIG_FILENAME),
        os.path.join(xdg, "mihomo-tui", CONFIG_FILENAME),
    ]


def discover_config(explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit
    for p in candidate_paths():
        if os.path.isfile(p):
            return p
    raise ConfigError(
        "no config file found (tried: " + ", ".join(candidate_paths()) + "); "
        "use --config or --dump-example-config"
    )


def _validate_api_url(url: str) -> str:
    u = urlparse(url)
    if u.scheme not in ("http", "https") or not u.netloc:
        raise ConfigError(f"mihomo-api must be an http(s) URL, got {url!r}")
    return url.rstrip("/")


def parse_config(raw: object, source_path: Optional[str] = None) -> AppConfig:
    if not isinstance(raw, dict):
        raise ConfigError("Config must be a mapping with at least 'mihomo-api'")

    api = raw.get("mihomo-api")
    if not api:
        raise ConfigError("'mihomo-api' is required")

    secret = raw.get("mihomo-secret")
    secret = str(secret) if secret not in (None, "") else None

    log_level = str(raw.get("log-level") or DEFAULT_LOG_LEVEL).lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(
            f"log-level must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}"
        )

    stream_level = str(raw.get("log-stream-level") or DEFAULT_LOG_STREAM_LEVEL).lower()
    if stream_level not in LOG_STREAM_LEVELS:
        raise ConfigError(
            f"log-stream-level must be one of {', '.join(LOG_STREAM_LEVELS)}, got {stream_level!r}"
        )

    try:
        timeout = int(raw.get("proxy-test-timeout", DEFAULT_TEST_TIMEOUT_MS))
    except (TypeError, ValueError):
        raise ConfigError("proxy-test-timeout must be an integer (milliseconds)") from None
    if timeout <= 0:
        raise ConfigError("proxy-test-timeout must be positive")

    log_file = raw.get("log-file")

    return AppConfig(
        mihomo_api=_validate_api_url(str(api)),
        mihomo_secret=secret,
        log_file=str(log_file) if log_file else None,
        log_level=log_level,
        proxy_test_url=str(raw.get("proxy-test-url") or DEFAULT_TEST_URL),
        proxy_test_timeout=timeout,
        log_stream_level=stream_level,
        source_path=source_path,
    )


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    return parse_config(raw, source_path=path)
