from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import traceback
from typing import Optional

from . import __version__
from .actions import (
    TAB_CONFIG,
    TAB_PROXIES,
    TAB_PROXY_PROVIDERS,
    TAB_RULE_PROVIDERS,
    TAB_RULES,
    Refresh,
    VersionLoaded,
)
from .api import MihomoApi
from .config import AppConfig, discover_config, dump_example_config, load_config
from .dispatcher import Dispatcher
from .errors import ConfigError, ConnectError
from .logsetup import setup_logging
from .pumps import StreamPumps

LOG = logging.getLogger("mihomo_tui.cli")

EXIT_OK = 0
EXIT_ERROR = 2

# loaded once at startup; streams cover the rest
INITIAL_REFRESH = (TAB_PROXIES, TAB_PROXY_PROVIDERS, TAB_RULES, TAB_RULE_PROVIDERS, TAB_CONFIG)


def _stderr_dir(log_path: Optional[str]) -> str:
    try:
        if log_path:
            log_dir = os.path.dirname(os.path.abspath(os.path.expanduser(log_path))) or os.getcwd()
        else:
            log_dir = os.getcwd()
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        log_dir = os.getcwd()
    return log_dir


def run_tui_sync(cfg: AppConfig) -> int:
    # imported here so --check/--dump-example-config never touch the terminal library
    from .tui import TuiApp

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    api = MihomoApi(cfg)
    try:
        # fail fast, before the screen is taken over
        version = loop.run_until_complete(api.connect())
    except ConnectError as e:
        loop.run_until_complete(api.aclose())
        loop.close()
        print(f"Connect error: {e}", file=sys.stderr)
        return EXIT_ERROR

    # 1) stderr goes to a file while the TUI owns the terminal
    err_path = os.path.join(_stderr_dir(cfg.log_file), "tui-stderr.log")
    old_stderr = sys.stderr
    sys.stderr = open(err_path, "a", encoding="utf-8")

    # 2) asyncio exception handler -> same file
    def _loop_exc_handler(_loop, context):
        msg = context.get("message", "asyncio exception")
        exc = context.get("exception")
        sys.stderr.write("\n[asyncio] " + msg + "\n")
        if exc:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            sys.stderr.write(repr(context) + "\n")
        sys.stderr.flush()

    loop.set_exception_handler(_loop_exc_handler)

    dispatcher = Dispatcher(api)
    pumps = StreamPumps(api, dispatcher.dispatch)
    dispatcher.stream_starter = pumps.start
    app = TuiApp(dispatcher, loop=loop)

    tasks = []

    def _start():
        dispatcher.dispatch(VersionLoaded(version))
        for kind in INITIAL_REFRESH:
            dispatcher.dispatch(Refresh(kind))
        tasks.append(loop.create_task(dispatcher.run()))
        # pumps need the running loop
        loop.call_soon(pumps.start_all)

    try:
        app.run(on_start=_start)
    finally:
        try:
            loop.run_until_complete(pumps.stop_all())
            loop.run_until_complete(dispatcher.cancel_effects())
            loop.run_until_complete(api.aclose())
        except Exception:
            LOG.error("shutdown failed", exc_info=True)

        pending = asyncio.all_tasks(loop)
        for t in pending:
            t.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        try:
            loop.close()
        finally:
            sys.stderr.close()
            sys.stderr = old_stderr
    return EXIT_OK


async def _probe(cfg: AppConfig) -> str:
    api = MihomoApi(cfg)
    try:
        return str(await api.connect())
    finally:
        await api.aclose()


def cmd_check(config_path: Optional[str]) -> int:
    try:
        path = discover_config(config_path)
        cfg = load_config(path)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_ERROR
    try:
        ver = asyncio.run(_probe(cfg))
    except ConnectError as e:
        print(f"Connect error: {e}", file=sys.stderr)
        return EXIT_ERROR
    print(f"OK ({path}: {cfg.mihomo_api}, {ver})")
    return EXIT_OK


def main():
    p = argparse.ArgumentParser(
        prog="mihomo-tui",
        description=(
            "Terminal dashboard for a mihomo (Clash-Meta) core.\n"
            "Talks to the core's RESTful control API (mihomo-api in the config).\n\n"
            "Config discovery without --config:\n"
            "  ./config.yaml, then $XDG_CONFIG_HOME/mihomo-tui/config.yaml\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("-c", "--config", default=None,
                   help="Path to config YAML (default: discovered, see above)")
    p.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")

    g = p.add_mutually_exclusive_group()
    g.add_argument("--check", action="store_true", help="Validate config, probe the API and exit.")
    g.add_argument("--dump-example-config", action="store_true", help="Print example config and exit.")

    args = p.parse_args()

    if args.dump_example_config:
        print(dump_example_config())
        return

    if args.check:
        raise SystemExit(cmd_check(args.config))

    try:
        cfg = load_config(discover_config(args.config))
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        raise SystemExit(EXIT_ERROR)

    # logging only when log-file is configured
    setup_logging(cfg.log_file, cfg.log_level)
    LOG.info("mihomo-tui %s starting (config %s)", __version__, cfg.source_path)

    raise SystemExit(run_tui_sync(cfg))


if __name__ == "__main__":
    main()
