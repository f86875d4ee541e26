"""
mihomo-tui

- Terminal dashboard for a mihomo (Clash.Meta) core via its control API.
- TUI (urwid): Overview + Connections + Proxies + Providers + Rules + Logs + Config
- All state changes go through one serialized action queue (see dispatcher.py).
"""

__version__ = "0.4.0"
__AUTHOR__ = "mihomo-tui contributors"
