from __future__ import annotations

import time
from datetime import datetime
from typing import List, Optional, Tuple

BYTE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")

# latency thresholds (ms)
DELAY_FAST_MS = 500
DELAY_SLOW_MS = 1000


def human_bytes(n: float, suffix: str = "") -> str:
    """1536 -> '1.5 KB'; plain bytes carry no decimals."""
    sign = "-" if n < 0 else ""
    size = abs(float(n))
    unit = 0
    while size >= 1024.0 and unit < len(BYTE_UNITS) - 1:
        size /= 1024.0
        unit += 1
    if unit == 0:
        return f"{sign}{int(size)} {BYTE_UNITS[0]}{suffix}"
    return f"{sign}{size:.1f} {BYTE_UNITS[unit]}{suffix}"


def fmt_ts(ts: float) -> str:
    return time.strftime("%H:%M:%S", time.localtime(ts))


def fmt_full(ts: float) -> str:
    lt = time.localtime(ts)
    ms = int((ts - int(ts)) * 1000)
    return time.strftime("%Y-%m-%d %H:%M:%S", lt) + f".{ms:03d}"


def parse_rfc3339(s: Optional[str]) -> Optional[float]:
    """RFC3339(Nano) string from the core -> unix ts; None if unparseable."""
    if not s:
        return None
    txt = s.strip()
    if txt.endswith("Z"):
        txt = txt[:-1] + "+00:00"
    # fromisoformat only takes up to microseconds
    if "." in txt:
        head, rest = txt.split(".", 1)
        frac = ""
        i = 0
        while i < len(rest) and rest[i].isdigit():
            frac += rest[i]
            i += 1
        txt = f"{head}.{frac[:6].ljust(6, '0')}{rest[i:]}"
    try:
        return datetime.fromisoformat(txt).timestamp()
    except ValueError:
        return None


def fmt_rfc3339(s: Optional[str]) -> str:
    ts = parse_rfc3339(s)
    if ts is None:
        return s or "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def fmt_age(seconds: float) -> str:
    s = max(0, int(seconds))
    if s < 60:
        return f"{s}s"
    if s < 3600:
        return f"{s // 60}m{s % 60:02d}s"
    if s < 86400:
        return f"{s // 3600}h{(s % 3600) // 60:02d}m"
    return f"{s // 86400}d{(s % 86400) // 3600:02d}h"


def delay_label(delay: Optional[int]) -> str:
    if delay is None or delay <= 0:
        return "-"
    return f"{delay}ms"


def delay_attr(delay: Optional[int]) -> str:
    """Palette attr name for a latency value."""
    if delay is None or delay <= 0:
        return "delay_none"
    if delay < DELAY_FAST_MS:
        return "delay_fast"
    if delay < DELAY_SLOW_MS:
        return "delay_medium"
    return "delay_slow"


# Rule payloads
def _strip_parens(s: str) -> str:
    s = s.strip()
    if len(s) >= 2 and s.startswith("(") and s.endswith(")"):
        return s[1:-1]
    return s


def _split_inner(item: str) -> Tuple[str, str]:
    content = _strip_parens(item)
    if "," in content:
        t, p = content.split(",", 1)
        return t.strip(), p.strip()
    return content.strip(), ""


def _split_logic(payload: str) -> List[Tuple[str, str]]:
    content = payload.strip()
    if len(content) < 2:
        return []
    inner = _strip_parens(content)
    out: List[Tuple[str, str]] = []
    depth = 0
    start = 0
    for i, c in enumerate(inner):
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
        elif c == "," and depth == 0:
            if i > start:
                out.append(_split_inner(inner[start:i]))
            start = i + 1
    if start < len(inner):
        out.append(_split_inner(inner[start:]))
    return out


def _format_single(t: str, p: str) -> str:
    fp = format_rule_payload(t, p)
    return f"{t}: {fp}" if fp else t


def format_rule_payload(rule_type: str, payload: str) -> str:
    """
    Human form of logic rule payloads.

      AND ((DOMAIN,baidu.com),(NETWORK,UDP)) -> "DOMAIN: baidu.com, NETWORK: UDP"
      SUB-RULE (NETWORK,tcp)                 -> "NETWORK: tcp"

    Other rule types are returned unchanged.
    """
    rt = (rule_type or "").upper()
    if rt in ("AND", "OR", "NOT"):
        return ", ".join(_format_single(t, p) for t, p in _split_logic(payload))
    if rt == "SUB-RULE":
        t, p = _split_inner(payload)
        return _format_single(t, p)
    return payload
