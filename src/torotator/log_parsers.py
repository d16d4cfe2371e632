"""Per-program classifiers for supervised process output.

Each classifier maps one raw output line to a normalized level (``debug``,
``info``, ``warn`` or ``error``) and the message with its prefix stripped.
Lines that do not match the program's format come back unchanged at ``info``.
"""

from __future__ import annotations

import re
from typing import Callable, Dict, Tuple

LogClassifier = Callable[[str], Tuple[str, str]]

# May 03 12:34:56.789 [notice] Bootstrapped 100% (done): Done
_TOR_LINE = re.compile(r"^\w{3} +\d{1,2} [\d:.]+ \[(?P<level>\w+)\] ?(?P<message>.*)$")

# 2024-05-03 12:34:56.789 7f2a9c3fe700 Fatal error: can't bind to 127.0.0.1:30001
_PRIVOXY_LINE = re.compile(
    r"^\d{4}-\d{2}-\d{2} [\d:.]+ [0-9a-fA-F]+ (?P<level>[A-Za-z][\w -]*?): ?(?P<message>.*)$"
)

# [WARNING]  (1234) : Proxy privoxies stopped (cumulated conns: FE: 0, BE: 0).
_HAPROXY_LINE = re.compile(r"^\[(?P<level>[A-Z]+)\][^:]*: ?(?P<message>.*)$")

_TOR_LEVELS: Dict[str, str] = {
    "debug": "debug",
    "info": "info",
    "notice": "info",
    "warn": "warn",
    "err": "error",
}

_PRIVOXY_LEVELS: Dict[str, str] = {
    "fatal error": "error",
    "error": "error",
    "warning": "warn",
}

_HAPROXY_LEVELS: Dict[str, str] = {
    "emerg": "error",
    "alert": "error",
    "warning": "warn",
    "notice": "info",
    "info": "info",
    "debug": "debug",
}


def classify_plain(line: str) -> Tuple[str, str]:
    return "info", line


def classify_tor_line(line: str) -> Tuple[str, str]:
    match = _TOR_LINE.match(line)
    if not match:
        return "info", line
    return _TOR_LEVELS.get(match["level"].lower(), "info"), match["message"]


def classify_privoxy_line(line: str) -> Tuple[str, str]:
    match = _PRIVOXY_LINE.match(line)
    if not match:
        return "info", line
    return _PRIVOXY_LEVELS.get(match["level"].lower(), "info"), match["message"]


def classify_haproxy_line(line: str) -> Tuple[str, str]:
    match = _HAPROXY_LINE.match(line)
    if not match:
        return "info", line
    return _HAPROXY_LEVELS.get(match["level"].lower(), "info"), match["message"]
