import pytest

from torotator.log_parsers import (
    classify_haproxy_line,
    classify_plain,
    classify_privoxy_line,
    classify_tor_line,
)


@pytest.mark.parametrize(
    "line, expected",
    [
        ("May 03 12:34:56.789 [notice] Bootstrapped 100% (done): Done", ("info", "Bootstrapped 100% (done): Done")),
        ("Oct  5 01:02:03.000 [warn] Socks version 71 not recognized.", ("warn", "Socks version 71 not recognized.")),
        ("May 03 12:34:56.789 [err] Reading config failed", ("error", "Reading config failed")),
        ("May 03 12:34:56.789 [debug] conn_read_callback", ("debug", "conn_read_callback")),
        ("May 03 12:34:56.789 [chatty] something new", ("info", "something new")),
        ("unexpected banner", ("info", "unexpected banner")),
    ],
)
def test_classify_tor_line(line, expected):
    assert classify_tor_line(line) == expected


@pytest.mark.parametrize(
    "line, expected",
    [
        (
            "2024-05-03 12:34:56.789 7f2a9c3fe700 Fatal error: can't bind to 127.0.0.1:30001",
            ("error", "can't bind to 127.0.0.1:30001"),
        ),
        (
            "2024-05-03 12:34:56.789 7f2a9c3fe700 Error: connect to 127.0.0.1:30000 failed",
            ("error", "connect to 127.0.0.1:30000 failed"),
        ),
        (
            "2024-05-03 12:34:56.789 7f2a9c3fe700 Info: Listening on port 30001 on IP address 127.0.0.1",
            ("info", "Listening on port 30001 on IP address 127.0.0.1"),
        ),
        (
            "2024-05-03 12:34:56.789 7f2a9c3fe700 Request: www.example.com/",
            ("info", "www.example.com/"),
        ),
        ("Privoxy version 3.0.34", ("info", "Privoxy version 3.0.34")),
    ],
)
def test_classify_privoxy_line(line, expected):
    assert classify_privoxy_line(line) == expected


@pytest.mark.parametrize(
    "line, expected",
    [
        ("[NOTICE]   (1) : New worker (12) forked", ("info", "New worker (12) forked")),
        (
            "[WARNING] 288/213000 (7) : Proxy privoxies stopped (cumulated conns: FE: 0, BE: 0).",
            ("warn", "Proxy privoxies stopped (cumulated conns: FE: 0, BE: 0)."),
        ),
        (
            "[ALERT]    (1) : Starting frontend rotating_proxies: cannot bind socket (Address in use) [0.0.0.0:8080]",
            ("error", "Starting frontend rotating_proxies: cannot bind socket (Address in use) [0.0.0.0:8080]"),
        ),
        ("backend privoxies has no server available!", ("info", "backend privoxies has no server available!")),
    ],
)
def test_classify_haproxy_line(line, expected):
    assert classify_haproxy_line(line) == expected


def test_classify_plain_passes_through():
    assert classify_plain("anything [warn] at all") == ("info", "anything [warn] at all")
