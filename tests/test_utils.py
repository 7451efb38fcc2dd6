from unittest import mock

import pytest

from wallog.utils.datetime import format_http_date
from wallog.utils.datetime import isoformat
from wallog.utils.datetime import parse_isoformat
from wallog.utils.url import is_hostname_blocked
from wallog.utils.url import is_url_valid


@pytest.mark.parametrize(
    "url",
    [
        "ftp://remote.example/users/bob",
        "https:///users/bob",
        "http://localhost:8000/users/bob",
        "https://blocked.example/users/bob",
        "https://sub.blocked.example/users/bob",
    ],
)
def test_is_url_valid__invalid(url: str) -> None:
    assert is_url_valid(url, blocked_servers=frozenset({"blocked.example"})) is False


def test_is_url_valid__private_ip() -> None:
    with mock.patch("wallog.utils.url._getaddrinfo", return_value="10.0.0.1"):
        assert is_url_valid("https://remote.example/users/bob") is False

    with mock.patch("wallog.utils.url._getaddrinfo", return_value="1.2.3.4"):
        assert is_url_valid("https://remote.example/users/bob") is True

    # Local instances are reachable in debug mode
    assert is_url_valid("http://localhost:8000/users/bob", allow_private=True)


def test_is_hostname_blocked() -> None:
    blocked = frozenset({"blocked.example"})

    assert is_hostname_blocked("blocked.example", blocked)
    assert is_hostname_blocked("a.blocked.example", blocked)
    assert not is_hostname_blocked("notblocked.example", blocked)


def test_datetime_helpers() -> None:
    dt = parse_isoformat("2022-07-01T12:30:00+02:00")

    assert isoformat(dt) == "2022-07-01T10:30:00Z"
    assert format_http_date(dt) == "Fri, 01 Jul 2022 10:30:00 GMT"
