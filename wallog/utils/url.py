import functools
import ipaddress
import socket
from urllib.parse import urlparse

from loguru import logger

_DEFAULT_PORTS = {"http": 80, "https": 443}


class InvalidURLError(Exception):
    pass


@functools.lru_cache(maxsize=256)
def _getaddrinfo(hostname: str, port: int) -> str:
    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        pass

    ip_address = socket.getaddrinfo(hostname, port)[0][4][0]
    logger.debug(f"DNS lookup: {hostname} -> {ip_address}")
    return ip_address


def is_hostname_blocked(hostname: str, blocked_servers: frozenset[str]) -> bool:
    """Matches the blocked server itself and any of its subdomains."""
    hostname = hostname.lower()
    return any(
        hostname == blocked or hostname.endswith(f".{blocked}")
        for blocked in blocked_servers
    )


def _resolves_to_private_address(hostname: str, port: int) -> bool:
    if hostname == "localhost" or hostname.endswith(".onion"):
        return True

    try:
        ip_address = _getaddrinfo(hostname, port)
    except socket.gaierror:
        logger.info(f"Cannot resolve {hostname}")
        return True

    return ipaddress.ip_address(ip_address).is_private


def is_url_valid(
    url: str,
    allow_private: bool = False,
    blocked_servers: frozenset[str] = frozenset(),
) -> bool:
    """SSRF guard for every outbound request.

    Only http(s) URLs are allowed, blocked servers are always refused, and
    unless `allow_private` is set (debug mode, to federate with local
    instances) the host must resolve to a public address.
    """
    parsed = urlparse(url)
    if parsed.scheme not in _DEFAULT_PORTS or not parsed.hostname:
        return False

    if is_hostname_blocked(parsed.hostname, blocked_servers):
        logger.warning(f"{parsed.hostname} is blocked")
        return False

    if allow_private:
        return True

    port = parsed.port or _DEFAULT_PORTS[parsed.scheme]
    if _resolves_to_private_address(parsed.hostname.lower(), port):
        logger.info(f"Rejecting non-public URL {url}")
        return False

    return True


@functools.lru_cache(maxsize=512)
def check_url(
    url: str,
    allow_private: bool = False,
    blocked_servers: frozenset[str] = frozenset(),
) -> None:
    if not is_url_valid(url, allow_private, blocked_servers):
        raise InvalidURLError(f'"{url}" is invalid')
