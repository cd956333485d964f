"""
Shared HTTP session for ShardFetch.

One requests.Session serves every wave: a pooled HTTPAdapter with transport
retries disabled, a fixed browser User-Agent, and an optional upstream proxy.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/127.0.0.0 Safari/537.36"
)

PROXY_SCHEMES = ("http", "https", "socks5", "socks5h")

# Stands in for the TLS handshake timeout
CONNECT_TIMEOUT_SEC = 5.0

POOL_CONNECTIONS = 100


class ProxyConfigError(ValueError):
    """Configured proxy URL can't be used."""


def parse_proxy_url(proxy_url: str) -> str:
    """
    Validate a proxy URL.

    Args:
        proxy_url: e.g. "http://127.0.0.1:7890"

    Returns:
        The stripped proxy URL

    Raises:
        ProxyConfigError: On unknown scheme, missing host or bad port
    """
    proxy_url = proxy_url.strip()
    try:
        parts = urlsplit(proxy_url)
        port = parts.port
    except ValueError as e:
        raise ProxyConfigError(f"Cannot parse proxy URL {proxy_url!r}: {e}") from e

    if parts.scheme.lower() not in PROXY_SCHEMES:
        raise ProxyConfigError(f"Unsupported proxy scheme in {proxy_url!r}")
    if not parts.hostname:
        raise ProxyConfigError(f"Missing proxy host in {proxy_url!r}")
    if port == 0:
        raise ProxyConfigError(f"Invalid proxy port in {proxy_url!r}")
    return proxy_url


def request_timeout(timeout_sec: float) -> tuple[float, float]:
    """(connect, read) timeout pair for requests."""
    return (min(CONNECT_TIMEOUT_SEC, timeout_sec), timeout_sec)


def build_session(
    max_concurrent: int,
    proxy_url: str = "",
    use_proxy: bool = False,
) -> requests.Session:
    """
    Create the process-wide session.

    A non-empty proxy_url is validated even when use_proxy is off.

    Raises:
        ProxyConfigError: If proxy_url is set but invalid
    """
    proxy: Optional[str] = parse_proxy_url(proxy_url) if proxy_url.strip() else None

    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=POOL_CONNECTIONS,
        pool_maxsize=max(max_concurrent, 1),
        max_retries=Retry(total=0, read=False, raise_on_status=False),
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": BROWSER_USER_AGENT})

    if use_proxy:
        if proxy is None:
            raise ProxyConfigError("use_proxy is enabled but proxy_url is empty")
        session.proxies.update({"http": proxy, "https": proxy})
        print(f"[Proxy] Using proxy: {proxy}")
    else:
        # Ignore HTTP(S)_PROXY from the environment
        session.trust_env = False
        print("[Proxy] Direct connection")
    return session
