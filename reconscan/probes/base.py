"""
Shared plumbing for the built-in probes.

Probes open their own httpx.AsyncClient through a client factory so tests
can swap in an httpx.MockTransport. They let httpx errors propagate; the
orchestrator records those as network failures.
"""
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import httpx

from ..cancellation import CancellationToken

ClientFactory = Callable[[], httpx.AsyncClient]

DEFAULT_HEADERS = {
    "User-Agent": "reconscan/0.1 (+authorized security testing)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}
REQUEST_TIMEOUT = 10.0


def default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(headers=DEFAULT_HEADERS, follow_redirects=False, timeout=REQUEST_TIMEOUT)


async def fetch(
    client: httpx.AsyncClient,
    url: str,
    token: CancellationToken,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    """One request, checking the token first so a cancelled probe stops between requests."""
    token.raise_if_cancelled()
    return await client.request(method, url, headers=headers)


def query_params(url: str) -> List[str]:
    return [name for name, _ in parse_qsl(urlparse(url).query, keep_blank_values=True)]


def with_param(url: str, name: str, value: str) -> str:
    """Return url with query parameter `name` set to `value` (added if absent)."""
    parsed = urlparse(url)
    params = parse_qsl(parsed.query, keep_blank_values=True)
    replaced = False
    updated = []
    for key, current in params:
        if key == name and not replaced:
            updated.append((key, value))
            replaced = True
        elif key != name:
            updated.append((key, current))
    if not replaced:
        updated.append((name, value))
    return urlunparse(parsed._replace(query=urlencode(updated)))


def params_to_test(url: str, fallback: List[str]) -> List[str]:
    return query_params(url) or list(fallback)


def site_root(url: str) -> str:
    parsed = urlparse(url)
    return urlunparse((parsed.scheme, parsed.netloc, "/", "", "", ""))


def join_path(url: str, path: str) -> str:
    return urljoin(site_root(url), path)


def is_html(response: httpx.Response) -> bool:
    return "html" in response.headers.get("content-type", "").lower()
