"""Upstream gem servers and the HTTP client used to reach them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote

import httpx
import structlog
from fastapi import status


LOGGER = structlog.get_logger("gemmirror.upstream")


@dataclass(frozen=True)
class Upstream:
    """A remote gem server, identified by its base URL."""

    base_url: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    def url(self, path: Optional[str] = None, query_string: Optional[str] = None) -> str:
        query = f"?{query_string}" if query_string else ""
        return f"{self.base_url}{path or ''}{query}"

    def __str__(self) -> str:
        return self.base_url


def expand_template(template: str, identifier: Optional[str] = None) -> str:
    if "{id}" not in template:
        return template
    if identifier is None:
        raise ValueError(f"Template {template!r} requires an identifier")
    return template.replace("{id}", quote(identifier, safe=""))


def resolve_url(
    upstream: Upstream,
    template: str,
    identifier: Optional[str] = None,
    query_string: Optional[str] = None,
) -> str:
    """Build the upstream URL for an endpoint template, forwarding the query string verbatim."""

    return upstream.url(expand_template(template, identifier), query_string)


class UpstreamError(Exception):
    """An upstream request that did not produce a 2xx response."""

    def __init__(self, status_code: int, url: str, detail: str = "") -> None:
        super().__init__(f"{url} returned {status_code}{': ' + detail if detail else ''}")
        self.status_code = status_code
        self.url = url


class UpstreamClient:
    """Issues GET requests against one upstream using a shared ``httpx.AsyncClient``."""

    def __init__(self, http_client: httpx.AsyncClient, upstream: Upstream) -> None:
        self._http = http_client
        self._upstream = upstream

    @property
    def upstream(self) -> Upstream:
        return self._upstream

    async def get(self, path: str, query: Optional[str] = None) -> tuple[bytes, Mapping[str, str]]:
        url = self._upstream.url(path, query)
        try:
            response = await self._http.get(url, follow_redirects=True)
        except httpx.TimeoutException as exc:
            LOGGER.warning("upstream_timeout", url=url)
            raise UpstreamError(status.HTTP_504_GATEWAY_TIMEOUT, url, "timed out") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.warning("upstream_unreachable", url=url, error=str(exc))
            raise UpstreamError(status.HTTP_502_BAD_GATEWAY, url, str(exc)) from exc

        if not response.is_success:
            raise UpstreamError(response.status_code, url)
        return response.content, response.headers


def build_http_client(timeout_seconds: float, max_connections: int, user_agent: str) -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max(1, max_connections // 2))
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        limits=limits,
        headers={"User-Agent": user_agent},
    )
