"""Gem sources backed by an upstream server.

A source pairs an upstream selector with a gem-fetch strategy. All sources share
one handler table keyed by :class:`Endpoint`: readable endpoints redirect to the
upstream, mutating endpoints are rejected, and gem fetches go through the
source's strategy (plain redirect, or pull-through caching).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Protocol, Sequence

import structlog
from fastapi import HTTPException, Response, status
from fastapi.responses import PlainTextResponse
from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .routing import ENDPOINT_TEMPLATES, MUTATING_ENDPOINTS, PREFIX_PATTERNS, Endpoint, match_prefix
from .stats import GemCacheStats
from .storage import GemStorage
from .upstream import Upstream, UpstreamClient, UpstreamError, expand_template, resolve_url


LOGGER = structlog.get_logger("gemmirror.gem_source")
TRACER = trace.get_tracer("gemmirror.gem_source")

FORBIDDEN_MESSAGES: Mapping[Endpoint, str] = {
    Endpoint.ADD_GEM: "Cannot add gem to an upstream server!",
    Endpoint.YANK: "Cannot yank from an upstream server!",
    Endpoint.UNYANK: "Cannot unyank from an upstream server!",
    Endpoint.ADD_SPEC: "Cannot add spec to an upstream server!",
    Endpoint.REMOVE_SPEC: "Cannot remove spec from an upstream server!",
}

# Upstream response headers kept alongside a cached gem.
CACHED_HEADERS = ("Content-Type", "ETag", "Last-Modified")

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("gemmirror_gem_cache_hits_total", "Gem fetches served from the cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("gemmirror_gem_cache_misses_total", "Gem fetches not in the cache"))
UPSTREAM_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("gemmirror_upstream_failures_total", "Upstream gem fetches that failed")
)
REJECTED_WRITES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("gemmirror_rejected_writes_total", "Mutating requests rejected by upstream sources")
)
REDIRECT_COUNTER = GLOBAL_REGISTRY.register(Counter("gemmirror_redirects_total", "Requests redirected upstream"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("gemmirror_gem_bytes_served_total", "Gem bytes returned to clients")
)


@dataclass(frozen=True)
class GemRequest:
    """Everything a handler needs to answer one request; built fresh per request."""

    upstream: Upstream
    endpoint: Endpoint
    client: UpstreamClient
    identifier: Optional[str] = None
    query_string: str = ""

    def upstream_url(self) -> str:
        template = ENDPOINT_TEMPLATES[self.endpoint]
        return resolve_url(self.upstream, template, self.identifier, self.query_string)


class UpstreamSelector(Protocol):
    def select(self, raw_path: str) -> Optional[tuple[Upstream, str]]: ...


class PathUpstreamSelector:
    """Takes the upstream URL from a percent-encoded path segment, e.g. ``/upstream/<url>/...``."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self._pattern = PREFIX_PATTERNS[prefix]

    def select(self, raw_path: str) -> Optional[tuple[Upstream, str]]:
        route = match_prefix(raw_path, self._pattern)
        if not route.matched:
            return None
        return Upstream(route.identifier), route.remainder


class ConfiguredUpstreamSelector:
    """Always applicable; uses the configured default upstream and leaves the path alone."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url

    def select(self, raw_path: str) -> Optional[tuple[Upstream, str]]:
        return Upstream(self._base_url), raw_path


class GemFetchStrategy(Protocol):
    async def serve(self, request: GemRequest) -> Response: ...


class RedirectGemFetch:
    async def serve(self, request: GemRequest) -> Response:
        return redirect_upstream(request)


def select_properties(headers: Mapping[str, str], content: bytes) -> dict[str, str]:
    properties = {name: headers[name] for name in CACHED_HEADERS if headers.get(name)}
    properties["Content-Length"] = str(len(content))
    return properties


class CachingGemFetch:
    """Serves gems from storage, populating it from the upstream on a miss.

    Concurrent misses for the same gem may each fetch and save; released gems
    never change, so the duplicate work converges on the same entry.
    """

    def __init__(self, storage: GemStorage, stats: Optional[GemCacheStats] = None) -> None:
        self._storage = storage
        self._stats = stats

    async def serve(self, request: GemRequest) -> Response:
        gem_id = request.identifier
        upstream = str(request.upstream)
        with TRACER.start_as_current_span(
            "gem_source.fetch_gem",
            attributes={"gemmirror.gem_id": gem_id, "gemmirror.upstream": upstream},
        ) as span:
            if await self._storage.exists(gem_id):
                resource = await self._storage.load(gem_id)
                LOGGER.info("gem_cache_hit", gem_id=gem_id, upstream=upstream, bytes=len(resource.content))
                HIT_COUNTER.inc()
                self._record_stats(True, gem_id, upstream, len(resource.content))
                span.set_attribute("gemmirror.cache_hit", True)
                content, properties = resource.content, resource.properties
            else:
                LOGGER.info("gem_cache_miss", gem_id=gem_id, upstream=upstream)
                MISS_COUNTER.inc()
                span.set_attribute("gemmirror.cache_hit", False)
                content, properties = await self._fetch_remote(request)
                self._record_stats(False, gem_id, upstream, len(content))
            BYTES_SERVED_COUNTER.inc(len(content))
            return Response(content=content, status_code=status.HTTP_200_OK, headers=dict(properties))

    def _record_stats(self, hit: bool, gem_id: str, upstream: str, size: int) -> None:
        """Stats are best effort; a failed write never fails the fetch."""
        if self._stats is None:
            return
        recorder = self._stats.record_hit if hit else self._stats.record_miss
        try:
            recorder(gem_id, upstream, size)
        except SQLAlchemyError as exc:
            LOGGER.warning("gem_stats_failed", gem_id=gem_id, upstream=upstream, error=str(exc))

    async def _fetch_remote(self, request: GemRequest) -> tuple[bytes, dict[str, str]]:
        gem_id = request.identifier
        path = expand_template(ENDPOINT_TEMPLATES[Endpoint.GEM_FETCH], gem_id)
        try:
            body, headers = await request.client.get(path)
        except UpstreamError as exc:
            UPSTREAM_FAILURE_COUNTER.inc()
            LOGGER.warning(
                "upstream_fetch_failed",
                gem_id=gem_id,
                upstream=str(request.upstream),
                status=exc.status_code,
            )
            raise HTTPException(status_code=exc.status_code, detail=f"Upstream returned {exc.status_code}") from exc

        properties = select_properties(headers, body)
        await self._storage.save(gem_id, body, properties)
        LOGGER.info("gem_cached", gem_id=gem_id, upstream=str(request.upstream), bytes=len(body))
        return body, properties


@dataclass(frozen=True)
class GemSource:
    name: str
    selector: UpstreamSelector
    gem_fetch: GemFetchStrategy
    root_cache_max_age: int


@dataclass(frozen=True)
class SourceSelection:
    source: GemSource
    upstream: Upstream
    path: str


def select_source(sources: Sequence[GemSource], raw_path: str) -> Optional[SourceSelection]:
    """Pick the first source whose selector accepts ``raw_path``."""

    for source in sources:
        selected = source.selector.select(raw_path)
        if selected is not None:
            upstream, path = selected
            return SourceSelection(source=source, upstream=upstream, path=path)
    return None


def build_sources(
    rubygems_url: str,
    storage: GemStorage,
    stats: Optional[GemCacheStats] = None,
    root_cache_max_age: int = 31_536_000,
) -> tuple[GemSource, ...]:
    """Build the source variants in matching order; the configured default comes last."""

    caching = CachingGemFetch(storage, stats)
    return (
        GemSource("redirect", PathUpstreamSelector("redirect"), RedirectGemFetch(), root_cache_max_age),
        GemSource("upstream", PathUpstreamSelector("upstream"), caching, root_cache_max_age),
        GemSource("default", ConfiguredUpstreamSelector(rubygems_url), caching, root_cache_max_age),
    )


def redirect_upstream(request: GemRequest) -> Response:
    # Location is sent as resolved; the client query string must reach the upstream untouched.
    url = request.upstream_url()
    REDIRECT_COUNTER.inc()
    LOGGER.debug("redirected", endpoint=request.endpoint.value, location=url)
    return Response(status_code=status.HTTP_302_FOUND, headers={"location": url})


Handler = Callable[[GemSource, GemRequest], Awaitable[Response]]


async def _serve_root(source: GemSource, request: GemRequest) -> Response:
    response = redirect_upstream(request)
    response.headers["Cache-Control"] = f"public, max-age={source.root_cache_max_age}"
    return response


async def _serve_redirect(source: GemSource, request: GemRequest) -> Response:
    return redirect_upstream(request)


async def _reject_write(source: GemSource, request: GemRequest) -> Response:
    REJECTED_WRITES_COUNTER.inc()
    LOGGER.info("write_rejected", endpoint=request.endpoint.value, source=source.name)
    return PlainTextResponse(FORBIDDEN_MESSAGES[request.endpoint], status_code=status.HTTP_403_FORBIDDEN)


async def _serve_gem(source: GemSource, request: GemRequest) -> Response:
    return await source.gem_fetch.serve(request)


HANDLERS: Mapping[Endpoint, Handler] = {
    **{endpoint: _reject_write for endpoint in MUTATING_ENDPOINTS},
    Endpoint.ROOT: _serve_root,
    Endpoint.DEPENDENCIES: _serve_redirect,
    Endpoint.DEPENDENCIES_JSON: _serve_redirect,
    Endpoint.NAMES: _serve_redirect,
    Endpoint.VERSIONS: _serve_redirect,
    Endpoint.INFO: _serve_redirect,
    Endpoint.QUICK_MARSHAL: _serve_redirect,
    Endpoint.FETCH_ACTUAL: _serve_redirect,
    Endpoint.GEM_FETCH: _serve_gem,
    Endpoint.LATEST_SPECS: _serve_redirect,
    Endpoint.SPECS: _serve_redirect,
    Endpoint.PRERELEASE_SPECS: _serve_redirect,
}


async def dispatch(source: GemSource, request: GemRequest) -> Response:
    return await HANDLERS[request.endpoint](source, request)
