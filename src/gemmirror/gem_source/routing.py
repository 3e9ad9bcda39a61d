"""Request path classification for gem sources.

Two layers live here. ``match_prefix`` decides whether a raw request path
belongs to a prefixed source (``/redirect/<url>/...`` or ``/upstream/<url>/...``)
and strips that prefix. ``match_endpoint`` maps the remaining path and HTTP
method onto one of the closed set of :class:`Endpoint` values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import unquote


class Endpoint(str, Enum):
    ROOT = "root"
    ADD_GEM = "add-gem"
    YANK = "yank"
    UNYANK = "unyank"
    ADD_SPEC = "add-spec"
    REMOVE_SPEC = "remove-spec"
    DEPENDENCIES = "dependencies"
    DEPENDENCIES_JSON = "dependencies-json"
    NAMES = "names"
    VERSIONS = "versions"
    INFO = "info"
    QUICK_MARSHAL = "quick-marshal"
    FETCH_ACTUAL = "fetch-actual"
    GEM_FETCH = "gem-fetch"
    LATEST_SPECS = "latest-specs"
    SPECS = "specs"
    PRERELEASE_SPECS = "prerelease-specs"


# Upstream path per endpoint. ``{id}`` is replaced by the percent-encoded identifier.
ENDPOINT_TEMPLATES: Mapping[Endpoint, str] = {
    Endpoint.ROOT: "/",
    Endpoint.ADD_GEM: "/api/v1/gems",
    Endpoint.YANK: "/api/v1/gems/yank",
    Endpoint.UNYANK: "/api/v1/gems/unyank",
    Endpoint.ADD_SPEC: "/api/v1/add_spec.json",
    Endpoint.REMOVE_SPEC: "/api/v1/remove_spec.json",
    Endpoint.DEPENDENCIES: "/api/v1/dependencies",
    Endpoint.DEPENDENCIES_JSON: "/api/v1/dependencies.json",
    Endpoint.NAMES: "/names",
    Endpoint.VERSIONS: "/versions",
    Endpoint.INFO: "/info/{id}",
    Endpoint.QUICK_MARSHAL: "/quick/Marshal.4.8/{id}",
    Endpoint.FETCH_ACTUAL: "/fetch/actual/gem/{id}",
    Endpoint.GEM_FETCH: "/gems/{id}",
    Endpoint.LATEST_SPECS: "/latest_specs.4.8.gz",
    Endpoint.SPECS: "/specs.4.8.gz",
    Endpoint.PRERELEASE_SPECS: "/prerelease_specs.4.8.gz",
}

MUTATING_ENDPOINTS = frozenset(
    {Endpoint.ADD_GEM, Endpoint.YANK, Endpoint.UNYANK, Endpoint.ADD_SPEC, Endpoint.REMOVE_SPEC}
)


@dataclass(frozen=True)
class EndpointRoute:
    method: str
    pattern: re.Pattern[str]
    endpoint: Endpoint


def _route(method: str, path: str, endpoint: Endpoint) -> EndpointRoute:
    escaped = re.escape(path).replace(re.escape("{id}"), "(?P<id>[^/]+)")
    return EndpointRoute(method=method, pattern=re.compile(rf"\A{escaped}\Z"), endpoint=endpoint)


ENDPOINT_ROUTES: tuple[EndpointRoute, ...] = (
    _route("GET", "/", Endpoint.ROOT),
    _route("POST", "/api/v1/gems", Endpoint.ADD_GEM),
    _route("DELETE", "/api/v1/gems/yank", Endpoint.YANK),
    _route("PUT", "/api/v1/gems/unyank", Endpoint.UNYANK),
    _route("POST", "/api/v1/add_spec.json", Endpoint.ADD_SPEC),
    _route("POST", "/api/v1/remove_spec.json", Endpoint.REMOVE_SPEC),
    _route("GET", "/api/v1/dependencies", Endpoint.DEPENDENCIES),
    _route("GET", "/api/v1/dependencies.json", Endpoint.DEPENDENCIES_JSON),
    _route("GET", "/names", Endpoint.NAMES),
    _route("GET", "/versions", Endpoint.VERSIONS),
    _route("GET", "/info/{id}", Endpoint.INFO),
    _route("GET", "/quick/Marshal.4.8/{id}", Endpoint.QUICK_MARSHAL),
    _route("GET", "/fetch/actual/gem/{id}", Endpoint.FETCH_ACTUAL),
    _route("GET", "/gems/{id}", Endpoint.GEM_FETCH),
    _route("GET", "/latest_specs.4.8.gz", Endpoint.LATEST_SPECS),
    _route("GET", "/specs.4.8.gz", Endpoint.SPECS),
    _route("GET", "/prerelease_specs.4.8.gz", Endpoint.PRERELEASE_SPECS),
)

# Compiled once at import; sources look their prefix up here by name.
PREFIX_PATTERNS: Mapping[str, re.Pattern[str]] = {
    "redirect": re.compile(r"\A/redirect/([^/]+)"),
    "upstream": re.compile(r"\A/upstream/([^/]+)"),
}


@dataclass(frozen=True)
class RouteMatch:
    matched: bool
    identifier: Optional[str] = None
    remainder: Optional[str] = None

    @classmethod
    def miss(cls) -> "RouteMatch":
        return cls(matched=False)


def match_prefix(path: str, pattern: re.Pattern[str]) -> RouteMatch:
    """Match ``pattern`` against the start of a raw (still percent-encoded) path.

    The captured segment is percent-decoded into ``identifier`` and the consumed
    prefix is removed, leaving the endpoint path in ``remainder``.
    """

    match = pattern.match(path)
    if match is None:
        return RouteMatch.miss()
    remainder = path[match.end():] or "/"
    return RouteMatch(matched=True, identifier=unquote(match.group(1)), remainder=remainder)


@dataclass(frozen=True)
class EndpointMatch:
    endpoint: Endpoint
    identifier: Optional[str] = None


def match_endpoint(method: str, path: str) -> Optional[EndpointMatch]:
    """Resolve an HTTP method and raw endpoint path to an :class:`Endpoint`.

    ``HEAD`` is served wherever ``GET`` is. Identifiers are percent-decoded.
    """

    method = method.upper()
    lookup_method = "GET" if method == "HEAD" else method
    for route in ENDPOINT_ROUTES:
        if route.method != lookup_method:
            continue
        match = route.pattern.match(path)
        if match is None:
            continue
        identifier = match.groupdict().get("id")
        return EndpointMatch(endpoint=route.endpoint, identifier=unquote(identifier) if identifier else None)
    return None
