"""Gem sources for the mirror proxy.

A request is first matched to a source (``/redirect/<url>``, ``/upstream/<url>``
or the configured default upstream), then to an endpoint, then answered by the
shared handler table in :mod:`.sources`.
"""

from .routing import Endpoint, RouteMatch, match_endpoint, match_prefix
from .sources import GemRequest, GemSource, build_sources, dispatch, select_source
from .storage import GemResource, GemStorageError, LocalGemStorage
from .upstream import Upstream, UpstreamClient, UpstreamError, resolve_url

__all__ = [
    "Endpoint",
    "GemRequest",
    "GemResource",
    "GemSource",
    "GemStorageError",
    "LocalGemStorage",
    "RouteMatch",
    "Upstream",
    "UpstreamClient",
    "UpstreamError",
    "build_sources",
    "dispatch",
    "match_endpoint",
    "match_prefix",
    "resolve_url",
    "select_source",
]
