"""Gem mirror proxy: redirects to, or caches from, upstream gem servers."""

from __future__ import annotations

import hmac
import time
from contextlib import asynccontextmanager
from ipaddress import ip_address
from typing import Optional, Sequence

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_app, instrument_upstream_client
from ..common.settings import GemMirrorSettings
from ..gem_source.routing import match_endpoint
from ..gem_source.sources import GemRequest, GemSource, build_sources, dispatch, select_source
from ..gem_source.stats import GemCacheStats
from ..gem_source.storage import GemStorageError, LocalGemStorage
from ..gem_source.upstream import UpstreamClient, build_http_client


SERVICE_NAME = "gemmirror.proxy"
PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("gemmirror_requests_total", "Total gem mirror requests"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "gemmirror_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Gem mirror request latency",
    )
)
TRACER = trace.get_tracer(SERVICE_NAME)


class MirrorState:
    def __init__(
        self,
        settings: GemMirrorSettings,
        storage: LocalGemStorage,
        stats: GemCacheStats,
        sources: Sequence[GemSource],
        http_client: httpx.AsyncClient,
    ):
        self.settings = settings
        self.storage = storage
        self.stats = stats
        self.sources = tuple(sources)
        self.http_client = http_client
        self.logger = structlog.get_logger(SERVICE_NAME)


def get_state(request: Request) -> MirrorState:
    return request.app.state.mirror_state  # type: ignore[attr-defined]


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow a matching bearer token, or loopback clients when no token is configured."""
    if token:
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, f"Bearer {token}"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    try:
        loopback = client_host is not None and ip_address(client_host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def raw_request_path(request: Request) -> str:
    """The request path before percent-decoding, so encoded upstream URLs stay one segment."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return request.url.path
    return raw_path.decode("utf-8", "surrogateescape").split("?", 1)[0]


def create_app(
    settings: Optional[GemMirrorSettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or GemMirrorSettings()
    configure_logging(settings, SERVICE_NAME)
    configure_tracing(settings, SERVICE_NAME)

    owns_http_client = http_client is None
    if http_client is None:
        http_client = instrument_upstream_client(
            build_http_client(
                settings.upstream_timeout_seconds,
                settings.upstream_max_connections,
                settings.user_agent,
            )
        )
    storage = LocalGemStorage(settings.gem_cache_path)
    stats = GemCacheStats(settings.resolved_stats_database_url)
    sources = build_sources(settings.rubygems_url, storage, stats, settings.root_cache_max_age_seconds)
    state = MirrorState(settings, storage, stats, sources, http_client)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        state.logger.info("gem_mirror_started", rubygems_url=settings.rubygems_url, storage=str(storage.storage_dir))
        try:
            yield
        finally:
            if owns_http_client:
                await state.http_client.aclose()
            state.stats.dispose()

    app = FastAPI(lifespan=lifespan)
    instrument_app(app)
    app.state.mirror_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        state = request.app.state.mirror_state  # type: ignore[attr-defined]
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(GemStorageError)
    async def storage_failure(request: Request, exc: GemStorageError) -> JSONResponse:
        request.app.state.mirror_state.logger.error(
            "gem_storage_failed",
            gem_id=exc.identifier,
            error=str(exc),
        )
        return JSONResponse(
            {"detail": "Gem storage failure"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: MirrorState = Depends(get_state)) -> dict:
        """Health check for readiness/liveness probes."""
        health: dict = {"status": "healthy", "checks": {}}
        try:
            storage_status = state.storage.status()
            health["checks"]["storage"] = storage_status.get("backend", "unknown")
            health["checks"]["writable"] = storage_status.get("writable", False)
            if not storage_status.get("writable", False):
                health["status"] = "unhealthy"
        except OSError as exc:
            health["checks"]["storage"] = f"error: {exc}"
            health["status"] = "unhealthy"

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/status")
    async def status_probe(state: MirrorState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("gem_mirror.status"):
            payload = state.storage.status()
            payload.update(
                {
                    "rubygems_url": state.settings.rubygems_url,
                    "sources": [source.name for source in state.sources],
                    "total_entries": state.stats.total_entries(),
                    "top_entries": state.stats.top_entries(),
                }
            )
            return JSONResponse(jsonable_encoder(payload))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: MirrorState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{path:path}", methods=PROXIED_METHODS, include_in_schema=False)
    async def serve_gem_source(request: Request, state: MirrorState = Depends(get_state)) -> Response:
        selection = select_source(state.sources, raw_request_path(request))
        if selection is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No gem source for path")
        matched = match_endpoint(request.method, selection.path)
        if matched is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

        gem_request = GemRequest(
            upstream=selection.upstream,
            endpoint=matched.endpoint,
            client=UpstreamClient(state.http_client, selection.upstream),
            identifier=matched.identifier,
            query_string=request.scope.get("query_string", b"").decode("latin-1"),
        )
        structlog.contextvars.bind_contextvars(source=selection.source.name, endpoint=matched.endpoint.value)
        try:
            return await dispatch(selection.source, gem_request)
        finally:
            structlog.contextvars.unbind_contextvars("source", "endpoint")

    return app
