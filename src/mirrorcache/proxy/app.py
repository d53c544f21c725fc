"""HTTP surface of the caching proxy."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import RequestContext
from ..common.security import CredentialGate
from ..common.settings import ProxySettings
from .edge_cache import EdgeCache, build_edge_cache
from .errors import ProxyError
from .object_store import ObjectCache, build_object_cache
from .orchestrator import PENDING_TASKS_GAUGE, CacheOrchestrator
from .origin import OriginFetcher


LOGGER = structlog.get_logger("mirrorcache.proxy.http")

REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "mirrorcache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Proxy request latency",
    )
)


def build_http_client(settings: ProxySettings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.origin_timeout_seconds),
        follow_redirects=True,
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )


def get_orchestrator(request: Request) -> CacheOrchestrator:
    return request.app.state.orchestrator  # type: ignore[attr-defined]


def request_context(
    request: Request,
    key: Optional[str] = Query(default=None),
    url: Optional[str] = Query(default=None),
    params: Optional[str] = Query(default=None),
) -> RequestContext:
    return RequestContext(edge_key=str(request.url), credential=key, url=url, extra_params=params)


def create_app(
    settings: Optional[ProxySettings] = None,
    *,
    object_cache: Optional[ObjectCache] = None,
    edge_cache: Optional[EdgeCache] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("mirrorcache.proxy", settings.log_level)
    configure_tracing(
        service_name="mirrorcache.proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    gate = CredentialGate(settings.read_keys, settings.write_keys)
    if not gate.configured:
        LOGGER.warning("no_api_keys_configured")
    object_cache = object_cache or build_object_cache(settings)
    edge_cache = edge_cache or build_edge_cache(settings)
    owns_client = http_client is None
    client = http_client or build_http_client(settings)
    fetcher = OriginFetcher(client, settings.buffered_hosts, user_agent=settings.origin_user_agent)
    orchestrator = CacheOrchestrator(settings, gate, object_cache, edge_cache, fetcher)
    PENDING_TASKS_GAUGE.bind(lambda: float(orchestrator.background.pending))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        LOGGER.info(
            "proxy_started",
            object_cache=object_cache.status().get("backend"),
            edge_cache=edge_cache.status().get("backend"),
            buffered_hosts=len(settings.buffered_hosts),
        )
        try:
            yield
        finally:
            abandoned = await orchestrator.background.drain(settings.background_drain_timeout_seconds)
            if owns_client:
                await client.aclose()
            await edge_cache.aclose()
            LOGGER.info("proxy_stopped", abandoned_tasks=abandoned)

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.orchestrator = orchestrator
    app.state.settings = settings

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> PlainTextResponse:  # noqa: ARG001
        return PlainTextResponse(exc.detail, status_code=exc.status_code)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        # the query string carries the api key and is never logged
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.get("/")
    async def proxy(
        ctx: RequestContext = Depends(request_context),
        orchestrator: CacheOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        return await orchestrator.handle(ctx)

    @app.get("/favicon.ico")
    async def favicon(
        request: Request,
        orchestrator: CacheOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        return await orchestrator.serve_favicon(str(request.url))

    @app.get("/status")
    async def status_probe(orchestrator: CacheOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
        return JSONResponse(
            {
                "object_cache": orchestrator.object_cache.status(),
                "edge_cache": orchestrator.edge_cache.status(),
                "background_tasks": orchestrator.background.pending,
                "buffered_hosts": sorted(orchestrator.settings.buffered_hosts),
            }
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request) -> PlainTextResponse:
        token = settings.metrics_token.get_secret_value() if settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(orchestrator: CacheOrchestrator = Depends(get_orchestrator)) -> dict:
        """Health check for K8s readiness/liveness probes."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        checks: dict[str, object] = health["checks"]  # type: ignore[assignment]
        try:
            backend_status = orchestrator.object_cache.status()
            checks["object_cache"] = backend_status.get("backend", "unknown")
            if backend_status.get("circuit_open") or backend_status.get("writable") is False:
                health["status"] = "degraded"
        except Exception as exc:  # noqa: BLE001
            checks["object_cache"] = f"error: {exc}"
            health["status"] = "unhealthy"
        checks["edge_cache"] = orchestrator.edge_cache.status().get("backend", "unknown")

        if health["status"] == "unhealthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
