"""Read-through cache control loop.

Per request: auth -> edge cache -> object cache -> (write auth) -> origin ->
persist. Store writes run as tracked background tasks so the client never
waits on them, and they finish even after the response has been sent.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Coroutine, Optional, Union

from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.schemas import (
    DEFAULT_CONTENT_TYPE,
    CustomMetadata,
    EdgeEntry,
    HttpMetadata,
    RequestContext,
    StoredObject,
)
from ..common.security import CredentialGate, credential_fingerprint
from ..common.settings import ProxySettings
from .disposition import fix_disposition
from .edge_cache import EdgeCache, edge_fingerprint
from .errors import AuthError, BadRequest, CacheLookupError, NotFound
from .keys import derive_key, request_path, resolve_target_url, url_hash
from .object_store import ObjectCache
from .origin import OriginFetcher, StreamTee, url_host


LOGGER = structlog.get_logger("mirrorcache.proxy")
TRACER = trace.get_tracer("mirrorcache.proxy")

CACHE_HIT_HEADER = "X-Mirror-Cache-Hit"
EDGE_HIT_HEADER = "X-Edge-Cache-Hit"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_requests_total", "Proxy requests that passed auth"))
EDGE_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_edge_hits_total", "Edge cache hits"))
OBJECT_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_object_hits_total", "Object cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_misses_total", "Object cache misses"))
LOOKUP_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("mirrorcache_lookup_errors_total", "Cache lookups that failed and were treated as misses")
)
ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_origin_fetches_total", "Origin fetches"))
ORIGIN_NOT_OK_COUNTER = GLOBAL_REGISTRY.register(
    Counter("mirrorcache_origin_not_ok_total", "Origin responses relayed without caching")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_bytes_served_total", "Bytes served from cache"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(Counter("mirrorcache_bytes_written_total", "Bytes written to the object cache"))
PERSIST_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("mirrorcache_persist_failures_total", "Object cache writes that failed")
)
PENDING_TASKS_GAUGE = GLOBAL_REGISTRY.register(Gauge("mirrorcache_background_tasks", "Background writes in flight"))


class DetachedTasks:
    """Fire-and-forget tasks that must outlive the request that scheduled them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("background_task_failed", task=task.get_name(), error=str(exc))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for scheduled tasks (including ones they schedule); cancel what is left at timeout."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, still_pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if still_pending and remaining is not None and deadline <= loop.time():
                for task in still_pending:
                    task.cancel()
                LOGGER.warning("background_tasks_abandoned", count=len(still_pending))
                await asyncio.gather(*still_pending, return_exceptions=True)
                return len(still_pending)
        return 0


def _set_header(headers: list[tuple[str, str]], name: str, value: str) -> list[tuple[str, str]]:
    lowered = name.lower()
    kept = [(k, v) for k, v in headers if k.lower() != lowered]
    kept.append((name, value))
    return kept


def build_response(
    status_code: int,
    headers: list[tuple[str, str]],
    body: Union[bytes, AsyncIterator[bytes]],
    on_close: Optional[Callable[[], Awaitable[None]]] = None,
) -> Response:
    if isinstance(body, (bytes, bytearray)):
        response: Response = Response(content=bytes(body), status_code=status_code)
        if not any(k.lower() == "content-length" for k, _ in headers):
            headers = [*headers, ("content-length", str(len(body)))]
    else:
        # on_close releases the origin connection once streaming ends
        background = BackgroundTask(on_close) if on_close else None
        response = StreamingResponse(body, status_code=status_code, background=background)
    response.raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers]
    return response


def hit_headers(stored: StoredObject, path: str, cache_control: str) -> list[tuple[str, str]]:
    """Headers for a response rebuilt from a stored object."""
    meta = stored.http_metadata
    headers = [
        ("Content-Type", meta.content_type or DEFAULT_CONTENT_TYPE),
        ("Cache-Control", cache_control),
        ("Content-Disposition", fix_disposition(path, meta.content_disposition)),
    ]
    if meta.content_encoding:
        headers.append(("Content-Encoding", meta.content_encoding))
    if meta.content_language:
        headers.append(("Content-Language", meta.content_language))
    headers.append(("Content-Length", str(stored.size)))
    headers.append((CACHE_HIT_HEADER, "true"))
    return headers


class _BodyRecorder:
    """Keeps a copy of a streamed body for the edge cache, up to a size limit."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.overflowed = False

    async def wrap(self, body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for chunk in body:
            if not self.overflowed:
                if len(self.data) + len(chunk) > self.limit:
                    self.overflowed = True
                    self.data.clear()
                else:
                    self.data.extend(chunk)
            yield chunk


class CacheOrchestrator:
    def __init__(
        self,
        settings: ProxySettings,
        gate: CredentialGate,
        object_cache: ObjectCache,
        edge_cache: EdgeCache,
        fetcher: OriginFetcher,
        background: Optional[DetachedTasks] = None,
    ) -> None:
        self.settings = settings
        self.gate = gate
        self.object_cache = object_cache
        self.edge_cache = edge_cache
        self.fetcher = fetcher
        self.background = background or DetachedTasks()

    async def handle(self, ctx: RequestContext) -> Response:
        ctx.scope = self.gate.scope_for(ctx.credential)
        if not ctx.scope.can_read:
            raise AuthError("Invalid API key")
        if not ctx.url:
            raise BadRequest("Missing url parameter")
        REQUEST_COUNTER.inc()
        log = LOGGER.bind(credential=credential_fingerprint(ctx.credential or ""), scope=ctx.scope.value)

        entry = await self._edge_lookup(ctx.edge_key)
        if entry is not None:
            EDGE_HIT_COUNTER.inc()
            BYTES_SERVED_COUNTER.inc(entry.size)
            log.info("edge_hit", edge=edge_fingerprint(ctx.edge_key)[:16], bytes=entry.size)
            return self._replay(entry)

        ctx.target_url = resolve_target_url(ctx.url, ctx.extra_params)
        ctx.request_path = request_path(ctx.target_url)
        ctx.cache_key = derive_key(ctx.target_url)
        log = log.bind(cache_key=ctx.cache_key)

        stored = await self._object_lookup(ctx.cache_key)
        if stored is not None:
            OBJECT_HIT_COUNTER.inc()
            BYTES_SERVED_COUNTER.inc(stored.size)
            log.info("cache_hit", bytes=stored.size)
            return self._serve_hit(ctx, stored)

        MISS_COUNTER.inc()
        if not ctx.scope.can_write:
            # indistinguishable from a resource that does not exist
            log.info("cache_miss_read_only")
            raise NotFound("Not found")
        log.info("cache_miss")
        return await self._populate(ctx, log)

    async def serve_favicon(self, edge_key: str) -> Response:
        entry = await self._edge_lookup(edge_key)
        if entry is not None:
            EDGE_HIT_COUNTER.inc()
            return self._replay(entry)
        stored = await self._object_lookup(self.settings.favicon_key)
        if stored is None:
            raise NotFound("Not found")
        headers = [
            ("Content-Type", stored.http_metadata.content_type or DEFAULT_CONTENT_TYPE),
            ("Cache-Control", self.settings.favicon_cache_control),
            ("Content-Length", str(stored.size)),
        ]
        entry = EdgeEntry(status=200, headers=headers, body=stored.body)
        self.background.schedule(self._edge_store(edge_key, entry), name="edge_put")
        return build_response(200, headers, stored.body)

    async def _edge_lookup(self, edge_key: str) -> Optional[EdgeEntry]:
        with TRACER.start_as_current_span("proxy.edge_lookup") as span:
            try:
                entry = await self.edge_cache.get(edge_key)
            except Exception as exc:  # noqa: BLE001 - a broken tier is a miss
                LOOKUP_ERROR_COUNTER.inc()
                LOGGER.warning("edge_lookup_failed", error=str(exc))
                entry = None
            span.set_attribute("mirrorcache.edge_hit", entry is not None)
            return entry

    async def _object_lookup(self, cache_key: str) -> Optional[StoredObject]:
        with TRACER.start_as_current_span("proxy.object_lookup", attributes={"mirrorcache.cache_key": cache_key}) as span:
            try:
                stored = await self.object_cache.get(cache_key)
            except CacheLookupError as exc:
                LOOKUP_ERROR_COUNTER.inc()
                LOGGER.warning("object_lookup_failed", cache_key=cache_key, error=str(exc))
                stored = None
            span.set_attribute("mirrorcache.object_hit", stored is not None)
            return stored

    async def _edge_store(self, edge_key: str, entry: EdgeEntry) -> None:
        try:
            await self.edge_cache.put(edge_key, entry)
        except Exception as exc:  # noqa: BLE001 - best effort
            LOGGER.warning("edge_store_failed", edge=edge_fingerprint(edge_key)[:16], error=str(exc))

    def _replay(self, entry: EdgeEntry) -> Response:
        headers = _set_header(list(entry.headers), EDGE_HIT_HEADER, "true")
        return build_response(entry.status, headers, entry.body)

    def _serve_hit(self, ctx: RequestContext, stored: StoredObject) -> Response:
        headers = hit_headers(stored, ctx.request_path, self.settings.cache_control)
        entry = EdgeEntry(status=200, headers=headers, body=stored.body)
        self.background.schedule(self._edge_store(ctx.edge_key, entry), name="edge_put")
        return build_response(200, headers, stored.body)

    async def _populate(self, ctx: RequestContext, log) -> Response:
        assert ctx.target_url is not None and ctx.cache_key is not None
        host = url_host(ctx.target_url)
        with TRACER.start_as_current_span("proxy.origin_fetch", attributes={"mirrorcache.origin_host": host or ""}) as span:
            origin = await self.fetcher.fetch(ctx.target_url)
            span.set_attribute("http.status_code", origin.status_code)
            span.set_attribute("mirrorcache.buffered", origin.buffered)
        ORIGIN_FETCH_COUNTER.inc()

        if not origin.ok:
            ORIGIN_NOT_OK_COUNTER.inc()
            log.info("origin_not_ok", host=host, status=origin.status_code)
            headers = _set_header(
                origin.passthrough_headers(),
                "Content-Disposition",
                fix_disposition(ctx.request_path, origin.headers.get("content-disposition")),
            )
            if origin.buffered:
                return build_response(origin.status_code, headers, origin.body)
            return build_response(origin.status_code, headers, origin.aiter_raw(), on_close=origin.aclose)

        metadata = origin.http_metadata(self.settings.cache_control)
        custom = CustomMetadata(
            original_url=ctx.target_url,
            url_hash=url_hash(ctx.target_url),
            request_path=ctx.request_path,
        )
        client_body: Union[bytes, AsyncIterator[bytes]]
        tee: Optional[StreamTee] = None
        if origin.buffered:
            assert origin.body is not None
            client_body = origin.body
            store_body: Union[bytes, AsyncIterator[bytes]] = origin.body
        else:
            tee = StreamTee(
                origin.aiter_raw(),
                max_chunks=self.settings.tee_buffer_chunks,
                stall_seconds=self.settings.origin_timeout_seconds,
            )
            self.background.schedule(tee.pump(), name="origin_pump")
            client_body = tee.client_branch()
            store_body = tee.store_branch()
        self.background.schedule(self._persist(ctx, store_body, metadata, custom, tee), name="persist")
        log.info("origin_fetch", host=host, status=origin.status_code, buffered=origin.buffered)

        # the first response carries the same Content-Type later hits will
        headers = origin.passthrough_headers()
        headers = _set_header(headers, "Content-Type", metadata.content_type)
        headers = _set_header(headers, "Content-Disposition", fix_disposition(ctx.request_path, metadata.content_disposition))
        headers = _set_header(headers, "Cache-Control", self.settings.cache_control)
        if tee is None:
            return build_response(origin.status_code, headers, client_body)
        return build_response(origin.status_code, headers, client_body, on_close=tee.release_client)

    async def _persist(
        self,
        ctx: RequestContext,
        body: Union[bytes, AsyncIterator[bytes]],
        metadata: HttpMetadata,
        custom: CustomMetadata,
        tee: Optional[StreamTee] = None,
    ) -> None:
        assert ctx.cache_key is not None
        recorder: Optional[_BodyRecorder] = None
        if not isinstance(body, (bytes, bytearray)):
            recorder = _BodyRecorder(self.settings.edge_cache_max_entry_bytes)
            body = recorder.wrap(body)
        with TRACER.start_as_current_span("proxy.persist", attributes={"mirrorcache.cache_key": ctx.cache_key}) as span:
            try:
                size = await self.object_cache.put(ctx.cache_key, body, metadata, custom)
            except Exception as exc:  # noqa: BLE001 - the response is already on its way
                PERSIST_FAILURE_COUNTER.inc()
                span.record_exception(exc)
                LOGGER.error("persist_failed", cache_key=ctx.cache_key, error=str(exc))
                if tee is not None:
                    tee.detach_store()
                return
            span.set_attribute("mirrorcache.bytes_written", size)
        BYTES_WRITTEN_COUNTER.inc(size)
        LOGGER.info("cache_write", cache_key=ctx.cache_key, bytes=size, content_type=metadata.content_type)

        if recorder is None:
            payload = bytes(body)
        elif recorder.overflowed:
            return
        else:
            payload = bytes(recorder.data)
        stored = StoredObject(key=ctx.cache_key, body=payload, size=size, http_metadata=metadata, custom_metadata=custom)
        entry = EdgeEntry(status=200, headers=hit_headers(stored, ctx.request_path, self.settings.cache_control), body=payload)
        await self._edge_store(ctx.edge_key, entry)
