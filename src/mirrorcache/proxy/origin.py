"""Outbound fetches to origin servers."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit

import httpx
import structlog

from ..common.schemas import DEFAULT_CONTENT_TYPE, HttpMetadata
from .errors import BadRequest, OriginError


LOGGER = structlog.get_logger("mirrorcache.origin")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def url_host(url: str) -> Optional[str]:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


class OriginResponse:
    """An origin response whose body is either still streaming or already in memory.

    Bodies are exposed as raw bytes (no content decoding) so what gets stored
    matches the Content-Encoding that gets stored with it.
    """

    def __init__(self, response: httpx.Response, body: Optional[bytes] = None) -> None:
        self._response = response
        self._body = body
        self._consumed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def ok(self) -> bool:
        return self._response.status_code < 400

    @property
    def buffered(self) -> bool:
        return self._body is not None

    @property
    def body(self) -> Optional[bytes]:
        return self._body

    def http_metadata(self, cache_control: str) -> HttpMetadata:
        """Capture the headers to persist; Cache-Control is always the proxy's own."""
        return HttpMetadata(
            content_type=self.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
            cache_control=cache_control,
            content_disposition=self.headers.get("content-disposition") or None,
            content_encoding=self.headers.get("content-encoding") or None,
            content_language=self.headers.get("content-language") or None,
        )

    def passthrough_headers(self) -> list[tuple[str, str]]:
        headers = [
            (name, value)
            for name, value in self.headers.multi_items()
            if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() != "content-length"
        ]
        if self._body is not None:
            headers.append(("content-length", str(len(self._body))))
        elif "content-length" in self.headers:
            headers.append(("content-length", self.headers["content-length"]))
        return headers

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        """Yield the body once. A second pass is an error for streamed bodies."""
        if self._body is not None:
            yield self._body
            return
        if self._consumed:
            raise RuntimeError("origin body already consumed")
        self._consumed = True
        try:
            async for chunk in self._response.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            raise OriginError("Origin body stream failed") from exc
        finally:
            await self._response.aclose()

    async def read_all(self) -> bytes:
        if self._body is None:
            self._body = b"".join([chunk async for chunk in self.aiter_raw()])
        return self._body

    async def aclose(self) -> None:
        await self._response.aclose()


class _StreamEnd:
    pass


class _StreamFailure:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


_END = _StreamEnd()


class _Branch:
    """One consumer's bounded share of a teed stream."""

    def __init__(self, name: str, max_chunks: int, stall_seconds: Optional[float]) -> None:
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, max_chunks))
        self.attached = True
        self._stall_seconds = stall_seconds

    def detach(self) -> None:
        """Stop feeding this branch and drop whatever it still holds."""
        self.attached = False
        while not self.queue.empty():
            self.queue.get_nowait()

    async def feed(self, item) -> None:
        if not self.attached:
            return
        try:
            await asyncio.wait_for(self.queue.put(item), timeout=self._stall_seconds)
        except asyncio.TimeoutError:
            LOGGER.warning("tee_branch_stalled", branch=self.name, stall_seconds=self._stall_seconds)
            self.detach()
            # the put was cancelled, so the emptied queue has room for the marker
            self.queue.put_nowait(_StreamFailure(OriginError(f"{self.name} branch stalled")))
            return
        if not self.attached:
            # detached while waiting for room
            self.detach()

    async def drain(self) -> AsyncIterator[bytes]:
        try:
            while True:
                item = await self.queue.get()
                if item is _END:
                    return
                if isinstance(item, _StreamFailure):
                    raise OriginError("Origin body stream failed") from item.exc
                yield item
        finally:
            self.detach()


class StreamTee:
    """Split one origin body into a client branch and a store branch.

    ``pump()`` reads the source exactly once and must run on its own task.
    Each branch holds at most ``max_chunks`` chunks, so the source is read no
    faster than the slower attached branch consumes. A branch that stops
    consuming is detached: explicitly (``release_client`` / ``detach_store``),
    when its iterator is closed, or after ``stall_seconds`` without room.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        max_chunks: int = 16,
        stall_seconds: Optional[float] = None,
    ) -> None:
        self._source = source
        self._client = _Branch("client", max_chunks, stall_seconds)
        self._store = _Branch("store", max_chunks, stall_seconds)
        self.bytes_read = 0

    async def pump(self) -> int:
        try:
            async for chunk in self._source:
                self.bytes_read += len(chunk)
                await self._store.feed(chunk)
                await self._client.feed(chunk)
        except Exception as exc:  # noqa: BLE001 - relayed to both branches
            LOGGER.warning("origin_stream_failed", bytes_read=self.bytes_read, error=str(exc))
            failure = _StreamFailure(exc)
            await self._store.feed(failure)
            await self._client.feed(failure)
        else:
            await self._store.feed(_END)
            await self._client.feed(_END)
        return self.bytes_read

    @property
    def buffered_chunks(self) -> tuple[int, int]:
        """Items currently queued for (client, store)."""
        return self._client.queue.qsize(), self._store.queue.qsize()

    def client_branch(self) -> AsyncIterator[bytes]:
        return self._client.drain()

    def store_branch(self) -> AsyncIterator[bytes]:
        return self._store.drain()

    def detach_store(self) -> None:
        self._store.detach()

    async def release_client(self) -> None:
        """Response close hook: the client takes nothing more from the stream."""
        self._client.detach()


class OriginFetcher:
    """Fetch origin URLs, buffering bodies for hosts known to omit Content-Length."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        buffered_hosts: Iterable[str] = (),
        user_agent: Optional[str] = None,
    ) -> None:
        self._client = client
        self._buffered_hosts = frozenset(host.strip().lower() for host in buffered_hosts if host.strip())
        self._user_agent = user_agent

    def should_buffer(self, url: str) -> bool:
        host = url_host(url)
        return host is not None and host in self._buffered_hosts

    async def fetch(self, url: str) -> OriginResponse:
        headers = {"User-Agent": self._user_agent} if self._user_agent else {}
        try:
            request = self._client.build_request("GET", url, headers=headers)
        except httpx.InvalidURL as exc:
            raise BadRequest("Invalid url parameter") from exc
        try:
            response = await self._client.send(request, stream=True)
        except httpx.UnsupportedProtocol as exc:
            raise BadRequest("Invalid url parameter") from exc
        except httpx.HTTPError as exc:
            LOGGER.warning("origin_fetch_failed", host=url_host(url), error=str(exc))
            raise OriginError("Origin fetch failed") from exc

        origin = OriginResponse(response)
        if self.should_buffer(url):
            body = await origin.read_all()
            LOGGER.debug("origin_body_buffered", host=url_host(url), bytes=len(body))
        return origin
