from __future__ import annotations

import gzip

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

from mirrorcache.common.schemas import HttpMetadata
from mirrorcache.common.settings import DEFAULT_CACHE_CONTROL, FAVICON_CACHE_CONTROL
from mirrorcache.proxy.app import create_app
from mirrorcache.proxy.edge_cache import InMemoryEdgeCache
from mirrorcache.proxy.keys import derive_key, encode_extra_params, url_hash
from origin_stub import ChunkStream


READ_KEY = "reader-key"
WRITE_KEY = "writer-key"
IMAGE_URL = "https://img.example/photos/cat.png"


def _image(_request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        headers={
            "content-type": "image/png",
            "content-disposition": 'attachment; filename="cat.png"',
            "cache-control": "private, max-age=5",
            "content-language": "en",
        },
        content=b"\x89PNG-bytes",
    )


async def _drain(app) -> None:
    assert await app.state.orchestrator.background.drain(timeout=5) == 0


@pytest.mark.asyncio
async def test_missing_or_unknown_key_is_forbidden(proxy_client):
    async with proxy_client as client:
        missing = await client.get("/", params={"url": IMAGE_URL})
        unknown = await client.get("/", params={"key": "nope", "url": IMAGE_URL})

    assert missing.status_code == unknown.status_code == 403
    assert missing.text == "Invalid API key"


@pytest.mark.asyncio
async def test_missing_url_is_bad_request(proxy_client):
    async with proxy_client as client:
        response = await client.get("/", params={"key": READ_KEY})

    assert response.status_code == 400
    assert response.text == "Missing url parameter"


@pytest.mark.asyncio
async def test_write_key_populates_then_read_key_hits(app, proxy_client, origin, object_cache):
    origin.add(IMAGE_URL, _image)

    async with proxy_client as client:
        first = await client.get("/", params={"key": WRITE_KEY, "url": IMAGE_URL})
        assert first.status_code == 200
        assert first.content == b"\x89PNG-bytes"
        assert first.headers["cache-control"] == DEFAULT_CACHE_CONTROL
        assert first.headers["content-disposition"] == 'inline; filename="cat.png"'
        assert "x-mirror-cache-hit" not in first.headers
        await _drain(app)

        stored = await object_cache.get(derive_key(IMAGE_URL))
        assert stored is not None
        assert stored.body == b"\x89PNG-bytes"
        # stored metadata keeps what the origin sent; the fix happens when serving
        assert stored.http_metadata.content_disposition == 'attachment; filename="cat.png"'
        assert stored.http_metadata.cache_control == DEFAULT_CACHE_CONTROL
        assert stored.custom_metadata is not None
        assert stored.custom_metadata.original_url == IMAGE_URL
        assert stored.custom_metadata.url_hash == url_hash(IMAGE_URL)
        assert stored.custom_metadata.request_path == "/photos/cat.png"

        hit = await client.get("/", params={"key": READ_KEY, "url": IMAGE_URL})

    assert hit.status_code == 200
    assert hit.content == b"\x89PNG-bytes"
    assert hit.headers["x-mirror-cache-hit"] == "true"
    assert hit.headers["content-type"] == "image/png"
    assert hit.headers["content-disposition"] == 'inline; filename="cat.png"'
    assert hit.headers["content-language"] == "en"
    assert hit.headers["content-length"] == str(len(b"\x89PNG-bytes"))
    assert hit.headers["cache-control"] == DEFAULT_CACHE_CONTROL
    assert "content-encoding" not in hit.headers
    assert origin.calls_to(IMAGE_URL) == 1


@pytest.mark.asyncio
async def test_repeated_request_is_served_from_edge(app, proxy_client, origin, edge_cache):
    origin.add(IMAGE_URL, _image)
    params = {"key": WRITE_KEY, "url": IMAGE_URL}

    async with proxy_client as client:
        await client.get("/", params=params)
        await _drain(app)
        assert len(edge_cache) == 1

        replay = await client.get("/", params=params)

    assert replay.status_code == 200
    assert replay.content == b"\x89PNG-bytes"
    assert replay.headers["x-edge-cache-hit"] == "true"
    assert replay.headers["content-disposition"] == 'inline; filename="cat.png"'
    assert origin.calls_to(IMAGE_URL) == 1


@pytest.mark.asyncio
async def test_edge_entries_are_per_credential(app, proxy_client, origin, object_cache):
    await object_cache.put(derive_key(IMAGE_URL), b"cached", HttpMetadata(content_type="image/png"))

    async with proxy_client as client:
        await client.get("/", params={"key": READ_KEY, "url": IMAGE_URL})
        await _drain(app)
        other = await client.get("/", params={"key": WRITE_KEY, "url": IMAGE_URL})

    assert other.headers["x-mirror-cache-hit"] == "true"
    assert "x-edge-cache-hit" not in other.headers


@pytest.mark.asyncio
async def test_read_key_miss_is_not_found_without_fetch(proxy_client, origin):
    origin.add(IMAGE_URL, _image)

    async with proxy_client as client:
        response = await client.get("/", params={"key": READ_KEY, "url": IMAGE_URL})

    assert response.status_code == 404
    assert response.text == "Not found"
    assert origin.requests == []


@pytest.mark.asyncio
async def test_origin_error_status_is_relayed_and_not_cached(app, proxy_client, origin, object_cache):
    origin.add(
        IMAGE_URL,
        lambda _r: httpx.Response(
            404,
            headers={"content-disposition": "attachment", "x-origin-trace": "abc"},
            content=b"gone",
        ),
    )

    async with proxy_client as client:
        response = await client.get("/", params={"key": WRITE_KEY, "url": IMAGE_URL})
        await _drain(app)

    assert response.status_code == 404
    assert response.content == b"gone"
    assert response.headers["content-disposition"] == "inline"
    assert response.headers["x-origin-trace"] == "abc"
    assert await object_cache.get(derive_key(IMAGE_URL)) is None


@pytest.mark.asyncio
async def test_extra_params_reach_origin_and_key(app, proxy_client, origin, object_cache):
    resized = IMAGE_URL + "?w=200&fmt=webp"
    origin.add(resized, lambda _r: httpx.Response(200, headers={"content-type": "image/webp"}, content=b"small"))
    blob = encode_extra_params("w=200&fmt=webp")

    async with proxy_client as client:
        populated = await client.get("/", params={"key": WRITE_KEY, "url": IMAGE_URL, "params": blob})
        await _drain(app)
        plain = await client.get("/", params={"key": READ_KEY, "url": IMAGE_URL})
        with_params = await client.get("/", params={"key": READ_KEY, "url": IMAGE_URL, "params": blob})

    assert populated.status_code == 200
    assert origin.calls_to(resized) == 1
    assert await object_cache.get(derive_key(resized)) is not None
    assert plain.status_code == 404
    assert with_params.status_code == 200
    assert with_params.content == b"small"


@pytest.mark.asyncio
async def test_invalid_params_blob_is_bad_request(proxy_client):
    async with proxy_client as client:
        response = await client.get("/", params={"key": WRITE_KEY, "url": IMAGE_URL, "params": "%%%"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_buffered_host_gets_content_length(app, proxy_client, origin):
    url = "https://buffered.example/feed.json"
    origin.add(url, lambda _r: httpx.Response(200, headers={"content-type": "application/json"}, stream=ChunkStream([b"[1,", b"2]"])))

    async with proxy_client as client:
        response = await client.get("/", params={"key": WRITE_KEY, "url": url})
        await _drain(app)

    assert response.headers["content-length"] == "5"
    assert response.content == b"[1,2]"


@pytest.mark.asyncio
async def test_encoded_bodies_are_stored_raw(app, proxy_client, origin, object_cache):
    url = "https://text.example/notes.txt"
    compressed = gzip.compress(b"hello " * 50)
    origin.add(url, lambda _r: httpx.Response(200, headers={"content-encoding": "gzip"}, content=compressed))

    async with proxy_client as client:
        first = await client.get("/", params={"key": WRITE_KEY, "url": url})
        await _drain(app)
        hit = await client.get("/", params={"key": READ_KEY, "url": url})

    stored = await object_cache.get(derive_key(url))
    assert stored is not None
    assert stored.body == compressed
    assert stored.http_metadata.content_encoding == "gzip"
    assert stored.http_metadata.content_type == "text/plain"
    assert first.content == hit.content == b"hello " * 50
    assert hit.headers["content-encoding"] == "gzip"


@pytest.mark.asyncio
async def test_unreachable_origin_is_bad_gateway(proxy_client, origin):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    origin.add(IMAGE_URL, refuse)
    async with proxy_client as client:
        response = await client.get("/", params={"key": WRITE_KEY, "url": IMAGE_URL})

    assert response.status_code == 502


@pytest.mark.asyncio
async def test_favicon_served_without_key(app, proxy_client, object_cache, settings):
    async with proxy_client as client:
        missing = await client.get("/favicon.ico")
        await object_cache.put(settings.favicon_key, b"ICO", HttpMetadata(content_type="image/x-icon"))
        found = await client.get("/favicon.ico")
        await _drain(app)
        replay = await client.get("/favicon.ico")

    assert missing.status_code == 404
    assert found.status_code == 200
    assert found.content == b"ICO"
    assert found.headers["cache-control"] == FAVICON_CACHE_CONTROL
    assert found.headers["content-type"] == "image/x-icon"
    assert replay.headers["x-edge-cache-hit"] == "true"


@pytest.mark.asyncio
async def test_status_and_health(proxy_client):
    async with proxy_client as client:
        status_response = await client.get("/status")
        health = await client.get("/healthz")

    body = status_response.json()
    assert body["object_cache"]["backend"] == "local"
    assert body["edge_cache"]["backend"] == "memory"
    assert body["background_tasks"] == 0
    assert body["buffered_hosts"] == ["buffered.example"]
    assert health.status_code == 200
    assert health.json() == {"status": "healthy", "checks": {"object_cache": "local", "edge_cache": "memory"}}


@pytest.mark.asyncio
async def test_metrics_endpoint_renders_counters(proxy_client, origin):
    origin.add(IMAGE_URL, _image)
    async with proxy_client as client:
        await client.get("/", params={"key": READ_KEY, "url": IMAGE_URL})
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert "mirrorcache_requests_total" in response.text
    assert "mirrorcache_misses_total" in response.text
    assert 'mirrorcache_request_latency_seconds_bucket{le="+Inf"}' in response.text


@pytest.mark.asyncio
async def test_metrics_token_is_enforced(settings, object_cache, edge_cache, origin_client):
    settings.metrics_token = SecretStr("metrics-secret")
    app = create_app(settings, object_cache=object_cache, edge_cache=edge_cache, http_client=origin_client)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://proxy.test") as client:
        denied = await client.get("/metrics")
        allowed = await client.get("/metrics", headers={"Authorization": "Bearer metrics-secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


class ClosingEdgeCache(InMemoryEdgeCache):
    closed = False

    async def aclose(self) -> None:
        self.closed = True


def test_lifespan_closes_edge_cache_but_not_injected_client(settings, object_cache, origin_client):
    edge = ClosingEdgeCache(max_entries=4, ttl_seconds=60, max_entry_bytes=1024)
    app = create_app(settings, object_cache=object_cache, edge_cache=edge, http_client=origin_client)

    with TestClient(app) as client:
        assert client.get("/healthz").status_code == 200

    assert edge.closed
    assert not origin_client.is_closed


@pytest.mark.asyncio
async def test_untyped_origin_body_is_served_as_text_plain_every_time(app, proxy_client, origin):
    url = "https://files.example/readme"
    origin.add(url, lambda _r: httpx.Response(200, stream=ChunkStream([b"abc"])))

    async with proxy_client as client:
        first = await client.get("/", params={"key": WRITE_KEY, "url": url})
        await _drain(app)
        hit = await client.get("/", params={"key": READ_KEY, "url": url})

    assert first.status_code == hit.status_code == 200
    assert first.content == hit.content == b"abc"
    assert first.headers["content-type"] == "text/plain"
    assert hit.headers["content-type"] == "text/plain"
    assert hit.headers["x-mirror-cache-hit"] == "true"


@pytest.mark.asyncio
async def test_long_streamed_body_reaches_client_and_store(app, proxy_client, origin, object_cache):
    url = "https://files.example/big.bin"
    chunks = [b"b" * 4096] * 64
    origin.add(url, lambda _r: httpx.Response(200, headers={"content-type": "application/octet-stream"}, stream=ChunkStream(chunks)))

    async with proxy_client as client:
        response = await client.get("/", params={"key": WRITE_KEY, "url": url})
        await _drain(app)

    assert response.content == b"".join(chunks)
    stored = await object_cache.get(derive_key(url))
    assert stored is not None and stored.size == 64 * 4096
