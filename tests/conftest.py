from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from mirrorcache.common.settings import ProxySettings
from mirrorcache.proxy.app import create_app
from mirrorcache.proxy.edge_cache import InMemoryEdgeCache
from mirrorcache.proxy.object_store import LocalObjectCache
from origin_stub import OriginStub


READ_KEY = "reader-key"
WRITE_KEY = "writer-key"


@pytest.fixture
def settings(tmp_path: Path) -> ProxySettings:
    return ProxySettings(
        read_keys=[READ_KEY],
        write_keys=[WRITE_KEY],
        storage_path=tmp_path / "objects",
        buffered_hosts=["buffered.example"],
        s3_retry_base_seconds=0.0,
        s3_retry_max_seconds=0.0,
    )


@pytest.fixture
def object_cache(settings: ProxySettings) -> LocalObjectCache:
    return LocalObjectCache(settings.storage_path)


@pytest.fixture
def edge_cache() -> InMemoryEdgeCache:
    return InMemoryEdgeCache(max_entries=64, ttl_seconds=300, max_entry_bytes=64 * 1024)


@pytest.fixture
def origin() -> OriginStub:
    return OriginStub()


@pytest.fixture
def origin_client(origin: OriginStub) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(origin), follow_redirects=True)


@pytest.fixture
def app(settings, object_cache, edge_cache, origin_client):
    return create_app(settings, object_cache=object_cache, edge_cache=edge_cache, http_client=origin_client)


@pytest.fixture
def proxy_client(app) -> httpx.AsyncClient:
    """Unopened client bound to the app; use with ``async with``."""
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://proxy.test")
