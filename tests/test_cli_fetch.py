from __future__ import annotations

import base64
import json

import httpx
import pytest

from mirrorcache.cli import fetch


URL = "https://img.example/photos/cat.png"


def test_build_params_encodes_query():
    params = fetch.build_params("k", URL, "w=200")

    assert params["key"] == "k"
    assert params["url"] == URL
    assert base64.urlsafe_b64decode(params["params"]).decode() == "w=200"
    assert "params" not in fetch.build_params("k", URL)


@pytest.mark.asyncio
async def test_cli_fetch_prints_cache_headers_and_saves_body(tmp_path, capsys):
    seen: list[httpx.Request] = []

    def proxy(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            headers={"content-type": "image/png", "x-mirror-cache-hit": "true", "x-unrelated": "1"},
            content=b"PNG",
        )

    output = tmp_path / "cat.png"
    code = await fetch.run(
        ["--proxy-url", "http://proxy.test/", "--key", "k", URL, "--output", str(output)],
        transport=httpx.MockTransport(proxy),
    )

    assert code == 0
    assert output.read_bytes() == b"PNG"
    assert seen[0].url.path == "/"
    assert seen[0].url.params["url"] == URL
    printed = capsys.readouterr().out
    assert "Status: 200" in printed
    assert "x-mirror-cache-hit: true" in printed
    assert "x-unrelated" not in printed


@pytest.mark.asyncio
async def test_cli_fetch_json_reports_failure(tmp_path, capsys):
    transport = httpx.MockTransport(lambda _request: httpx.Response(404, text="Not found"))
    output = tmp_path / "missing.bin"

    code = await fetch.run(
        ["--proxy-url", "http://proxy.test", "--key", "k", URL, "--output", str(output), "--json"],
        transport=transport,
    )

    assert code == 1
    assert not output.exists()
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == 404
