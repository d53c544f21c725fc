"""CLI helper for requesting a URL through the caching proxy."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional, Sequence

import httpx

from ..proxy.keys import encode_extra_params

REPORTED_HEADERS = (
    "content-type",
    "content-length",
    "content-disposition",
    "content-encoding",
    "cache-control",
    "x-mirror-cache-hit",
    "x-edge-cache-hit",
)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch a URL through the caching proxy")
    parser.add_argument("url", help="Origin URL to request")
    parser.add_argument("--proxy-url", required=True, help="Caching proxy base URL")
    parser.add_argument("--key", required=True, help="API key for the proxy")
    parser.add_argument("--query", help="Extra query text sent base64-encoded in the params parameter")
    parser.add_argument("--output", type=Path, help="Write the response body to this file")
    parser.add_argument("--timeout", type=float, default=30.0, help="Request timeout in seconds")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of plain text")
    return parser.parse_args(argv)


def build_params(key: str, url: str, query: Optional[str] = None) -> dict[str, str]:
    params = {"key": key, "url": url}
    if query:
        params["params"] = encode_extra_params(query)
    return params


async def fetch_through_proxy(
    proxy_url: str,
    params: dict[str, str],
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        return await client.get(f"{proxy_url.rstrip('/')}/", params=params)


async def run(argv: Optional[Sequence[str]] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> int:
    args = parse_args(argv)
    response = await fetch_through_proxy(
        args.proxy_url,
        build_params(args.key, args.url, args.query),
        timeout=args.timeout,
        transport=transport,
    )
    headers = {name: response.headers[name] for name in REPORTED_HEADERS if name in response.headers}

    if args.output is not None and response.is_success:
        args.output.write_bytes(response.content)

    if args.json:
        print(json.dumps({"status": response.status_code, "bytes": len(response.content), "headers": headers}, indent=2))
    else:
        print(f"Status: {response.status_code}")
        print(f"Bytes: {len(response.content)}")
        for name, value in headers.items():
            print(f"{name}: {value}")
        if not response.is_success:
            print(response.text)
    return 0 if response.is_success else 1


def main() -> None:
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
