"""CLI to show the object-cache key a proxied URL is stored under."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from ..proxy.errors import BadRequest
from ..proxy.keys import (
    KEY_PREFIX,
    derive_key,
    encode_extra_params,
    resolve_target_url,
    split_key,
    strip_scheme,
    url_hash,
)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Derive the cache key for a proxied URL")
    parser.add_argument("url", help="Origin URL as passed in the url query parameter")
    extra = parser.add_mutually_exclusive_group()
    extra.add_argument("--params", help="Base64 extra query blob, as passed in the params query parameter")
    extra.add_argument("--query", help="Plain extra query text, e.g. 'w=200&fmt=webp'")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of plain text")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    blob = args.params
    if args.query:
        blob = encode_extra_params(args.query)
    try:
        target = resolve_target_url(args.url, blob)
    except BadRequest as exc:
        print(f"error: {exc.detail}", file=sys.stderr)
        raise SystemExit(2) from exc

    key = derive_key(target)
    prefix, digest = split_key(key)
    truncated = prefix != KEY_PREFIX + strip_scheme(target)

    if args.json:
        print(
            json.dumps(
                {
                    "url": target,
                    "key": key,
                    "url_hash": url_hash(target),
                    "key_bytes": len(key.encode("utf-8")),
                    "truncated": truncated,
                },
                indent=2,
            )
        )
    else:
        print(f"URL: {target}")
        print(f"Key: {key}")
        print(f"Hash: {digest}")
        if truncated:
            print("Note: URL prefix was truncated to fit the key length limit")


if __name__ == "__main__":
    main()
