#!/usr/bin/env python3
"""
Warm the proxy's on-disk cache for a list of upstream paths.

Runs the same read-through fetch the proxy uses, so fresh records are left
alone and missing or expired ones are fetched and written. Can optionally
sweep expired records first. Settings come from the usual PROXY_*
environment variables unless overridden on the command line.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from service_proxy.app.adapters.upstream_client import UpstreamClient
from service_proxy.app.caching.fetch_cache import FetchCache
from service_proxy.app.caching.store import FileCacheStore
from service_proxy.app.caching.sweeper import CacheSweeper
from shared.config import get_config
from shared.logging import configure_logging


async def warm(
    *,
    upstream_base_url: str,
    cache_root: str,
    ttl_ms: int,
    paths: List[str],
    sweep: bool,
    timeout: Optional[float] = None,
    upstream: Optional[UpstreamClient] = None,
) -> Dict[str, Any]:
    """Execute cache warming and return the summary."""
    store = FileCacheStore(cache_root)
    client = upstream or UpstreamClient(timeout)
    fetch_cache = FetchCache(store, client, ttl_ms=ttl_ms)
    base = upstream_base_url.rstrip("/")

    summary: Dict[str, Any] = {"planned": len(paths), "warmed": 0, "hits": 0, "errors": []}
    if sweep:
        summary["sweep"] = await CacheSweeper(store, ttl_ms=ttl_ms).sweep_once()

    try:
        for path in paths:
            url = f"{base}/{path.lstrip('/')}"
            try:
                result = await fetch_cache.fetch_with_cache(url)
            except Exception as exc:
                summary["errors"].append({"url": url, "error": str(exc)})
                continue
            if result.from_cache:
                summary["hits"] += 1
            else:
                summary["warmed"] += 1
    finally:
        if upstream is None:
            await client.close()

    return summary


def _read_paths(paths: List[str], paths_file: Optional[Path]) -> List[str]:
    collected = list(paths)
    if paths_file:
        for line in paths_file.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                collected.append(line)
    return collected


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    config = get_config()
    parser = argparse.ArgumentParser(description="Warm the caching proxy's on-disk cache.")
    parser.add_argument("--upstream", default=config.upstream_base_url, help="Upstream base URL")
    parser.add_argument("--cache-root", default=config.cache_root, help="Cache root directory")
    parser.add_argument("--ttl-ms", type=int, default=config.cache_ttl_ms, help="Record TTL in milliseconds")
    parser.add_argument("--timeout", type=float, default=config.upstream_timeout_seconds, help="Upstream timeout in seconds")
    parser.add_argument("--path", dest="paths", action="append", default=[], help="Upstream path to warm (repeatable)")
    parser.add_argument("--paths-file", type=Path, default=None, help="File with one path per line")
    parser.add_argument("--sweep", action="store_true", help="Remove expired records before warming")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    parser.add_argument("--log-level", default=config.log_level, help="Log level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging("proxy", args.log_level)
    try:
        summary = asyncio.run(
            warm(
                upstream_base_url=args.upstream,
                cache_root=args.cache_root,
                ttl_ms=args.ttl_ms,
                paths=_read_paths(args.paths, args.paths_file),
                sweep=args.sweep,
                timeout=args.timeout,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
