"""
Caching forwarding proxy service.
"""

from typing import Callable, Dict, Optional

import httpx
from fastapi import Request, Response
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ServiceError
from .adapters.upstream_client import UpstreamClient
from .caching.fetch_cache import CORS_HEADERS, FetchCache, now_ms
from .caching.store import FileCacheStore
from .caching.sweeper import CacheSweeper


PROXY_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


class ProxyService(BaseService):
    """Forwards GET requests to the upstream through the response cache."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__("proxy", config)
        self.upstream_base_url = self.config.upstream_base_url.rstrip("/")

        self.cache_store = FileCacheStore(self.config.cache_root)
        self.upstream_client = UpstreamClient(
            self.config.upstream_timeout_seconds,
            metrics=self.metrics,
            transport=transport,
        )
        self.fetch_cache = FetchCache(
            self.cache_store,
            self.upstream_client,
            ttl_ms=self.config.cache_ttl_ms,
            clock=clock,
            metrics=self.metrics,
        )
        self.sweeper = CacheSweeper(
            self.cache_store,
            ttl_ms=self.config.cache_ttl_ms,
            interval_seconds=self.config.sweep_interval_seconds,
            clock=clock,
            metrics=self.metrics,
        )

        self._setup_proxy_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.proxy_service = self

    async def startup(self):
        self.logger.info(
            "Proxy starting",
            upstream=self.upstream_base_url,
            cache_root=str(self.cache_store.root),
            ttl_ms=self.config.cache_ttl_ms,
        )
        await self.sweeper.start()

    async def shutdown(self):
        await self.sweeper.stop()
        await self.upstream_client.close()

    def resolve_target_url(self, request: Request) -> str:
        """Map the inbound path onto the upstream base URL."""
        raw_path = request.scope.get("raw_path")
        # raw_path keeps percent-escapes such as %2F intact
        path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
        if not path.startswith("/"):
            path = f"/{path}"

        target = f"{self.upstream_base_url}{path}"
        if self.config.forward_query_string and request.url.query:
            target = f"{target}?{request.url.query}"
        return target

    async def _check_dependencies(self) -> Dict[str, str]:
        if not self.cache_store.is_writable():
            raise ServiceError("Cache root is not writable", {"cache_root": str(self.cache_store.root)})
        return {"cache": "ok"}

    def _setup_proxy_routes(self):
        """Set up the catch-all proxy route."""

        @self.app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
        async def proxy(request: Request, path: str):
            if request.method == "OPTIONS":
                return Response(status_code=200, headers=CORS_HEADERS)

            if request.method != "GET":
                return PlainTextResponse("Method not allowed", status_code=405)

            url = self.resolve_target_url(request)
            try:
                result = await self.fetch_cache.fetch_with_cache(url)
                return Response(
                    content=result.body,
                    status_code=result.status,
                    headers=result.headers,
                )
            except Exception as exc:
                self.logger.error("Proxy error", url=url, error=str(exc), error_type=type(exc).__name__)
                self.metrics.record_error("PROXY_FETCH_ERROR")
                return PlainTextResponse("Error fetching the URL.", status_code=500)

        @self.app.exception_handler(StarletteHTTPException)
        async def method_not_allowed_handler(request: Request, exc: StarletteHTTPException):
            # Methods outside PROXY_METHODS never reach the catch-all route
            if exc.status_code == 405:
                return PlainTextResponse("Method not allowed", status_code=405)
            return await http_exception_handler(request, exc)


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = ProxyService(config, **kwargs)
    return service.app


def main():
    service = ProxyService(get_config())
    service.run()


if __name__ == "__main__":
    main()
