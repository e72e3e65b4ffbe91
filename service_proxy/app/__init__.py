"""
Caching Proxy Service package.

The proxy forwards inbound GET requests to a fixed upstream base URL and
answers from a time-bounded on-disk cache when it can. Every response
carries a permissive CORS header set.

Structure:
- app.main: FastAPI app, catch-all proxy route and lifecycle wiring.
- app.adapters: HTTP client for the upstream service.
- app.caching: Record codec, file store, fetch orchestrator and sweeper.
"""
