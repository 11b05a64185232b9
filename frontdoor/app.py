import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response, WebSocket
from redis.asyncio import Redis
from websockets.asyncio.client import connect as websocket_connect

from .config import Settings, load_settings
from .errors import ErrorPages, NotFound, ProxyError, proxy_error_handler, unexpected_error_handler
from .middleware import RateLimitMiddleware
from .proxy import forward_http, forward_websocket
from .rate_limit import RateLimiter
from .routing import find_route
from .static import serve_static

logger = logging.getLogger(__name__)

METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown logic."""
    settings: Settings = app.state.settings

    #---- Startup ----
    if app.state.http_client is None:
        app.state.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout, connect=settings.connect_timeout),
            limits=httpx.Limits(max_connections=settings.max_connections),
            trust_env=False,    # upstreams are addressed directly, never via HTTP_PROXY
        )

    if settings.rate_limited and app.state.limiter is None:
        redis = Redis.from_url(settings.redis_url)
        await redis.ping()
        logger.info("Rate limiting via %s", settings.redis_url)

        limiter = RateLimiter(redis)
        await limiter.load()

        app.state.redis = redis
        app.state.limiter = limiter

    for rule in settings.routes:
        target = rule.root if rule.kind == "static" else rule.upstream
        limit = f" (limit {rule.rate_limit.capacity} burst, {rule.rate_limit.rate}/s)" if rule.rate_limit else ""
        logger.info("Route %s -> %s %s%s", rule.prefix, rule.kind, target, limit)

    try:
        yield
    finally:
        #---- Shutdown ----
        await app.state.http_client.aclose()
        if app.state.redis is not None:
            await app.state.redis.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the ASGI application around an immutable route table.

    Error pages are read here so a missing document fails at startup rather
    than on the first upstream failure.
    """
    settings = settings or load_settings()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.error_pages = ErrorPages.load(settings.error_pages)
    app.state.http_client = None
    app.state.ws_connect = websocket_connect
    app.state.redis = None
    app.state.limiter = None

    app.add_middleware(RateLimitMiddleware)
    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.api_route(path="/{path:path}", methods=METHODS)
    async def dispatch(path: str, request: Request) -> Response:
        rule, suffix = find_route(settings.routes, request.scope["path"])
        if rule is None:
            raise NotFound("No route found")

        if rule.kind == "static":
            return await serve_static(rule, suffix, request.method)
        return await forward_http(request, rule, suffix)

    @app.websocket("/{path:path}")
    async def dispatch_websocket(websocket: WebSocket, path: str) -> None:
        rule, suffix = find_route(settings.routes, websocket.scope["path"])
        if rule is None or rule.kind != "proxy":
            logger.debug("Rejecting websocket upgrade for %s", websocket.scope["path"])
            await websocket.close(code=1008)
            return

        await forward_websocket(websocket, rule, suffix)

    return app
