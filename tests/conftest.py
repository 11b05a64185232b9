# Centralized pytest configuration file (fixtures, hooks, plugins, etc.)
import asyncio

import pytest
from asgi_lifespan import LifespanManager
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from httpx import AsyncClient, ASGITransport
from redis.asyncio import Redis

from frontdoor.app import create_app
from frontdoor.config import RouteRule, Settings
from frontdoor.rate_limit import RateLimiter

BAD_GATEWAY_PAGE = b"<html><body><h1>Something went wrong upstream</h1></body></html>"
SLOW_UPSTREAM_DELAY = 0.5


#----Static root and error pages for tests----
@pytest.fixture
def static_root(tmp_path):
    root = tmp_path / "www"
    (root / "docs").mkdir(parents=True)
    (root / "index.html").write_text("<h1>home</h1>")
    (root / "about.html").write_text("<h1>about</h1>")
    (root / "app.js").write_text("console.log('hi');")
    (root / "docs" / "index.html").write_text("<h1>docs</h1>")
    (tmp_path / "secret.txt").write_text("do not serve")
    return root


@pytest.fixture
def error_page(tmp_path):
    page = tmp_path / "50x.html"
    page.write_bytes(BAD_GATEWAY_PAGE)
    return page


@pytest.fixture
def settings(static_root, error_page) -> Settings:
    return Settings(
        routes=(
            RouteRule(prefix='/hello', kind='proxy', upstream='http://upstream'),
            RouteRule(prefix='/echo', kind='proxy', upstream='http://upstream'),
            RouteRule(prefix='/api', kind='proxy', upstream='http://upstream', strip_prefix=True),
            RouteRule(prefix='/raw', kind='proxy', upstream='http://upstream'),
            RouteRule(prefix='/stripped', kind='proxy', upstream='http://upstream/raw', strip_prefix=True),
            RouteRule(prefix='/', kind='static', root=static_root),
        ),
        error_pages={500: error_page, 502: error_page, 503: error_page, 504: error_page},
    )


@pytest.fixture
def slow_upstream_delay() -> float:
    return SLOW_UPSTREAM_DELAY


@pytest.fixture
async def redis_client():
    """Real Redis client for integration testing"""
    redis = Redis.from_url('redis://localhost:6379', decode_responses=True)

    # Verify Redis is running
    try:
        await redis.ping()
    except Exception:
        await redis.aclose()
        pytest.skip('Redis not available')

    yield redis

    # Cleanup
    await redis.flushdb()
    await redis.aclose()


@pytest.fixture
async def rate_limiter(redis_client):
    """Real rate limiter for integration testing"""
    limiter = RateLimiter(redis_client)
    await limiter.load()

    yield limiter


@pytest.fixture
def upstream_app() -> FastAPI:
    app = FastAPI()     # mock upstream app for tests

    @app.get("/hello")
    async def hello(request: Request):  # tests path+method forwarding and response body
        return {
            "message": "hello from upstream",
            "received_headers": dict(request.headers),
            "query": str(request.query_params),
        }

    @app.post("/echo")
    async def echo(payload: dict): # tests body forwarding and proxy correctness
        return payload

    @app.get("/users/{user_id}")
    async def user(user_id: int, request: Request):
        return {"id": user_id, "path": request.url.path}

    @app.get("/hello/missing")
    async def missing():
        return PlainTextResponse("nope", status_code=404)

    @app.get("/hello/stream")
    async def stream():
        async def chunks():
            for i in range(3):
                yield f"chunk-{i}\n".encode()
        return StreamingResponse(chunks(), media_type="text/plain")

    @app.get("/hello/cookies")
    async def cookies():
        response = PlainTextResponse("ok")
        response.set_cookie("a", "1")
        response.set_cookie("b", "2")
        return response

    @app.get("/hello/slow")
    async def slow():
        await asyncio.sleep(SLOW_UPSTREAM_DELAY)
        return {"message": "finally"}

    @app.api_route("/raw/{rest:path}", methods=["GET", "POST"])
    async def raw(request: Request):  # path exactly as it came over the wire
        raw_path = request.scope["raw_path"].decode("latin-1")
        return {"raw_path": raw_path.split("?", 1)[0], "query": request.url.query}

    return app


@pytest.fixture
async def upstream_client(upstream_app: FastAPI):
    # Transport to fake upstream
    client = AsyncClient(
        transport=ASGITransport(app=upstream_app),
        base_url="http://upstream",
    )
    yield client
    await client.aclose()


@pytest.fixture
def proxy_app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture
async def proxy_client(proxy_app: FastAPI, upstream_client: AsyncClient):
    """Proxy test client with the upstream mocked via ASGITransport"""
    # Upstream client is picked up by the lifespan instead of a real connection pool
    proxy_app.state.http_client = upstream_client

    async with LifespanManager(proxy_app):
        # client with transport to proxy app
        async with AsyncClient(
                transport=ASGITransport(app=proxy_app),
                base_url="http://frontdoor") as client:
            yield client
