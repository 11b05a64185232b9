from fastapi.responses import JSONResponse
from starlette.datastructures import MutableHeaders
from starlette.requests import Request

from .rate_limit import bucket_key
from .routing import find_route


class RateLimitMiddleware:
    """
    Token-bucket limiting per route and client, ahead of the dispatcher.

    Only requests whose matching rule carries a ``rate_limit`` consume tokens;
    nothing happens unless the lifespan started a limiter.
    """
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope["app"].state
        limiter = getattr(state, "limiter", None)
        rule, _ = find_route(state.settings.routes, scope["path"])
        if limiter is None or rule is None or rule.rate_limit is None:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive=receive)
        client_id = request.headers.get("x-api-key") or (request.client.host if request.client else "unknown")

        decision = await limiter.take(bucket_key(rule.prefix, client_id), rule.rate_limit)
        if not decision.allowed:
            response = JSONResponse(
                {"detail": "Rate limit exceeded"},
                status_code=429,
                headers={"Retry-After": str(decision.retry_after), "X-RateLimit-Remaining": "0"},
            )
            await response(scope, receive, send)
            return

        async def send_with_remaining(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["X-RateLimit-Limit"] = str(rule.rate_limit.capacity)
                headers["X-RateLimit-Remaining"] = str(int(decision.remaining))
            await send(message)

        await self.app(scope, receive, send_with_remaining)
