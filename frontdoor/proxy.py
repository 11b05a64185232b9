import asyncio
import logging
from collections.abc import AsyncIterator
from urllib.parse import quote

import anyio
import httpx
from fastapi import Request, WebSocket
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI

from .config import RouteRule
from .errors import ProxyError, UpstreamTimeout, UpstreamUnreachable, error_response

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailers',
    'transfer-encoding',
    'upgrade',
})

# The websocket client performs its own handshake
WEBSOCKET_HANDSHAKE_HEADERS = frozenset({
    'host',
    'sec-websocket-key',
    'sec-websocket-version',
    'sec-websocket-extensions',
    'sec-websocket-protocol',
    'sec-websocket-accept',
})

FORWARDED_HEADERS = frozenset({'x-forwarded-for', 'x-forwarded-host', 'x-forwarded-proto'})


def _connection_tokens(value: str) -> set[str]:
    """Header names listed in ``Connection`` are hop-by-hop for this message only."""
    return {t.strip().lower() for t in value.split(',') if t.strip()}


def forwarded_headers(conn: Request | WebSocket, rule: RouteRule,
                      drop: frozenset[str] = frozenset()) -> list[tuple[str, str]]:
    """
    Client headers as they should reach the upstream: hop-by-hop headers removed,
    ``Host`` rewritten and the original client recorded in ``X-Forwarded-*``.
    """
    connection = ', '.join(conn.headers.getlist('connection'))
    excluded = HOP_BY_HOP_HEADERS | FORWARDED_HEADERS | drop | _connection_tokens(connection) | {'host'}
    headers = [(k, v) for k, v in conn.headers.items() if k.lower() not in excluded]

    if rule.host_header and 'host' not in drop:
        headers.append(('host', rule.host_header))

    client_host = conn.client.host if conn.client else None
    prior = conn.headers.get('x-forwarded-for')
    if client_host:
        chain = f'{prior}, {client_host}' if prior else client_host
        headers.append(('x-forwarded-for', chain))
    elif prior:
        headers.append(('x-forwarded-for', prior))

    if 'host' in conn.headers:
        headers.append(('x-forwarded-host', conn.headers['host']))
    headers.append(('x-forwarded-proto', conn.url.scheme.replace('ws', 'http')))
    return headers


def original_path(scope, rule: RouteRule, suffix: str) -> str:
    """
    The path exactly as the client encoded it, so ``%2F``, ``%3F`` or ``%2e``
    reach the upstream untouched. With ``strip_prefix`` the encoded prefix is
    cut off. ``suffix`` (decoded) is only re-encoded when no ``raw_path`` is
    available.
    """
    raw = scope.get('raw_path')
    if not raw:
        return quote(suffix)

    path = raw.decode('latin-1').split('?', 1)[0]
    if rule.strip_prefix:
        encoded_prefix = quote(rule.prefix)
        if not path.startswith(encoded_prefix):
            return quote(suffix)
        path = path[len(encoded_prefix):]
        if not path.startswith('/'):
            path = '/' + path
    return path


def upstream_url(rule: RouteRule, path: str, query: str) -> str:
    url = rule.upstream + path
    if query:
        url += '?' + query
    return url


async def _relay(upstream: httpx.Response) -> AsyncIterator[bytes]:
    # raw bytes, so upstream content-encoding and content-length stay valid
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as exc:
        logger.warning('Upstream %s failed mid-response: %r', upstream.url, exc)
        raise
    finally:
        # the client may have disconnected; the socket goes back to the pool either way
        with anyio.CancelScope(shield=True):
            await upstream.aclose()


async def forward_http(request: Request, rule: RouteRule, suffix: str) -> StreamingResponse:
    client: httpx.AsyncClient = request.app.state.http_client
    url = upstream_url(rule, original_path(request.scope, rule, suffix), request.url.query)

    has_body = 'content-length' in request.headers or 'transfer-encoding' in request.headers
    upstream_request = client.build_request(
        request.method,
        url,
        headers=forwarded_headers(request, rule),
        content=request.stream() if has_body else None,
    )

    # ---- Proxy Request ----
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.PoolTimeout as exc:
        logger.warning('No free connection for %s: %r', url, exc)
        raise UpstreamUnreachable(f'Upstream connection pool exhausted: {exc!r}', status_code=503)
    except httpx.TimeoutException as exc:
        logger.warning('Upstream %s timed out: %r', url, exc)
        raise UpstreamTimeout(f'Upstream timed out: {exc!r}')
    except httpx.RequestError as exc:
        logger.warning('Upstream %s unreachable: %r', url, exc)
        raise UpstreamUnreachable(f'Upstream unreachable: {exc!r}')

    logger.debug('%s %s -> %s %s', request.method, request.url.path, url, upstream.status_code)

    response = StreamingResponse(
        _relay(upstream),
        status_code=upstream.status_code,
        # closes the upstream if the body iterator never started
        background=BackgroundTask(upstream.aclose),
    )
    excluded = HOP_BY_HOP_HEADERS | _connection_tokens(upstream.headers.get('connection', ''))
    for key, value in upstream.headers.multi_items():
        if key.lower() not in excluded:
            response.headers.append(key, value)
    return response


def websocket_url(rule: RouteRule, path: str, query: str) -> str:
    url = upstream_url(rule, path, query)
    if url.startswith('https://'):
        return 'wss://' + url[len('https://'):]
    return 'ws://' + url[len('http://'):]


def _sendable_close_code(code: int | None) -> int:
    # 1005/1006/1015 are reserved for reporting and may not be sent on the wire
    if code is None or code == 1005:
        return 1000
    if code in (1006, 1015) or not 1000 <= code <= 4999:
        return 1011
    return code


async def _deny(websocket: WebSocket, error: ProxyError) -> None:
    if 'websocket.http.response' in websocket.scope.get('extensions', {}):
        response = error_response(websocket.app.state.error_pages, error.status_code, error.detail)
        await websocket.send_denial_response(response)
    else:
        await websocket.close(code=1011)


async def _pump_client(websocket: WebSocket, upstream) -> int | None:
    """Returns the client's close code, or None when the upstream went away first."""
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                return message.get('code', 1005)
            if message.get('text') is not None:
                await upstream.send(message['text'])
            elif message.get('bytes') is not None:
                await upstream.send(message['bytes'])
    except ConnectionClosed:
        return None


async def _pump_upstream(upstream, websocket: WebSocket) -> None:
    try:
        async for message in upstream:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)
    except (ConnectionClosed, WebSocketDisconnect):
        pass


async def forward_websocket(websocket: WebSocket, rule: RouteRule, suffix: str) -> None:
    """
    Relay a WebSocket upgrade to the upstream and pump frames both ways until
    either side closes.
    """
    connect = websocket.app.state.ws_connect
    settings = websocket.app.state.settings
    url = websocket_url(rule, original_path(websocket.scope, rule, suffix), websocket.url.query)

    try:
        upstream = await connect(
            url,
            additional_headers=forwarded_headers(websocket, rule, drop=WEBSOCKET_HANDSHAKE_HEADERS),
            subprotocols=websocket.scope.get('subprotocols') or None,
            open_timeout=settings.connect_timeout,
        )
    except TimeoutError as exc:
        logger.warning('Upstream websocket %s timed out: %r', url, exc)
        await _deny(websocket, UpstreamTimeout(f'Upstream timed out: {exc!r}'))
        return
    except InvalidStatus as exc:
        logger.warning('Upstream websocket %s rejected the handshake: %s', url, exc)
        await _deny(websocket, UpstreamUnreachable(str(exc)))
        return
    except (OSError, InvalidHandshake, InvalidURI) as exc:
        logger.warning('Upstream websocket %s unreachable: %r', url, exc)
        await _deny(websocket, UpstreamUnreachable(f'Upstream unreachable: {exc!r}'))
        return

    tasks = ()
    try:
        await websocket.accept(subprotocol=upstream.subprotocol)
        from_client = asyncio.create_task(_pump_client(websocket, upstream))
        from_upstream = asyncio.create_task(_pump_upstream(upstream, websocket))
        tasks = (from_client, from_upstream)
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        client_code = from_client.result() if from_client in done else None
        if client_code is not None:
            await upstream.close(code=_sendable_close_code(client_code))
        elif websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=_sendable_close_code(upstream.close_code))
    finally:
        for task in tasks:
            task.cancel()
        # released even when the handler itself is being cancelled
        with anyio.CancelScope(shield=True):
            await asyncio.gather(*tasks, return_exceptions=True)
            await upstream.close()
