import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)


class ProxyError(HTTPException):
    """Base for every failure that is turned into a response at the request boundary."""
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str | None = None, status_code: int | None = None,
                 headers: dict[str, str] | None = None):
        super().__init__(status_code=status_code or self.status_code,
                         detail=detail or self.default_detail,
                         headers=headers)


class NotFound(ProxyError):
    status_code = 404
    default_detail = "Not found"


class Forbidden(ProxyError):
    status_code = 403
    default_detail = "Forbidden"


class MethodNotAllowed(ProxyError):
    status_code = 405
    default_detail = "Method not allowed"


class UpstreamUnreachable(ProxyError):
    # 503 when the connection pool is exhausted
    status_code = 502
    default_detail = "Upstream unreachable"


class UpstreamTimeout(ProxyError):
    status_code = 504
    default_detail = "Upstream timed out"


class InternalError(ProxyError):
    status_code = 500
    default_detail = "Internal server error"


@dataclass(frozen=True)
class ErrorPage:
    body: bytes
    media_type: str


class ErrorPages:
    """Status code -> static document, read from disk once at startup."""

    def __init__(self, pages: dict[int, ErrorPage] | None = None):
        self._pages = dict(pages or {})

    @classmethod
    def load(cls, mapping: dict[int, Path]) -> "ErrorPages":
        pages = {}
        for status, path in mapping.items():
            media_type, _ = mimetypes.guess_type(str(path))
            pages[status] = ErrorPage(body=Path(path).read_bytes(),
                                      media_type=media_type or "text/html")
        return cls(pages)

    def get(self, status: int) -> ErrorPage | None:
        return self._pages.get(status)

    def __contains__(self, status: int) -> bool:
        return status in self._pages


def error_response(error_pages: ErrorPages, status: int, detail: str,
                   headers: dict[str, str] | None = None) -> Response:
    page = error_pages.get(status)
    if page is not None:
        return Response(content=page.body, status_code=status,
                        media_type=page.media_type, headers=headers)
    return JSONResponse({"detail": detail}, status_code=status, headers=headers)


async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    return error_response(request.app.state.error_pages, exc.status_code, exc.detail, exc.headers)


async def unexpected_error_handler(request: Request, exc: Exception) -> Response:
    logger.exception("Unhandled error while serving %s %s", request.method, request.url.path, exc_info=exc)
    error = InternalError()
    return error_response(request.app.state.error_pages, error.status_code, error.detail)
