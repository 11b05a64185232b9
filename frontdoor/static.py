import logging
import os
import stat
from pathlib import Path

import anyio.to_thread
from fastapi.responses import FileResponse

from .config import RouteRule
from .errors import Forbidden, InternalError, MethodNotAllowed, NotFound

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "HEAD")


def resolve_path(root: Path, request_path: str) -> Path:
    """
    Map a decoded request path onto a file path below ``root``.

    Raises ``Forbidden`` when the resolved path (after ``..`` and symlinks)
    lands outside the root.
    """
    if "\x00" in request_path:
        raise NotFound()

    root = root.resolve()
    candidate = (root / request_path.lstrip("/")).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        logger.warning("Rejected path outside static root: %r", request_path)
        raise Forbidden()
    return candidate


def _lookup(rule: RouteRule, request_path: str) -> tuple[Path, os.stat_result]:
    path = resolve_path(rule.root, request_path)

    try:
        st = path.stat()
        if stat.S_ISDIR(st.st_mode):
            path = path / rule.index
            st = path.stat()
    except (FileNotFoundError, NotADirectoryError):
        if not rule.spa_fallback:
            raise NotFound()
        path = rule.root.resolve() / rule.index
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            raise NotFound()
    except OSError as exc:
        logger.error("Cannot stat %s: %s", path, exc)
        raise InternalError()

    if not stat.S_ISREG(st.st_mode):
        raise NotFound()
    if not os.access(path, os.R_OK):
        logger.error("Static file is not readable: %s", path)
        raise InternalError()
    return path, st


async def serve_static(rule: RouteRule, request_path: str, method: str) -> FileResponse:
    if method not in ALLOWED_METHODS:
        raise MethodNotAllowed(headers={"Allow": ", ".join(ALLOWED_METHODS)})

    path, st = await anyio.to_thread.run_sync(_lookup, rule, request_path)
    logger.debug("Serving %s from %s", request_path, path)

    # FileResponse streams the file in chunks and guesses the media type
    return FileResponse(path, stat_result=st)
