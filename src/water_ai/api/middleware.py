from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response

REQUEST_ID_HEADER = "X-Request-Id"

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next: Callable) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

    # available to handlers as request.state.request_id
    request.state.request_id = request_id

    started = time.perf_counter()
    response: Response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id

    logger.debug(
        "%s %s -> %d (%.1fms) [%s]",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
        request_id,
    )
    return response
