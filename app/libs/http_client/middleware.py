import logging

from .models import Request, Response
from .types import Middleware, NextFn


def logging_middleware(logger: logging.Logger | None = None) -> Middleware:
    """记录网关调用；查询串中只有商户号，不含敏感数据"""
    log = logger or logging.getLogger(__name__)

    async def middleware(request: Request, next: NextFn) -> Response:
        log.debug(f"-> {request.method} {request.path_with_query}")
        response = await next(request)
        level = logging.INFO if response.ok else logging.WARNING
        log.log(level, f"<- {request.method} {request.path_with_query} {response.status_code} ({response.latency_ms}ms)")
        return response

    return middleware
