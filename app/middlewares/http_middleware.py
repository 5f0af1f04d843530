import logging
from time import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from extensions.ext_logging import trace_id_generator, trace_id_var

logger = logging.getLogger(__name__)


def extract_remote_ip(request: Request) -> str:
    if request.headers.get("CF-Connecting-IP"):
        return request.headers["CF-Connecting-IP"]
    if request.headers.get("X-Forwarded-For"):
        return request.headers["X-Forwarded-For"].split(",")[0].strip()
    return request.client.host if request.client else ""


class CustomMiddleware(BaseHTTPMiddleware):
    """切面程序：为每个请求生成 trace id 并记录耗时"""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        # 微信支付回调带 Request-ID，优先沿用
        trace_id = (
            request.headers.get("x-trace-id")
            or request.headers.get("request-id")
            or trace_id_generator()
        )
        token = trace_id_var.set(trace_id)

        ip = extract_remote_ip(request)
        path = request.url.path
        try:
            logger.info(f"| {ip} | {request.method} {path}")
            start_time = time()
            response = await call_next(request)
            process_time = round(time() - start_time, 4)
            response.headers["X-Process-Time"] = str(process_time)
            response.headers["X-Trace-ID"] = trace_id
            logger.info(
                f"| {ip} | {request.method} {path} | {response.status_code} | process_time={process_time}s"
            )
            return response
        finally:
            trace_id_var.reset(token)
