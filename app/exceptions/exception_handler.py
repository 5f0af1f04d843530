import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from configs import app_config
from libs.payment.exceptions import (
    ManagerDestroyedError,
    PaymentConfigError,
    PaymentError,
    UnknownProviderError,
    UnsupportedMethodError,
)
from schemas.response import ApiResponse

logger = logging.getLogger(__name__)


def payment_error_status(exc: PaymentError) -> int:
    if isinstance(exc, (UnknownProviderError, UnsupportedMethodError)):
        return 404
    if isinstance(exc, (ManagerDestroyedError, PaymentConfigError)):
        return 503
    return 400


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    处理请求数据验证失败的异常
    """
    simplified_errors = [
        {
            "loc": ".".join(map(str, error["loc"])),
            "msg": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ApiResponse(code=422, msg="请求参数验证失败", data={"details": simplified_errors}).model_dump(),
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ApiResponse(code=exc.status_code, msg=exc.detail, data=None).model_dump(),
    )


async def payment_exception_handler(request: Request, exc: PaymentError):
    """
    处理支付异常
    """
    logger.warning(f"支付请求失败 {request.method} {request.url.path}: {exc!r}")
    return JSONResponse(
        status_code=payment_error_status(exc),
        content=ApiResponse(code=str(exc.code), msg=exc.message, data=None).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """
    捕获所有未被处理的异常
    """
    logger.exception(f"Unhandled exception on {request.method} {request.url}: {exc}")

    # 生产环境不泄露敏感异常信息
    error_detail = None
    if app_config.DEBUG:
        error_detail = {"type": type(exc).__name__, "message": str(exc)}

    return JSONResponse(
        status_code=500,
        content=ApiResponse(code=500, msg="服务器开小差了,请稍后再试", data=error_detail).model_dump(),
    )


def set_up(app: FastAPI):
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(PaymentError, payment_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
