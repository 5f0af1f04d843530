"""支付回调路由"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from exceptions.exception_handler import payment_error_status
from libs.payment import NotifyPayload, PaymentManager
from libs.payment.exceptions import PaymentError
from schemas.response import ApiResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["Payment Callback"])


def get_payment_manager(request: Request) -> PaymentManager:
    manager = getattr(request.app.state, "payment_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="支付服务未初始化")
    return manager


@router.post("/{method}/notify")
async def payment_notify(
    method: str,
    request: Request,
    manager: PaymentManager = Depends(get_payment_manager),
):
    """
    支付回调

    method 为 wechat / alipay（或带子类型，如 wechat.native）。
    回调处理失败时按支付平台要求的格式应答，平台会自动重试。
    """
    body = await request.body()
    payload = NotifyPayload(
        gateway=method.partition(".")[0],
        raw_body=body,
        headers=dict(request.headers),
    )

    try:
        outcome = await manager.process_notify(method, payload)
    except PaymentError as e:
        logger.error(f"支付回调无法分发: method={method}, error={e!r}")
        return Response(content="fail", status_code=payment_error_status(e), media_type="text/plain")
    except Exception as e:
        logger.exception(f"支付回调异常: method={method}, error={e}")
        return Response(content="fail", status_code=500, media_type="text/plain")

    return Response(
        content=outcome.ack.content,
        status_code=outcome.ack.status_code,
        media_type=outcome.ack.media_type,
    )


@router.get("/providers")
async def get_providers_status(
    manager: PaymentManager = Depends(get_payment_manager),
) -> ApiResponse[list[dict]]:
    """支付提供商状态"""
    return ApiResponse(data=manager.get_providers_status())
