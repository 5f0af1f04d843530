"""付款码支付状态机

    INITIATED ──SUCCESS──────────────▶ SUCCESS
        │ ──SYSTEMERROR / 响应不可用──▶ AMBIGUOUS_SYSTEM_ERROR ──▶ SUCCESS | INDETERMINATE_REVERSED
        │ ──USERPAYING───▶ AMBIGUOUS_USER_PAYING  ──▶ SUCCESS | FAIL | TIMEOUT_REVERSED
        └ ──其他错误─────▶ FAIL
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .exceptions import (
    GatewayBusinessError,
    IndeterminateStateError,
    InvalidPayloadError,
    NetworkError,
    PaymentError,
    PaymentTimeoutError,
    VerificationFailedError,
)
from .wechat_v2 import WechatPayV2Client

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], float]

# 出现以下错误时微信可能已受理请求
UNUSABLE_RESPONSE_ERRORS = (NetworkError, InvalidPayloadError, VerificationFailedError)

# 查询到以下交易状态时立即结束轮询
FAILED_TRADE_STATES = frozenset({"PAYERROR", "CLOSED", "REVOKED"})


class MicropayState(StrEnum):
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"
    AMBIGUOUS_SYSTEM_ERROR = "AMBIGUOUS_SYSTEM_ERROR"
    AMBIGUOUS_USER_PAYING = "AMBIGUOUS_USER_PAYING"
    TIMEOUT_REVERSED = "TIMEOUT_REVERSED"
    INDETERMINATE_REVERSED = "INDETERMINATE_REVERSED"


TERMINAL_STATES = frozenset(
    {
        MicropayState.SUCCESS,
        MicropayState.FAIL,
        MicropayState.TIMEOUT_REVERSED,
        MicropayState.INDETERMINATE_REVERSED,
    }
)


@dataclass
class _MicropayContext:
    out_trade_no: str
    params: dict[str, Any]
    deadline: float
    result: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    history: list[MicropayState] = field(default_factory=lambda: [MicropayState.INITIATED])


def is_trade_paid(result: dict[str, str]) -> bool:
    return result.get("result_code") == "SUCCESS" and result.get("trade_state") == "SUCCESS"


class MicropayStateMachine:
    """
    驱动一次付款码支付直到终态

    Args:
        client: 微信支付 V2 客户端
        grace_period: SYSTEMERROR 后等待多久再查询（秒）
        poll_interval: USERPAYING 轮询间隔（秒）
        poll_timeout: 从进入状态机开始计算的总超时（秒）
        sleep: 等待函数，默认 asyncio.sleep
        clock: 单调时钟，默认 time.monotonic
    """

    def __init__(
        self,
        client: WechatPayV2Client,
        grace_period: float = 5.0,
        poll_interval: float = 10.0,
        poll_timeout: float = 45.0,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ):
        self.client = client
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep
        self._clock = clock
        self._transitions: dict[MicropayState, Callable[[_MicropayContext], Awaitable[MicropayState]]] = {
            MicropayState.INITIATED: self._on_initiated,
            MicropayState.AMBIGUOUS_SYSTEM_ERROR: self._on_system_error,
            MicropayState.AMBIGUOUS_USER_PAYING: self._on_user_paying,
        }

    async def run(self, params: dict[str, Any]) -> dict[str, str]:
        """
        执行付款码支付

        Returns:
            dict: 支付成功时的微信返回数据（micropay 或 orderquery）

        Raises:
            GatewayBusinessError: 支付失败
            PaymentTimeoutError: 用户在超时前未完成支付，订单已撤销
            IndeterminateStateError: 系统错误且查询未确认成功，订单已尝试撤销
        """
        ctx = _MicropayContext(
            out_trade_no=params["out_trade_no"],
            params=params,
            deadline=self._clock() + self.poll_timeout,
        )
        state = MicropayState.INITIATED
        while state not in TERMINAL_STATES:
            state = await self._transitions[state](ctx)
            ctx.history.append(state)

        logger.info(
            f"付款码支付结束: out_trade_no={ctx.out_trade_no}, "
            f"states={' -> '.join(ctx.history)}"
        )
        return self._finish(state, ctx)

    def _finish(self, state: MicropayState, ctx: _MicropayContext) -> dict[str, str]:
        match state:
            case MicropayState.SUCCESS:
                return ctx.result
            case MicropayState.FAIL:
                raise GatewayBusinessError(
                    ctx.error_message or "付款码支付失败",
                    gateway_code=ctx.error_code,
                    details=ctx.result,
                )
            case MicropayState.TIMEOUT_REVERSED:
                raise PaymentTimeoutError(
                    f"用户支付超时（{self.poll_timeout:g} 秒），订单已撤销",
                    details={"out_trade_no": ctx.out_trade_no},
                )
            case _:
                raise IndeterminateStateError(
                    "系统错误且未能确认支付结果，订单已尝试撤销",
                    details={"out_trade_no": ctx.out_trade_no},
                )

    async def _on_initiated(self, ctx: _MicropayContext) -> MicropayState:
        try:
            result = await self.client.micropay(ctx.params)
        except UNUSABLE_RESPONSE_ERRORS as e:
            # 请求可能已到达微信并扣款，按系统错误处理
            logger.warning(f"付款码支付响应不可用，转入查询: out_trade_no={ctx.out_trade_no}, error={e.message}")
            return MicropayState.AMBIGUOUS_SYSTEM_ERROR
        except GatewayBusinessError as e:
            ctx.error_code = e.gateway_code
            ctx.error_message = e.message
            ctx.result = e.details if isinstance(e.details, dict) else {}
            return MicropayState.FAIL

        ctx.result = result
        if result.get("result_code") == "SUCCESS":
            return MicropayState.SUCCESS

        err_code = result.get("err_code")
        if err_code == "SYSTEMERROR":
            return MicropayState.AMBIGUOUS_SYSTEM_ERROR
        if err_code == "USERPAYING":
            return MicropayState.AMBIGUOUS_USER_PAYING

        ctx.error_code = err_code
        ctx.error_message = result.get("err_code_des") or err_code
        return MicropayState.FAIL

    async def _on_system_error(self, ctx: _MicropayContext) -> MicropayState:
        await self._sleep(self.grace_period)
        try:
            query = await self.client.query_order(out_trade_no=ctx.out_trade_no)
        except PaymentError as e:
            logger.warning(f"付款码支付系统错误后查询失败: out_trade_no={ctx.out_trade_no}, error={e.message}")
        else:
            if is_trade_paid(query):
                ctx.result = query
                return MicropayState.SUCCESS

        await self._reverse(ctx)
        return MicropayState.INDETERMINATE_REVERSED

    async def _on_user_paying(self, ctx: _MicropayContext) -> MicropayState:
        while (remaining := ctx.deadline - self._clock()) > 0:
            await self._sleep(min(self.poll_interval, remaining))
            try:
                query = await self.client.query_order(out_trade_no=ctx.out_trade_no)
            except PaymentError as e:
                logger.warning(f"付款码支付轮询查询失败: out_trade_no={ctx.out_trade_no}, error={e.message}")
                continue

            if query.get("result_code") != "SUCCESS":
                continue
            trade_state = query.get("trade_state")
            if trade_state == "SUCCESS":
                ctx.result = query
                return MicropayState.SUCCESS
            if trade_state in FAILED_TRADE_STATES:
                ctx.result = query
                ctx.error_code = trade_state
                ctx.error_message = query.get("trade_state_desc") or f"交易状态: {trade_state}"
                return MicropayState.FAIL

        await self._reverse(ctx)
        return MicropayState.TIMEOUT_REVERSED

    async def _reverse(self, ctx: _MicropayContext) -> None:
        try:
            await self.client.reverse_order(out_trade_no=ctx.out_trade_no)
            logger.info(f"付款码订单已撤销: out_trade_no={ctx.out_trade_no}")
        except PaymentError as e:
            logger.error(f"付款码订单撤销失败: out_trade_no={ctx.out_trade_no}, error={e.message}")
