"""支付回调 Hook"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from enum import StrEnum
from typing import Any

from .base import TradeStatus, UnifiedNotification

logger = logging.getLogger(__name__)

HookHandler = Callable[[UnifiedNotification], Awaitable[Any] | Any]


class HookEvent(StrEnum):
    ON_NOTIFY = "on_notify"  # 收到任意合法回调
    ON_SUCCESS = "on_success"
    ON_FAIL = "on_fail"
    ON_PENDING = "on_pending"


STATUS_EVENTS: dict[TradeStatus, HookEvent] = {
    TradeStatus.SUCCESS: HookEvent.ON_SUCCESS,
    TradeStatus.FAIL: HookEvent.ON_FAIL,
    TradeStatus.PENDING: HookEvent.ON_PENDING,
}


async def settle_all(handlers: Iterable[Callable[..., Any]], *args: Any) -> list[BaseException]:
    """
    并发执行所有处理函数（同步或异步），等待全部结束

    单个处理函数失败只记录日志，不影响其他处理函数，也不会向上抛出。

    Returns:
        list: 失败的异常列表
    """

    async def invoke(handler: Callable[..., Any]) -> None:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result

    handlers = list(handlers)
    results = await asyncio.gather(*(invoke(h) for h in handlers), return_exceptions=True)

    errors = []
    for handler, result in zip(handlers, results):
        if isinstance(result, BaseException):
            errors.append(result)
            name = getattr(handler, "__qualname__", repr(handler))
            logger.error(f"Hook 执行失败: handler={name}, error={result!r}", exc_info=result)
    return errors


class HookManager:
    """Hook 管理器"""

    def __init__(self, hooks: Mapping[str, Iterable[HookHandler]] | None = None):
        self._hooks: dict[HookEvent, list[HookHandler]] = {}
        for event, handlers in (hooks or {}).items():
            for handler in handlers:
                self.on(event, handler)

    def on(self, event: str, handler: HookHandler) -> HookHandler:
        if not callable(handler):
            raise TypeError(f"Hook 处理函数必须可调用: {handler!r}")
        self._hooks.setdefault(HookEvent(event), []).append(handler)
        return handler

    def off(self, event: str, handler: HookHandler) -> bool:
        handlers = self._hooks.get(HookEvent(event), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def get_handlers(self, event: str) -> tuple[HookHandler, ...]:
        return tuple(self._hooks.get(HookEvent(event), ()))

    def get_hook_count(self, event: str) -> int:
        return len(self._hooks.get(HookEvent(event), ()))

    def get_registered_events(self) -> list[HookEvent]:
        return [event for event, handlers in self._hooks.items() if handlers]

    def as_dict(self) -> dict[HookEvent, list[HookHandler]]:
        return {event: list(handlers) for event, handlers in self._hooks.items() if handlers}

    def copy(self) -> "HookManager":
        return HookManager(self.as_dict())

    def clear(self) -> None:
        self._hooks.clear()

    async def emit(self, event: str, notification: UnifiedNotification) -> None:
        await settle_all(self.get_handlers(event), notification)

    async def dispatch(self, notification: UnifiedNotification) -> None:
        """先触发 on_notify，再触发交易状态对应的事件"""
        await self.emit(HookEvent.ON_NOTIFY, notification)
        await self.emit(STATUS_EVENTS[notification.trade_status], notification)
