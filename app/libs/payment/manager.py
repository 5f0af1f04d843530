"""支付管理器"""

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .base import (
    CreateOrderRequest,
    CreateOrderResult,
    NotifyAck,
    NotifyPayload,
    PaymentProvider,
    QueryOrderRequest,
    QueryOrderResult,
    RefundQueryRequest,
    RefundRequest,
    RefundResult,
    UnifiedNotification,
)
from .exceptions import (
    ManagerDestroyedError,
    PaymentConfigError,
    PaymentError,
    UnknownProviderError,
    UnsupportedMethodError,
)
from .factory import ProviderFactory, default_provider_factory
from .hooks import HookEvent, HookHandler, HookManager

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "libs.payment"


class GlobalSettings(BaseModel):
    timeout: float = 30.0  # 网关请求超时（秒）
    retries: int = 0
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    enable_log: bool = True

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class PaymentManagerConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    providers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    hooks: dict[HookEvent, list[Callable[..., Any]]] = Field(default_factory=dict)
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)


@dataclass(frozen=True)
class _ManagerState:
    """一次配置对应的完整运行状态，整体替换，不原地修改"""

    generation: int
    config: PaymentManagerConfig
    providers: Mapping[str, PaymentProvider]
    hooks: HookManager


@dataclass(frozen=True)
class NotifyOutcome:
    notification: UnifiedNotification | None
    ack: NotifyAck
    error: PaymentError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class PaymentManager:
    """
    支付管理器

    按 ``<gateway>.<sub_method>`` 把调用分发给对应的提供商，并在回调处理完成后触发 Hook。
    """

    def __init__(
        self,
        config: PaymentManagerConfig | Mapping[str, Any] | None = None,
        factory: ProviderFactory | None = None,
    ):
        self._factory = factory or default_provider_factory
        self._destroyed = False
        # 已被替换但仍有调用在使用的提供商，最后一个调用结束时关闭
        self._retired: list[PaymentProvider] = []
        self._in_use: Counter[PaymentProvider] = Counter()
        self._closing: set[asyncio.Task] = set()
        config = self._coerce_config(config)
        self._state = self._build_state(config, generation=1)
        self._apply_global_settings(config.global_settings)

    @staticmethod
    def _coerce_config(config: PaymentManagerConfig | Mapping[str, Any] | None) -> PaymentManagerConfig:
        if isinstance(config, PaymentManagerConfig):
            return config
        try:
            return PaymentManagerConfig.model_validate(dict(config or {}))
        except ValidationError as e:
            raise PaymentConfigError(
                f"PaymentManager 配置格式错误: {e.error_count()} 个字段无效",
                details=e.errors(include_url=False),
            ) from e

    def _provider_config(self, config: PaymentManagerConfig, provider_config: Mapping[str, Any]) -> dict[str, Any]:
        settings = config.global_settings
        return {"timeout": settings.timeout, "retries": settings.retries, **provider_config}

    def _build_state(self, config: PaymentManagerConfig, generation: int) -> _ManagerState:
        providers = {
            name: self._factory.create(name, self._provider_config(config, provider_config))
            for name, provider_config in config.providers.items()
        }
        return _ManagerState(
            generation=generation,
            config=config,
            providers=MappingProxyType(providers),
            hooks=HookManager(config.hooks),
        )

    @staticmethod
    def _apply_global_settings(settings: GlobalSettings) -> None:
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.setLevel(settings.log_level if settings.enable_log else logging.CRITICAL + 1)

    def _current(self) -> _ManagerState:
        if self._destroyed:
            raise ManagerDestroyedError()
        return self._state

    def _swap(self, state: _ManagerState) -> None:
        self._state = state

    @property
    def generation(self) -> int:
        return self._current().generation

    # --------------------------------------------------------------- providers
    def _resolve_provider(self, state: _ManagerState, method: str, require_sub_method: bool = False) -> PaymentProvider:
        name, _, sub_method = method.partition(".")
        provider = state.providers.get(name)
        if provider is None:
            raise UnknownProviderError(f"未知的支付提供商: {name}")

        if require_sub_method and not sub_method:
            raise UnsupportedMethodError(f"支付方式缺少子类型: {method}")
        if sub_method and not provider.is_supported_method(method):
            raise UnsupportedMethodError(f"{name} 不支持支付方式: {method}")
        return provider

    def get_provider_instance(self, name: str) -> PaymentProvider | None:
        return self._current().providers.get(name)

    def add_provider(self, name: str, provider: PaymentProvider) -> PaymentProvider:
        """
        添加或替换提供商实例（不经过工厂，可用于自定义网关或测试替身）

        配置中没有对应条目，update_config 重建提供商时不会保留该实例。
        """
        if not isinstance(provider, PaymentProvider):
            raise TypeError(f"提供商必须是 PaymentProvider 实例: {type(provider).__name__}")
        state = self._current()
        old = state.providers.get(name)
        self._swap(
            replace(
                state,
                generation=state.generation + 1,
                providers=MappingProxyType({**state.providers, name: provider}),
            )
        )
        if old is not None:
            self._retire([old])
        logger.info(f"添加支付提供商: {name}")
        return provider

    def remove_provider(self, name: str) -> bool:
        state = self._current()
        if name not in state.providers:
            return False
        providers = {k: v for k, v in state.providers.items() if k != name}
        new_config = state.config.model_copy(
            update={"providers": {k: v for k, v in state.config.providers.items() if k != name}}
        )
        self._swap(
            replace(
                state,
                generation=state.generation + 1,
                config=new_config,
                providers=MappingProxyType(providers),
            )
        )
        self._retire([state.providers[name]])
        logger.info(f"移除支付提供商: {name}")
        return True

    def _retire(self, providers: Iterable[PaymentProvider]) -> None:
        """关闭不再属于当前状态的提供商；仍在使用的等最后一个调用结束后关闭"""
        current = {id(p) for p in self._state.providers.values()} if not self._destroyed else set()
        for provider in providers:
            if id(provider) in current or any(provider is p for p in self._retired):
                continue
            if self._in_use[provider]:
                self._retired.append(provider)
            else:
                self._schedule_close(provider)

    def _schedule_close(self, provider: PaymentProvider) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有事件循环时留给 aclose() 关闭
            self._retired.append(provider)
            return
        task = loop.create_task(self._close_provider(provider))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _close_provider(provider: PaymentProvider) -> None:
        try:
            await provider.aclose()
        except Exception as e:
            logger.warning(f"关闭支付提供商连接失败: provider={provider.name}, error={e!r}")

    @asynccontextmanager
    async def _using(self, provider: PaymentProvider) -> AsyncIterator[PaymentProvider]:
        self._in_use[provider] += 1
        try:
            yield provider
        finally:
            self._in_use[provider] -= 1
            if not self._in_use[provider]:
                del self._in_use[provider]
                for index, retired in enumerate(self._retired):
                    if retired is provider:
                        del self._retired[index]
                        await self._close_provider(provider)
                        break

    def get_enabled_providers(self) -> list[str]:
        return [name for name, provider in self._current().providers.items() if provider.is_enabled()]

    def is_provider_enabled(self, name: str) -> bool:
        provider = self._current().providers.get(name)
        return provider.is_enabled() if provider else False

    def get_providers_status(self) -> list[dict[str, Any]]:
        return [{"name": name, **provider.get_status()} for name, provider in self._current().providers.items()]

    def get_supported_methods(self) -> list[str]:
        methods = []
        for provider in self._current().providers.values():
            if provider.is_enabled():
                methods.extend(provider.get_supported_methods())
        return methods

    def is_supported_method(self, method: str) -> bool:
        return method in self.get_supported_methods()

    # ------------------------------------------------------------------- hooks
    def on(self, event: str, handler: HookHandler) -> HookHandler:
        """注册 Hook，可作为装饰器使用"""
        state = self._current()
        hooks = state.hooks.copy()
        hooks.on(event, handler)
        self._swap(
            replace(
                state,
                generation=state.generation + 1,
                config=state.config.model_copy(update={"hooks": hooks.as_dict()}),
                hooks=hooks,
            )
        )
        return handler

    def off(self, event: str, handler: HookHandler) -> bool:
        state = self._current()
        hooks = state.hooks.copy()
        if not hooks.off(event, handler):
            return False
        self._swap(
            replace(
                state,
                generation=state.generation + 1,
                config=state.config.model_copy(update={"hooks": hooks.as_dict()}),
                hooks=hooks,
            )
        )
        return True

    def on_notify(self, handler: HookHandler) -> HookHandler:
        return self.on(HookEvent.ON_NOTIFY, handler)

    def on_success(self, handler: HookHandler) -> HookHandler:
        return self.on(HookEvent.ON_SUCCESS, handler)

    def on_fail(self, handler: HookHandler) -> HookHandler:
        return self.on(HookEvent.ON_FAIL, handler)

    def on_pending(self, handler: HookHandler) -> HookHandler:
        return self.on(HookEvent.ON_PENDING, handler)

    # ------------------------------------------------------------------ notify
    async def handle_notify(self, method: str, payload: NotifyPayload) -> UnifiedNotification:
        """
        处理支付回调通知

        Args:
            method: 支付方式，如 wechat / wechat.native / alipay.qrcode
            payload: 回调载荷

        Returns:
            UnifiedNotification: 统一格式的支付通知
        """
        state = self._current()
        provider = self._resolve_provider(state, method)
        async with self._using(provider):
            notification = await provider.handle_notify(payload)
        await state.hooks.dispatch(notification)
        return notification

    async def process_notify(self, method: str, payload: NotifyPayload) -> NotifyOutcome:
        """
        处理回调并生成应答

        提供商能够解析时总会返回该平台格式的应答；回调处理失败时错误记录在 outcome.error 中。
        """
        state = self._current()
        provider = self._resolve_provider(state, method)
        try:
            async with self._using(provider):
                notification = await provider.handle_notify(payload)
        except PaymentError as e:
            logger.warning(f"支付回调处理失败: method={method}, error={e!r}")
            return NotifyOutcome(notification=None, ack=provider.build_notify_ack(False, e.message), error=e)

        await state.hooks.dispatch(notification)
        logger.info(
            f"支付回调处理成功: method={method}, out_trade_no={notification.merchant_order_id}, "
            f"status={notification.trade_status}"
        )
        return NotifyOutcome(notification=notification, ack=provider.build_notify_ack(True))

    # ------------------------------------------------------------------ orders
    async def create_order(self, method: str, request: CreateOrderRequest) -> CreateOrderResult:
        provider = self._resolve_provider(self._current(), method, require_sub_method=True)
        async with self._using(provider):
            return await provider.create_order(method, request)

    async def query_order(self, method: str, request: QueryOrderRequest) -> QueryOrderResult:
        provider = self._resolve_provider(self._current(), method)
        async with self._using(provider):
            return await provider.query_order(request)

    async def refund(self, method: str, request: RefundRequest) -> RefundResult:
        provider = self._resolve_provider(self._current(), method)
        async with self._using(provider):
            return await provider.refund(request)

    async def query_refund(self, method: str, request: RefundQueryRequest) -> RefundResult:
        provider = self._resolve_provider(self._current(), method)
        async with self._using(provider):
            return await provider.query_refund(request)

    async def close_order(self, method: str, request: QueryOrderRequest) -> bool:
        provider = self._resolve_provider(self._current(), method)
        async with self._using(provider):
            return await provider.close_order(request)

    # --------------------------------------------------------------- lifecycle
    def update_config(self, config: PaymentManagerConfig | Mapping[str, Any]) -> None:
        """
        更新配置并重建提供商

        传入的顶层字段覆盖当前配置，global_settings 按字段合并。新状态完整构建成功后才替换，
        构建失败时保留原状态；正在处理中的调用继续使用原提供商。
        """
        state = self._current()
        if isinstance(config, PaymentManagerConfig):
            changes = config.model_dump(exclude_unset=True)
            changes.pop("hooks", None)
            if "hooks" in config.model_fields_set:
                changes["hooks"] = config.hooks
        else:
            changes = dict(config)

        merged = {
            "providers": state.config.providers,
            "hooks": state.config.hooks,
            **changes,
            "global_settings": {
                **state.config.global_settings.model_dump(),
                **_as_dict(changes.get("global_settings")),
            },
        }
        new_config = self._coerce_config(merged)
        new_state = self._build_state(new_config, generation=state.generation + 1)

        self._swap(new_state)
        self._retire(state.providers.values())
        self._apply_global_settings(new_config.global_settings)
        logger.info(f"支付配置已更新并重新初始化提供商: generation={new_state.generation}")

    def destroy(self) -> None:
        """销毁管理器，之后的所有调用都会抛出 ManagerDestroyedError"""
        if self._destroyed:
            return
        self._destroyed = True
        self._retire(self._state.providers.values())
        logger.info("PaymentManager 已销毁")

    async def aclose(self) -> None:
        """销毁管理器并释放所有提供商的 HTTP 连接"""
        if not self._destroyed:
            self.destroy()
        retired, self._retired = self._retired, []
        for provider in retired:
            await self._close_provider(provider)
        if self._closing:
            await asyncio.gather(*list(self._closing))

    @property
    def destroyed(self) -> bool:
        return self._destroyed


def _as_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_unset=True)
    return dict(value)


def create_payment_manager(
    config: PaymentManagerConfig | Mapping[str, Any] | None = None,
    factory: ProviderFactory | None = None,
) -> PaymentManager:
    return PaymentManager(config, factory)
