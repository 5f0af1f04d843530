"""支付服务工厂"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from .alipay import AlipayProvider
from .base import PaymentGateway, PaymentProvider
from .exceptions import PaymentConfigError, UnknownProviderError
from .wechat import WechatPayProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderRegistration:
    name: str
    provider_class: type[PaymentProvider]
    default_config: dict[str, Any] = field(default_factory=dict)
    description: str = ""


class ProviderFactory:
    """支付提供商注册表，同时缓存每个提供商最近创建的实例"""

    def __init__(self):
        self._registrations: dict[str, ProviderRegistration] = {}
        self._instances: dict[str, PaymentProvider] = {}

    def register(
        self,
        name: str,
        provider_class: type[PaymentProvider],
        default_config: Mapping[str, Any] | None = None,
        description: str = "",
    ) -> None:
        if name in self._registrations:
            raise PaymentConfigError(f"支付提供商 {name} 已注册")
        if not (isinstance(provider_class, type) and issubclass(provider_class, PaymentProvider)):
            raise PaymentConfigError(f"{provider_class!r} 不是 PaymentProvider 子类")

        self._registrations[name] = ProviderRegistration(
            name=name,
            provider_class=provider_class,
            default_config=dict(default_config or {}),
            description=description,
        )
        logger.debug(f"注册支付提供商: {name}")

    def unregister(self, name: str) -> bool:
        self._instances.pop(name, None)
        return self._registrations.pop(name, None) is not None

    def get_registration(self, name: str) -> ProviderRegistration:
        try:
            return self._registrations[name]
        except KeyError:
            raise UnknownProviderError(f"未知的支付提供商: {name}") from None

    def is_registered(self, name: str) -> bool:
        return name in self._registrations

    def get_registered_providers(self) -> list[str]:
        return list(self._registrations)

    def create(self, name: str, config: Mapping[str, Any] | BaseModel | None = None) -> PaymentProvider:
        """
        创建提供商实例（注册时的默认配置在下，传入配置在上）

        Raises:
            UnknownProviderError: 未注册的提供商
            PaymentConfigError: 配置校验失败
        """
        registration = self.get_registration(name)
        if isinstance(config, BaseModel):
            config = config.model_dump(exclude_unset=True)
        provider = registration.provider_class({**registration.default_config, **(config or {})})
        self._instances[name] = provider
        logger.info(f"创建支付提供商实例: {name}, enabled={provider.is_enabled()}")
        return provider

    def get_or_create(self, name: str, config: Mapping[str, Any] | BaseModel | None = None) -> PaymentProvider:
        """返回已缓存的实例；没有缓存时必须提供配置才能创建"""
        instance = self._instances.get(name)
        if instance is not None:
            return instance
        if config is None:
            raise PaymentConfigError(f"支付提供商 {name} 尚未创建，需要提供配置")
        return self.create(name, config)

    def get_instance(self, name: str) -> PaymentProvider | None:
        return self._instances.get(name)

    def clear_instances(self) -> None:
        self._instances.clear()

    def reset(self) -> None:
        self._instances.clear()
        self._registrations.clear()


def register_builtin_providers(factory: "ProviderFactory | None" = None) -> ProviderFactory:
    """注册内置的微信支付、支付宝提供商（已注册的跳过）"""
    factory = factory or default_provider_factory
    builtins = (
        (PaymentGateway.WECHAT.value, WechatPayProvider, "微信支付"),
        (PaymentGateway.ALIPAY.value, AlipayProvider, "支付宝"),
    )
    for name, provider_class, description in builtins:
        if not factory.is_registered(name):
            factory.register(name, provider_class, description=description)
    return factory


default_provider_factory = ProviderFactory()
