"""支付服务模块"""

from .alipay import AlipayProvider, AlipayProviderConfig
from .base import (
    BaseProviderConfig,
    CreateOrderRequest,
    CreateOrderResult,
    NotifyAck,
    NotifyPayload,
    OrderInfo,
    PaymentGateway,
    PaymentPresentation,
    PaymentProvider,
    PresentationKind,
    QueryOrderRequest,
    QueryOrderResult,
    RefundInfo,
    RefundQueryRequest,
    RefundRequest,
    RefundResult,
    TradeStatus,
    UnifiedNotification,
)
from .exceptions import PaymentError, PaymentErrorCode
from .factory import ProviderFactory, default_provider_factory, register_builtin_providers
from .hooks import HookEvent, HookManager
from .manager import GlobalSettings, NotifyOutcome, PaymentManager, PaymentManagerConfig, create_payment_manager
from .wechat import WechatPayProvider, WechatProviderConfig

register_builtin_providers(default_provider_factory)

__all__ = [
    "AlipayProvider",
    "AlipayProviderConfig",
    "BaseProviderConfig",
    "CreateOrderRequest",
    "CreateOrderResult",
    "GlobalSettings",
    "HookEvent",
    "HookManager",
    "NotifyAck",
    "NotifyOutcome",
    "NotifyPayload",
    "OrderInfo",
    "PaymentError",
    "PaymentErrorCode",
    "PaymentGateway",
    "PaymentManager",
    "PaymentManagerConfig",
    "PaymentPresentation",
    "PaymentProvider",
    "PresentationKind",
    "ProviderFactory",
    "QueryOrderRequest",
    "QueryOrderResult",
    "RefundInfo",
    "RefundQueryRequest",
    "RefundRequest",
    "RefundResult",
    "TradeStatus",
    "UnifiedNotification",
    "WechatPayProvider",
    "WechatProviderConfig",
    "create_payment_manager",
    "default_provider_factory",
    "register_builtin_providers",
]
