"""支付服务基类"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, TypeVar
from urllib.parse import parse_qsl

from pydantic import BaseModel, ConfigDict, ValidationError

from .exceptions import (
    InvalidPayloadError,
    InvalidRequestError,
    NetworkError,
    PaymentConfigError,
    PaymentError,
    UnsupportedMethodError,
    VerificationFailedError,
)
from .utils import current_millis, generate_order_no

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaymentGateway(StrEnum):
    """支付提供商"""

    WECHAT = "wechat"
    ALIPAY = "alipay"


class TradeStatus(StrEnum):
    """统一交易状态"""

    SUCCESS = "SUCCESS"
    FAIL = "FAIL"
    PENDING = "PENDING"


class PresentationKind(StrEnum):
    """前端拉起支付所需数据的形式"""

    QR_CODE = "qr_code"  # 二维码链接
    REDIRECT_URL = "redirect_url"  # 跳转链接
    APP_PARAMS = "app_params"  # JSAPI / APP 调起参数
    HTML_FORM = "html_form"  # 自动提交的表单


def map_trade_status(table: Mapping[str, TradeStatus], code: str | None) -> TradeStatus:
    """按状态表映射交易状态，未知状态一律视为 PENDING"""
    if not code:
        return TradeStatus.PENDING
    return table.get(code, TradeStatus.PENDING)


def error_code_of(error: PaymentError) -> str:
    """优先使用网关错误码"""
    return getattr(error, "gateway_code", None) or str(error.code)


# =============================================================================
# 回调
# =============================================================================
@dataclass(frozen=True)
class UnifiedNotification:
    """统一支付通知"""

    gateway: PaymentGateway
    trade_status: TradeStatus
    merchant_order_id: str  # 商户订单号
    gateway_trade_id: str  # 平台交易号
    total_amount_minor_units: int  # 订单金额（分）
    payer_id: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    received_at_epoch_millis: int = field(default_factory=current_millis)

    def __post_init__(self):
        if self.trade_status in (TradeStatus.SUCCESS, TradeStatus.FAIL) and not (
            self.merchant_order_id and self.gateway_trade_id
        ):
            raise InvalidPayloadError(
                f"交易状态为 {self.trade_status} 时商户订单号和平台交易号不能为空"
            )


@dataclass
class NotifyPayload:
    """回调载荷"""

    gateway: str
    raw_body: bytes | str | dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """大小写不敏感地读取请求头"""
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    def body_text(self) -> str:
        if isinstance(self.raw_body, bytes):
            return self.raw_body.decode("utf-8")
        if isinstance(self.raw_body, str):
            return self.raw_body
        return json.dumps(self.raw_body, ensure_ascii=False, separators=(",", ":"))

    def json(self) -> dict[str, Any]:
        if isinstance(self.raw_body, dict):
            return self.raw_body
        data = json.loads(self.body_text())
        if not isinstance(data, dict):
            raise InvalidPayloadError("回调数据不是 JSON 对象")
        return data

    def form_params(self) -> dict[str, str]:
        """解析表单（application/x-www-form-urlencoded）数据"""
        if isinstance(self.raw_body, dict):
            return {k: "" if v is None else str(v) for k, v in self.raw_body.items()}
        return dict(parse_qsl(self.body_text(), keep_blank_values=True))

    def is_empty(self) -> bool:
        return not self.raw_body


@dataclass(frozen=True)
class NotifyAck:
    """回调应答"""

    status_code: int
    body: str | dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content(self) -> str:
        if isinstance(self.body, str):
            return self.body
        return json.dumps(self.body, ensure_ascii=False)

    @property
    def media_type(self) -> str:
        return self.headers.get("Content-Type", "text/plain")


@dataclass
class VerifyResult:
    """验签结果"""

    success: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# 下单 / 查询 / 退款
# =============================================================================
def _require_exactly_one_id(merchant_order_id: str | None, gateway_trade_id: str | None):
    if bool(merchant_order_id) == bool(gateway_trade_id):
        raise InvalidRequestError("必须且只能提供 merchant_order_id 或 gateway_trade_id 其中之一")


@dataclass(frozen=True)
class PaymentPresentation:
    kind: PresentationKind
    value: str | dict[str, Any]


@dataclass
class CreateOrderRequest:
    """创建支付订单请求"""

    merchant_order_id: str  # 商户订单号
    total_amount_minor_units: int  # 订单金额（分）
    subject: str  # 订单描述
    body: str | None = None
    expire_minutes: int | None = None
    notify_url: str | None = None
    return_url: str | None = None
    client_ip: str | None = None
    openid: str | None = None  # JSAPI 支付用户标识
    auth_code: str | None = None  # 付款码
    device_id: str | None = None
    scene_info: dict[str, Any] | None = None  # 门店等场景信息
    attach: str | None = None

    def __post_init__(self):
        if not self.merchant_order_id:
            raise InvalidRequestError("merchant_order_id 不能为空")
        if not self.subject:
            raise InvalidRequestError("subject 不能为空")
        if (
            isinstance(self.total_amount_minor_units, bool)
            or not isinstance(self.total_amount_minor_units, int)
            or self.total_amount_minor_units <= 0
        ):
            raise InvalidRequestError("total_amount_minor_units 必须为正整数（单位：分）")


@dataclass
class CreateOrderResult:
    """创建支付订单结果"""

    success: bool
    merchant_order_id: str | None = None
    gateway_trade_id: str | None = None
    presentation: PaymentPresentation | None = None
    trade_status: TradeStatus | None = None
    error: str | None = None
    error_code: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.success and (self.presentation is not None or not self.error):
            raise ValueError("失败结果必须包含 error，且不能包含支付参数")


@dataclass
class QueryOrderRequest:
    merchant_order_id: str | None = None
    gateway_trade_id: str | None = None

    def __post_init__(self):
        _require_exactly_one_id(self.merchant_order_id, self.gateway_trade_id)


@dataclass
class OrderInfo:
    trade_status: TradeStatus
    merchant_order_id: str
    gateway_trade_id: str
    total_amount_minor_units: int
    payer_id: str | None = None
    paid_at: str | None = None
    gateway_status: str = ""  # 网关原始交易状态


@dataclass
class QueryOrderResult:
    success: bool
    order: OrderInfo | None = None
    error: str | None = None
    error_code: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundRequest:
    refund_amount_minor_units: int  # 退款金额（分）
    merchant_order_id: str | None = None
    gateway_trade_id: str | None = None
    merchant_refund_id: str = field(default_factory=lambda: generate_order_no("RF"))
    reason: str | None = None
    notify_url: str | None = None

    def __post_init__(self):
        _require_exactly_one_id(self.merchant_order_id, self.gateway_trade_id)
        if (
            isinstance(self.refund_amount_minor_units, bool)
            or not isinstance(self.refund_amount_minor_units, int)
            or self.refund_amount_minor_units <= 0
        ):
            raise InvalidRequestError("refund_amount_minor_units 必须为正整数（单位：分）")


@dataclass
class RefundQueryRequest:
    """退款查询；支付宝还需要原订单号（二选一）"""

    merchant_refund_id: str
    merchant_order_id: str | None = None
    gateway_trade_id: str | None = None

    def __post_init__(self):
        if not self.merchant_refund_id:
            raise InvalidRequestError("merchant_refund_id 不能为空")
        if self.merchant_order_id and self.gateway_trade_id:
            raise InvalidRequestError("merchant_order_id 与 gateway_trade_id 只能提供其中之一")


@dataclass
class RefundInfo:
    refund_id: str
    merchant_refund_id: str
    refund_amount_minor_units: int
    refund_status: TradeStatus
    refunded_at: str | None = None


@dataclass
class RefundResult:
    success: bool
    refund: RefundInfo | None = None
    error: str | None = None
    error_code: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Provider
# =============================================================================
class BaseProviderConfig(BaseModel):
    """Provider 配置基类"""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    sandbox: bool = False
    notify_url: str | None = None
    timeout: float = 30.0  # 网关请求超时（秒）
    retries: int = 0  # 查询接口的网络错误重试次数


class PaymentProvider(ABC):
    """
    支付服务提供者基类

    回调处理固定为四步：校验载荷 -> 验签 -> 转换为统一通知 -> 后处理，
    任一步失败立即中止。
    """

    name: ClassVar[str] = ""
    config_class: ClassVar[type[BaseProviderConfig]] = BaseProviderConfig
    supported_methods: ClassVar[tuple[str, ...]] = ()

    def __init__(self, config: BaseProviderConfig | Mapping[str, Any]):
        self.config = self._load_config(config)
        self.validate_config()

    @classmethod
    def _load_config(cls, config: BaseProviderConfig | Mapping[str, Any]) -> Any:
        if isinstance(config, cls.config_class):
            return config.model_copy()
        data = config.model_dump() if isinstance(config, BaseModel) else dict(config)
        try:
            return cls.config_class.model_validate(data)
        except ValidationError as e:
            raise PaymentConfigError(
                f"{cls.name} 配置格式错误: {e.error_count()} 个字段无效",
                details=e.errors(include_url=False),
            ) from e

    def get_provider_name(self) -> str:
        return self.name

    def is_enabled(self) -> bool:
        return self.config.enabled

    def ensure_enabled(self) -> None:
        if not self.is_enabled():
            raise PaymentConfigError(f"{self.name} 支付提供商未启用")

    def update_config(self, **changes: Any) -> None:
        """更新配置，校验失败时保留原配置"""
        new_config = self._load_config({**self.config.model_dump(), **changes})
        old_config = self.config
        self.config = new_config
        try:
            self.validate_config()
        except PaymentError:
            self.config = old_config
            raise
        self._on_config_changed()

    def _on_config_changed(self) -> None:
        """配置变更后重置依赖配置的内部对象（子类可重写）"""

    def get_supported_methods(self) -> list[str]:
        return [f"{self.name}.{method}" for method in self.supported_methods]

    def is_supported_method(self, method: str) -> bool:
        try:
            self._resolve_method(method)
        except UnsupportedMethodError:
            return False
        return True

    def _resolve_method(self, method: str) -> str:
        """把 ``wechat.native`` / ``native`` 解析为子支付方式"""
        prefix, _, sub_method = method.rpartition(".")
        if prefix and prefix != self.name:
            raise UnsupportedMethodError(f"{self.name} 不支持支付方式: {method}")
        if sub_method not in self.supported_methods:
            raise UnsupportedMethodError(f"{self.name} 不支持支付方式: {method}")
        return sub_method

    def get_status(self) -> dict[str, Any]:
        return {
            "provider_name": self.name,
            "enabled": self.is_enabled(),
            "sandbox": self.config.sandbox,
            "supported_methods": self.get_supported_methods(),
        }

    async def handle_notify(self, payload: NotifyPayload) -> UnifiedNotification:
        """
        处理支付回调通知

        Args:
            payload: 回调载荷

        Returns:
            UnifiedNotification: 统一格式的支付通知
        """
        self.ensure_enabled()

        try:
            self.validate_payload(payload)

            verify_result = await self.verify_signature(payload)
            if not verify_result.success:
                raise VerificationFailedError(
                    f"{self.name} 签名验证失败: {verify_result.error or '未知错误'}",
                    details=verify_result.details,
                )

            notification = await self.transform_notification(payload)
            await self.post_process(notification, payload)
            return notification
        except PaymentError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidPayloadError(f"{self.name} 回调数据解析失败: {type(e).__name__}") from e

    async def post_process(self, notification: UnifiedNotification, payload: NotifyPayload) -> None:
        """回调后处理（默认仅在沙箱环境记录日志）"""
        if self.config.sandbox:
            logger.info(
                f"{self.name} 沙箱环境回调处理完成: out_trade_no={notification.merchant_order_id}, "
                f"trade_no={notification.gateway_trade_id}, status={notification.trade_status}, "
                f"amount={notification.total_amount_minor_units}"
            )

    async def _query_with_retries(self, fn: Callable[[], Awaitable[T]]) -> T:
        """查询是幂等操作，网络错误时按配置重试"""
        attempts = max(self.config.retries, 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except NetworkError as e:
                if attempt >= attempts:
                    raise
                logger.warning(f"{self.name} 查询失败，重试 {attempt}/{attempts - 1}: {e.message}")
        raise AssertionError("unreachable")

    async def aclose(self) -> None:
        """释放底层 HTTP 连接"""

    @abstractmethod
    def validate_config(self) -> None:
        """校验配置，失败抛出 PaymentConfigError"""

    @abstractmethod
    def validate_payload(self, payload: NotifyPayload) -> None:
        """校验回调载荷格式，失败抛出 InvalidPayloadError"""

    @abstractmethod
    async def verify_signature(self, payload: NotifyPayload) -> VerifyResult:
        pass

    @abstractmethod
    async def transform_notification(self, payload: NotifyPayload) -> UnifiedNotification:
        pass

    @abstractmethod
    def generate_success_response(self) -> str | dict[str, Any]:
        pass

    @abstractmethod
    def generate_failure_response(self, error: str | None = None) -> str | dict[str, Any]:
        pass

    @abstractmethod
    def build_notify_ack(self, success: bool, error: str | None = None) -> NotifyAck:
        """
        生成回调应答

        Args:
            success: 是否处理成功
            error: 失败原因

        Returns:
            NotifyAck: 状态码、响应体与响应头（不同支付平台格式不同）
        """

    @abstractmethod
    async def create_order(self, method: str, request: CreateOrderRequest) -> CreateOrderResult:
        pass

    @abstractmethod
    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResult:
        pass

    @abstractmethod
    async def refund(self, request: RefundRequest) -> RefundResult:
        pass

    @abstractmethod
    async def query_refund(self, request: RefundQueryRequest) -> RefundResult:
        """查询退款进度"""

    @abstractmethod
    async def close_order(self, request: QueryOrderRequest) -> bool:
        """关闭未支付订单"""
