"""支付宝支付服务"""

import asyncio
import logging
import re
from collections.abc import Callable
from functools import partial
from typing import Any, Literal

from alipay import AliPay
from alipay.exceptions import AliPayException, AliPayValidationError
from alipay.utils import AliPayConfig
from cryptography.hazmat.primitives import serialization

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
    VerifyResult,
    error_code_of,
    map_trade_status,
)
from .crypto import (
    SignAlgorithm,
    build_canonical_string,
    load_private_key,
    load_public_key,
    verify_signature,
)
from .exceptions import (
    EXPECTED_BUSINESS_ERRORS,
    BadSignatureFormatError,
    CryptoError,
    GatewayBusinessError,
    InvalidPayloadError,
    InvalidRequestError,
    NetworkError,
    PaymentConfigError,
    VerificationFailedError,
)
from .utils import fen_to_yuan, yuan_to_fen

logger = logging.getLogger(__name__)

ALIPAY_GATEWAY = "https://openapi.alipay.com/gateway.do"
ALIPAY_SANDBOX_GATEWAY = "https://openapi-sandbox.dl.alipaydev.com/gateway.do"

ALIPAY_TRADE_STATUS: dict[str, TradeStatus] = {
    "TRADE_SUCCESS": TradeStatus.SUCCESS,
    "TRADE_FINISHED": TradeStatus.SUCCESS,
    "TRADE_CLOSED": TradeStatus.FAIL,
    "WAIT_BUYER_PAY": TradeStatus.PENDING,
}

SIGN_ALGORITHMS = {
    "RSA2": SignAlgorithm.RSA_SHA256,
    "RSA": SignAlgorithm.RSA_SHA1,
}

SUCCESS_CODE = "10000"
NOTIFY_REQUIRED_FIELDS = ("sign", "out_trade_no", "trade_no", "trade_status", "total_amount")

_APP_ID_PATTERN = re.compile(r"^\d{16}$")


class AlipayProviderConfig(BaseProviderConfig):
    app_id: str = ""
    private_key: str = ""  # 应用私钥
    alipay_public_key: str = ""  # 支付宝公钥
    sign_type: Literal["RSA2", "RSA"] = "RSA2"
    gateway: str | None = None  # 电脑 / 手机网站支付跳转网关
    return_url: str | None = None


class AlipayProvider(PaymentProvider):
    """支付宝支付服务 (基于 python-alipay-sdk)"""

    name = PaymentGateway.ALIPAY.value
    config_class = AlipayProviderConfig
    supported_methods = ("qrcode", "pc", "h5", "app")

    config: AlipayProviderConfig

    def __init__(self, config: AlipayProviderConfig | dict[str, Any]):
        self._private_key = None
        self._public_key = None
        self._client: AliPay | None = None
        super().__init__(config)

    @property
    def gateway(self) -> str:
        if self.config.gateway:
            return self.config.gateway
        return ALIPAY_SANDBOX_GATEWAY if self.config.sandbox else ALIPAY_GATEWAY

    @property
    def sign_algorithm(self) -> SignAlgorithm:
        return SIGN_ALGORITHMS[self.config.sign_type]

    def validate_config(self) -> None:
        config = self.config
        if not config.enabled:
            return

        if not _APP_ID_PATTERN.match(config.app_id):
            raise PaymentConfigError("支付宝配置错误: app_id 必须为 16 位数字")
        try:
            private_key = load_private_key(config.private_key)
            public_key = load_public_key(config.alipay_public_key)
        except CryptoError as e:
            raise PaymentConfigError(f"支付宝密钥配置错误: {e.message}") from e

        self._private_key = private_key
        self._public_key = public_key

    def _on_config_changed(self) -> None:
        self._client = None

    @property
    def client(self) -> AliPay:
        """获取 Alipay 客户端实例"""
        if self._client is None:
            private_pem = self._private_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ).decode()
            public_pem = self._public_key.public_bytes(
                serialization.Encoding.PEM,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            ).decode()
            self._client = AliPay(
                appid=self.config.app_id,
                app_notify_url=self.config.notify_url,
                app_private_key_string=private_pem,
                alipay_public_key_string=public_pem,
                sign_type=self.config.sign_type,
                debug=self.config.sandbox,
                verbose=False,
                config=AliPayConfig(timeout=self.config.timeout),
            )
        return self._client

    async def _call_sdk(self, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """SDK 是同步的，放到线程池执行"""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, **kwargs))
        except (AliPayException, AliPayValidationError) as e:
            raise VerificationFailedError(f"支付宝响应校验失败: {e}") from e
        except OSError as e:
            raise NetworkError(f"支付宝请求失败: {type(e).__name__}") from e

    @staticmethod
    def _check_result(result: dict[str, Any]) -> dict[str, Any]:
        code = result.get("code")
        if code == SUCCESS_CODE:
            return result
        msg = result.get("msg", "Unknown Error")
        sub_msg = result.get("sub_msg", "")
        logger.error(f"支付宝返回业务错误: code={code}, sub_code={result.get('sub_code')}, msg={msg}, sub_msg={sub_msg}")
        raise GatewayBusinessError(
            f"{msg}: {sub_msg}" if sub_msg else msg,
            gateway_code=result.get("sub_code") or code,
            details=result,
        )

    # ------------------------------------------------------------------ notify
    def validate_payload(self, payload: NotifyPayload) -> None:
        if payload.is_empty():
            raise InvalidPayloadError("回调数据为空")
        params = payload.form_params()
        missing = [name for name in NOTIFY_REQUIRED_FIELDS if not params.get(name)]
        if missing:
            raise InvalidPayloadError(f"支付宝回调缺少参数: {', '.join(missing)}")

    async def verify_signature(self, payload: NotifyPayload) -> VerifyResult:
        params = payload.form_params()

        sign_type = params.get("sign_type") or self.config.sign_type
        if sign_type != self.config.sign_type:
            return VerifyResult(success=False, error=f"签名类型不匹配: {sign_type}")

        canonical = build_canonical_string(params, exclude=("sign", "sign_type"))
        try:
            matched = verify_signature(canonical, params["sign"], self._public_key, self.sign_algorithm)
        except BadSignatureFormatError as e:
            return VerifyResult(success=False, error=e.message)
        if not matched:
            return VerifyResult(success=False, error="签名不匹配")

        if params.get("app_id") and params["app_id"] != self.config.app_id:
            return VerifyResult(success=False, error="app_id 与配置不一致", details={"app_id": params["app_id"]})
        return VerifyResult(success=True)

    async def transform_notification(self, payload: NotifyPayload) -> UnifiedNotification:
        params = payload.form_params()
        try:
            amount = yuan_to_fen(params["total_amount"])
        except InvalidRequestError as e:
            raise InvalidPayloadError(f"支付宝回调金额格式错误: {params['total_amount']}") from e

        return UnifiedNotification(
            gateway=PaymentGateway.ALIPAY,
            trade_status=map_trade_status(ALIPAY_TRADE_STATUS, params.get("trade_status")),
            merchant_order_id=params["out_trade_no"],
            gateway_trade_id=params["trade_no"],
            total_amount_minor_units=amount,
            payer_id=params.get("buyer_id") or params.get("buyer_open_id") or None,
            raw_payload=params,
        )

    def generate_success_response(self) -> str:
        return "success"

    def generate_failure_response(self, error: str | None = None) -> str:
        return "fail"

    def build_notify_ack(self, success: bool, error: str | None = None) -> NotifyAck:
        if success:
            return NotifyAck(200, self.generate_success_response(), {"Content-Type": "text/plain"})
        return NotifyAck(400, self.generate_failure_response(error), {"Content-Type": "text/plain"})

    # ------------------------------------------------------------------ orders
    async def create_order(self, method: str, request: CreateOrderRequest) -> CreateOrderResult:
        """
        创建支付宝订单

        qrcode 走当面付预下单（需要请求网关）；pc / h5 / app 只在本地生成签名后的订单串。
        """
        sub_method = self._resolve_method(method)
        self.ensure_enabled()

        logger.info(
            f"创建支付宝订单: method={sub_method}, out_trade_no={request.merchant_order_id}, "
            f"amount={request.total_amount_minor_units}, sandbox={self.config.sandbox}, app_id={self.config.app_id}"
        )

        kwargs: dict[str, Any] = {
            "out_trade_no": request.merchant_order_id,
            "total_amount": fen_to_yuan(request.total_amount_minor_units),
            "subject": request.subject,
            "notify_url": request.notify_url or self.config.notify_url,
        }
        if request.body:
            kwargs["body"] = request.body
        if request.expire_minutes:
            kwargs["timeout_express"] = f"{request.expire_minutes}m"
        if request.attach:
            kwargs["passback_params"] = request.attach
        return_url = request.return_url or self.config.return_url

        try:
            match sub_method:
                case "qrcode":
                    result = self._check_result(
                        await self._call_sdk(self.client.api_alipay_trade_precreate, **kwargs)
                    )
                    if not result.get("qr_code"):
                        raise GatewayBusinessError("支付宝返回数据缺少 qr_code", details=result)
                    return CreateOrderResult(
                        success=True,
                        merchant_order_id=request.merchant_order_id,
                        presentation=PaymentPresentation(PresentationKind.QR_CODE, result["qr_code"]),
                        trade_status=TradeStatus.PENDING,
                        raw_payload=result,
                    )
                case "pc":
                    order_string = self.client.api_alipay_trade_page_pay(return_url=return_url, **kwargs)
                    presentation = PaymentPresentation(
                        PresentationKind.REDIRECT_URL, f"{self.gateway}?{order_string}"
                    )
                case "h5":
                    order_string = self.client.api_alipay_trade_wap_pay(return_url=return_url, **kwargs)
                    presentation = PaymentPresentation(
                        PresentationKind.REDIRECT_URL, f"{self.gateway}?{order_string}"
                    )
                case _:
                    order_string = self.client.api_alipay_trade_app_pay(**kwargs)
                    presentation = PaymentPresentation(
                        PresentationKind.APP_PARAMS, {"order_string": order_string}
                    )
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"支付宝创建订单失败: out_trade_no={request.merchant_order_id}, error={e!r}")
            return CreateOrderResult(
                success=False,
                merchant_order_id=request.merchant_order_id,
                error=e.message,
                error_code=error_code_of(e),
                raw_payload=e.details if isinstance(e.details, dict) else {},
            )

        return CreateOrderResult(
            success=True,
            merchant_order_id=request.merchant_order_id,
            presentation=presentation,
            trade_status=TradeStatus.PENDING,
        )

    async def _fetch_order(self, request: QueryOrderRequest) -> dict[str, Any]:
        result = await self._call_sdk(
            self.client.api_alipay_trade_query,
            out_trade_no=request.merchant_order_id,
            trade_no=request.gateway_trade_id,
        )
        return self._check_result(result)

    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResult:
        """查询支付宝订单"""
        self.ensure_enabled()
        try:
            result = await self._query_with_retries(lambda: self._fetch_order(request))
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"支付宝查询订单失败: {request}, error={e!r}")
            return QueryOrderResult(success=False, error=e.message, error_code=error_code_of(e))

        trade_status = result.get("trade_status") or ""
        order = OrderInfo(
            trade_status=map_trade_status(ALIPAY_TRADE_STATUS, trade_status),
            merchant_order_id=result.get("out_trade_no") or request.merchant_order_id or "",
            gateway_trade_id=result.get("trade_no") or request.gateway_trade_id or "",
            total_amount_minor_units=yuan_to_fen(result.get("total_amount") or "0"),
            payer_id=result.get("buyer_user_id") or result.get("buyer_open_id"),
            paid_at=result.get("send_pay_date"),
            gateway_status=trade_status,
        )
        return QueryOrderResult(success=True, order=order, raw_payload=result)

    async def refund(self, request: RefundRequest) -> RefundResult:
        self.ensure_enabled()
        kwargs: dict[str, Any] = {
            "refund_amount": fen_to_yuan(request.refund_amount_minor_units),
            "out_trade_no": request.merchant_order_id,
            "trade_no": request.gateway_trade_id,
            "out_request_no": request.merchant_refund_id,
        }
        if request.reason:
            kwargs["refund_reason"] = request.reason

        try:
            result = self._check_result(await self._call_sdk(self.client.api_alipay_trade_refund, **kwargs))
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"支付宝退款失败: out_request_no={request.merchant_refund_id}, error={e!r}")
            return RefundResult(success=False, error=e.message, error_code=error_code_of(e))

        # 支付宝没有独立的退款单号，fund_change=Y 表示本次退款已到账
        return RefundResult(
            success=True,
            refund=RefundInfo(
                refund_id=result.get("trade_no") or "",
                merchant_refund_id=request.merchant_refund_id,
                refund_amount_minor_units=yuan_to_fen(
                    result.get("refund_fee") or fen_to_yuan(request.refund_amount_minor_units)
                ),
                refund_status=TradeStatus.SUCCESS if result.get("fund_change") == "Y" else TradeStatus.PENDING,
                refunded_at=result.get("gmt_refund_pay"),
            ),
            raw_payload=result,
        )

    async def query_refund(self, request: RefundQueryRequest) -> RefundResult:
        """查询退款；支付宝只在退款成功时返回 refund_status=REFUND_SUCCESS"""
        self.ensure_enabled()
        if not (request.merchant_order_id or request.gateway_trade_id):
            raise InvalidRequestError("支付宝退款查询需要 merchant_order_id 或 gateway_trade_id")

        try:
            result = await self._query_with_retries(
                lambda: self._call_sdk(
                    self.client.api_alipay_trade_fastpay_refund_query,
                    out_request_no=request.merchant_refund_id,
                    out_trade_no=request.merchant_order_id,
                    trade_no=request.gateway_trade_id,
                )
            )
            self._check_result(result)
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"支付宝查询退款失败: out_request_no={request.merchant_refund_id}, error={e!r}")
            return RefundResult(success=False, error=e.message, error_code=error_code_of(e))

        return RefundResult(
            success=True,
            refund=RefundInfo(
                refund_id=result.get("trade_no") or request.gateway_trade_id or "",
                merchant_refund_id=result.get("out_request_no") or request.merchant_refund_id,
                refund_amount_minor_units=yuan_to_fen(result["refund_amount"]) if result.get("refund_amount") else 0,
                refund_status=(
                    TradeStatus.SUCCESS if result.get("refund_status") == "REFUND_SUCCESS" else TradeStatus.PENDING
                ),
                refunded_at=result.get("gmt_refund_pay"),
            ),
            raw_payload=result,
        )

    async def close_order(self, request: QueryOrderRequest) -> bool:
        self.ensure_enabled()
        try:
            self._check_result(
                await self._call_sdk(
                    self.client.api_alipay_trade_close,
                    out_trade_no=request.merchant_order_id,
                    trade_no=request.gateway_trade_id,
                )
            )
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"支付宝关闭订单失败: {request}, error={e!r}")
            return False
        return True
