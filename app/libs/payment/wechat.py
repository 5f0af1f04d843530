"""微信支付服务"""

import asyncio
import functools
import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

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
from .crypto import decrypt_aes_gcm, load_private_key, load_public_key, verify_signature
from .exceptions import (
    EXPECTED_BUSINESS_ERRORS,
    BadSignatureFormatError,
    CryptoError,
    GatewayBusinessError,
    InvalidPayloadError,
    InvalidRequestError,
    PaymentConfigError,
    VerificationFailedError,
)
from .micropay import ClockFn, MicropayStateMachine, SleepFn
from .wechat_v2 import WechatPayV2Client
from .wechat_v3 import DEFAULT_API_BASE_URL, WechatPayV3Client

logger = logging.getLogger(__name__)

WECHAT_TRADE_STATUS: dict[str, TradeStatus] = {
    "SUCCESS": TradeStatus.SUCCESS,
    "REFUND": TradeStatus.FAIL,
    "CLOSED": TradeStatus.FAIL,
    "REVOKED": TradeStatus.FAIL,
    "PAYERROR": TradeStatus.FAIL,
    "USERPAYING": TradeStatus.PENDING,
    "NOTPAY": TradeStatus.PENDING,
    "ACCEPT": TradeStatus.PENDING,
}

WECHAT_REFUND_STATUS: dict[str, TradeStatus] = {
    "SUCCESS": TradeStatus.SUCCESS,
    "PROCESSING": TradeStatus.PENDING,
    "CLOSED": TradeStatus.FAIL,
    "ABNORMAL": TradeStatus.FAIL,
}

NOTIFY_HEADERS = ("Wechatpay-Timestamp", "Wechatpay-Nonce", "Wechatpay-Signature", "Wechatpay-Serial")

_MCH_ID_PATTERN = re.compile(r"^\d{10}$")
_CHINA_TZ = timezone(timedelta(hours=8))


def _holding_clients(method):
    """调用期间占用网关客户端，配置更新后替换下来的客户端在没有调用时关闭"""

    @functools.wraps(method)
    async def wrapper(self: "WechatPayProvider", *args: Any, **kwargs: Any) -> Any:
        self._active_calls += 1
        try:
            return await method(self, *args, **kwargs)
        finally:
            self._active_calls -= 1
            if not self._active_calls and self._retired_clients:
                await self._close_retired_clients()

    return wrapper


class WechatProviderConfig(BaseProviderConfig):
    app_id: str = ""
    mch_id: str = ""
    api_v3_key: str = ""
    private_key: str = ""  # 商户 API 私钥
    serial_no: str = ""  # 商户 API 证书序列号
    platform_certificate: str | None = None  # 微信支付平台证书或平台公钥
    platform_serial_no: str | None = None
    api_key: str | None = None  # V2 密钥，付款码支付必填
    v2_sign_type: Literal["MD5", "HMAC-SHA256"] = "MD5"
    api_client_cert_path: str | None = None
    api_client_key_path: str | None = None
    notify_failure_status: int = 200
    micropay_grace_period: float = 5.0
    micropay_poll_interval: float = 10.0
    micropay_poll_timeout: float = 45.0
    api_base_url: str = DEFAULT_API_BASE_URL


class WechatPayProvider(PaymentProvider):
    """微信支付服务"""

    name = PaymentGateway.WECHAT.value
    config_class = WechatProviderConfig
    supported_methods = ("native", "jsapi", "h5", "app", "micropay")

    config: WechatProviderConfig

    def __init__(
        self,
        config: WechatProviderConfig | dict[str, Any],
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ):
        self._private_key = None
        self._platform_public_key = None
        self._v3_client: WechatPayV3Client | None = None
        self._v2_client: WechatPayV2Client | None = None
        self._retired_clients: list[WechatPayV3Client | WechatPayV2Client] = []
        self._active_calls = 0
        self._closing: set[asyncio.Task] = set()
        self._sleep = sleep
        self._clock = clock
        super().__init__(config)

    # ------------------------------------------------------------------ config
    def validate_config(self) -> None:
        config = self.config
        if not config.enabled:
            return

        errors = []
        if not config.app_id.startswith("wx"):
            errors.append("app_id 必须以 wx 开头")
        if not _MCH_ID_PATTERN.match(config.mch_id):
            errors.append("mch_id 必须为 10 位数字")
        if len(config.api_v3_key.encode("utf-8")) != 32:
            errors.append("api_v3_key 长度必须为 32 字节")
        if not config.serial_no:
            errors.append("serial_no 不能为空")
        if config.api_key is not None and len(config.api_key) != 32:
            errors.append("api_key 长度必须为 32 位")
        if min(config.micropay_grace_period, config.micropay_poll_interval, config.micropay_poll_timeout) <= 0:
            errors.append("付款码轮询时间必须大于 0")
        if errors:
            raise PaymentConfigError(f"微信支付配置错误: {'; '.join(errors)}", details=errors)

        try:
            private_key = load_private_key(config.private_key)
            platform_public_key = (
                load_public_key(config.platform_certificate) if config.platform_certificate else None
            )
        except CryptoError as e:
            raise PaymentConfigError(f"微信支付密钥配置错误: {e.message}") from e

        self._private_key = private_key
        self._platform_public_key = platform_public_key

    def _on_config_changed(self) -> None:
        for client in (self._v3_client, self._v2_client):
            if client is not None:
                self._retired_clients.append(client)
        self._v3_client = None
        self._v2_client = None
        if self._retired_clients and not self._active_calls:
            self._schedule_close()

    def _schedule_close(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有事件循环时留给 aclose() 关闭
            return
        task = loop.create_task(self._close_retired_clients())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_retired_clients(self) -> None:
        retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"关闭微信支付客户端失败: error={e!r}")

    @property
    def v3_client(self) -> WechatPayV3Client:
        if self._v3_client is None:
            self._v3_client = WechatPayV3Client(
                app_id=self.config.app_id,
                mch_id=self.config.mch_id,
                serial_no=self.config.serial_no,
                private_key=self._private_key,
                base_url=self.config.api_base_url,
                timeout=self.config.timeout,
            )
        return self._v3_client

    @property
    def v2_client(self) -> WechatPayV2Client:
        if self._v2_client is None:
            if not self.config.api_key:
                raise PaymentConfigError("付款码支付需要配置 V2 密钥 api_key")
            self._v2_client = WechatPayV2Client(
                app_id=self.config.app_id,
                mch_id=self.config.mch_id,
                api_key=self.config.api_key,
                sign_type=self.config.v2_sign_type,
                base_url=self.config.api_base_url,
                timeout=self.config.timeout,
                cert_path=self.config.api_client_cert_path,
                key_path=self.config.api_client_key_path,
            )
        return self._v2_client

    async def aclose(self) -> None:
        await self._close_retired_clients()
        if self._closing:
            await asyncio.gather(*list(self._closing))
        for client in (self._v3_client, self._v2_client):
            if client is not None:
                await client.aclose()

    # ------------------------------------------------------------------ notify
    def validate_payload(self, payload: NotifyPayload) -> None:
        missing = [name for name in NOTIFY_HEADERS if not payload.header(name)]
        if missing:
            raise InvalidPayloadError(f"缺少微信支付回调请求头: {', '.join(missing)}")
        if payload.is_empty():
            raise InvalidPayloadError("回调数据为空")

        try:
            data = payload.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidPayloadError("微信支付回调数据不是合法的 JSON") from e

        resource = data.get("resource")
        if not isinstance(resource, dict) or not resource.get("ciphertext") or not resource.get("nonce"):
            raise InvalidPayloadError("微信支付回调缺少加密数据 resource")

    async def verify_signature(self, payload: NotifyPayload) -> VerifyResult:
        if self._platform_public_key is None:
            return VerifyResult(success=False, error="未配置微信支付平台证书")

        serial = payload.header("Wechatpay-Serial")
        if self.config.platform_serial_no and serial != self.config.platform_serial_no:
            return VerifyResult(
                success=False,
                error="平台证书序列号不匹配",
                details={"serial": serial},
            )

        timestamp = payload.header("Wechatpay-Timestamp")
        nonce = payload.header("Wechatpay-Nonce")
        message = f"{timestamp}\n{nonce}\n{payload.body_text()}\n"
        try:
            matched = verify_signature(message, payload.header("Wechatpay-Signature") or "", self._platform_public_key)
        except BadSignatureFormatError as e:
            return VerifyResult(success=False, error=e.message)

        return VerifyResult(success=True) if matched else VerifyResult(success=False, error="签名不匹配")

    async def transform_notification(self, payload: NotifyPayload) -> UnifiedNotification:
        resource = payload.json()["resource"]
        plaintext = decrypt_aes_gcm(
            resource["ciphertext"],
            self.config.api_v3_key,
            resource["nonce"],
            resource.get("associated_data"),
        )
        try:
            decrypted = json.loads(plaintext)
        except ValueError as e:
            raise InvalidPayloadError("解密后的回调数据不是合法的 JSON") from e

        if decrypted.get("mchid") and decrypted["mchid"] != self.config.mch_id:
            raise VerificationFailedError("回调商户号与配置不一致")

        return UnifiedNotification(
            gateway=PaymentGateway.WECHAT,
            trade_status=map_trade_status(WECHAT_TRADE_STATUS, decrypted.get("trade_state")),
            merchant_order_id=decrypted.get("out_trade_no") or "",
            gateway_trade_id=decrypted.get("transaction_id") or "",
            total_amount_minor_units=int((decrypted.get("amount") or {}).get("total") or 0),
            payer_id=(decrypted.get("payer") or {}).get("openid"),
            raw_payload=decrypted,
        )

    def generate_success_response(self) -> dict[str, str]:
        return {"code": "SUCCESS", "message": "成功"}

    def generate_failure_response(self, error: str | None = None) -> dict[str, str]:
        return {"code": "FAIL", "message": error or "失败"}

    def build_notify_ack(self, success: bool, error: str | None = None) -> NotifyAck:
        if success:
            return NotifyAck(200, self.generate_success_response(), {"Content-Type": "application/json"})
        return NotifyAck(
            self.config.notify_failure_status,
            self.generate_failure_response(error),
            {"Content-Type": "application/json"},
        )

    # ------------------------------------------------------------------ orders
    @_holding_clients
    async def create_order(self, method: str, request: CreateOrderRequest) -> CreateOrderResult:
        """
        创建微信支付订单

        Args:
            method: wechat.native / jsapi / h5 / app / micropay
            request: 下单请求

        Returns:
            CreateOrderResult: native 返回二维码链接，h5 返回跳转链接，
            jsapi / app 返回调起参数，付款码支付成功时直接返回 SUCCESS 状态
        """
        sub_method = self._resolve_method(method)
        self.ensure_enabled()

        logger.info(
            f"创建微信支付订单: method={sub_method}, out_trade_no={request.merchant_order_id}, "
            f"amount={request.total_amount_minor_units}, sandbox={self.config.sandbox}"
        )
        try:
            if sub_method == "micropay":
                return await self._create_micropay_order(request)
            return await self._create_v3_order(sub_method, request)
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"微信支付创建订单失败: out_trade_no={request.merchant_order_id}, error={e!r}")
            return CreateOrderResult(
                success=False,
                merchant_order_id=request.merchant_order_id,
                error=e.message,
                error_code=error_code_of(e),
                raw_payload=e.details if isinstance(e.details, dict) else {},
            )

    async def _create_v3_order(self, trade_type: str, request: CreateOrderRequest) -> CreateOrderResult:
        notify_url = request.notify_url or self.config.notify_url
        if not notify_url:
            raise InvalidRequestError("微信支付下单需要 notify_url")

        params: dict[str, Any] = {
            "description": request.subject,
            "out_trade_no": request.merchant_order_id,
            "notify_url": notify_url,
            "amount": {"total": request.total_amount_minor_units, "currency": "CNY"},
        }
        if request.attach:
            params["attach"] = request.attach
        if request.expire_minutes:
            expire_at = datetime.now(_CHINA_TZ) + timedelta(minutes=request.expire_minutes)
            params["time_expire"] = expire_at.isoformat(timespec="seconds")

        scene_info: dict[str, Any] = {}
        if request.client_ip:
            scene_info["payer_client_ip"] = request.client_ip
        if request.device_id:
            scene_info["device_id"] = request.device_id
        if request.scene_info:
            scene_info["store_info"] = request.scene_info

        if trade_type == "jsapi":
            if not request.openid:
                raise InvalidRequestError("JSAPI 支付需要 openid")
            params["payer"] = {"openid": request.openid}
        elif trade_type == "h5":
            if not request.client_ip:
                raise InvalidRequestError("H5 支付需要 client_ip")
            scene_info["h5_info"] = {"type": "Wap"}
        if scene_info:
            params["scene_info"] = scene_info

        data = await self.v3_client.create_transaction(trade_type, params)
        return CreateOrderResult(
            success=True,
            merchant_order_id=request.merchant_order_id,
            presentation=self._build_presentation(trade_type, data),
            trade_status=TradeStatus.PENDING,
            raw_payload=data,
        )

    def _build_presentation(self, trade_type: str, data: dict[str, Any]) -> PaymentPresentation:
        field_name = {"native": "code_url", "h5": "h5_url"}.get(trade_type, "prepay_id")
        value = data.get(field_name)
        if not value:
            raise GatewayBusinessError(f"微信支付返回数据缺少 {field_name}", details=data)

        match trade_type:
            case "native":
                return PaymentPresentation(PresentationKind.QR_CODE, value)
            case "h5":
                return PaymentPresentation(PresentationKind.REDIRECT_URL, value)
            case "jsapi":
                return PaymentPresentation(PresentationKind.APP_PARAMS, self.v3_client.build_jsapi_pay_params(value))
            case _:
                return PaymentPresentation(PresentationKind.APP_PARAMS, self.v3_client.build_app_pay_params(value))

    async def _create_micropay_order(self, request: CreateOrderRequest) -> CreateOrderResult:
        if not request.auth_code:
            raise InvalidRequestError("付款码支付需要 auth_code")
        if not request.client_ip:
            raise InvalidRequestError("付款码支付需要 client_ip")

        params: dict[str, Any] = {
            "body": request.subject,
            "detail": request.body,
            "attach": request.attach,
            "out_trade_no": request.merchant_order_id,
            "total_fee": request.total_amount_minor_units,
            "spbill_create_ip": request.client_ip,
            "auth_code": request.auth_code,
            "device_info": request.device_id,
        }
        if request.scene_info:
            params["scene_info"] = json.dumps({"store_info": request.scene_info}, ensure_ascii=False)

        machine = MicropayStateMachine(
            self.v2_client,
            grace_period=self.config.micropay_grace_period,
            poll_interval=self.config.micropay_poll_interval,
            poll_timeout=self.config.micropay_poll_timeout,
            sleep=self._sleep,
            clock=self._clock,
        )
        result = await machine.run(params)
        return CreateOrderResult(
            success=True,
            merchant_order_id=request.merchant_order_id,
            gateway_trade_id=result.get("transaction_id"),
            trade_status=TradeStatus.SUCCESS,
            raw_payload=result,
        )

    async def _fetch_order(self, request: QueryOrderRequest) -> dict[str, Any]:
        if request.merchant_order_id:
            return await self.v3_client.query_by_out_trade_no(request.merchant_order_id)
        return await self.v3_client.query_by_transaction_id(request.gateway_trade_id)

    @_holding_clients
    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResult:
        self.ensure_enabled()
        try:
            data = await self._query_with_retries(lambda: self._fetch_order(request))
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"微信支付查询订单失败: {request}, error={e!r}")
            return QueryOrderResult(success=False, error=e.message, error_code=error_code_of(e))

        trade_state = data.get("trade_state") or ""
        order = OrderInfo(
            trade_status=map_trade_status(WECHAT_TRADE_STATUS, trade_state),
            merchant_order_id=data.get("out_trade_no") or request.merchant_order_id or "",
            gateway_trade_id=data.get("transaction_id") or request.gateway_trade_id or "",
            total_amount_minor_units=int((data.get("amount") or {}).get("total") or 0),
            payer_id=(data.get("payer") or {}).get("openid"),
            paid_at=data.get("success_time"),
            gateway_status=trade_state,
        )
        return QueryOrderResult(success=True, order=order, raw_payload=data)

    @_holding_clients
    async def refund(self, request: RefundRequest) -> RefundResult:
        """申请退款（先查询原订单获取订单总金额）"""
        self.ensure_enabled()
        order_ref = QueryOrderRequest(
            merchant_order_id=request.merchant_order_id,
            gateway_trade_id=request.gateway_trade_id,
        )
        try:
            order = await self._query_with_retries(lambda: self._fetch_order(order_ref))
            total = int((order.get("amount") or {}).get("total") or 0)
            if request.refund_amount_minor_units > total:
                raise InvalidRequestError(
                    f"退款金额 {request.refund_amount_minor_units} 超过订单金额 {total}"
                )

            params: dict[str, Any] = {
                "out_refund_no": request.merchant_refund_id,
                "amount": {
                    "refund": request.refund_amount_minor_units,
                    "total": total,
                    "currency": "CNY",
                },
            }
            if request.merchant_order_id:
                params["out_trade_no"] = request.merchant_order_id
            else:
                params["transaction_id"] = request.gateway_trade_id
            if request.reason:
                params["reason"] = request.reason
            if request.notify_url or self.config.notify_url:
                params["notify_url"] = request.notify_url or self.config.notify_url

            data = await self.v3_client.refund(params)
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"微信支付退款失败: out_refund_no={request.merchant_refund_id}, error={e!r}")
            return RefundResult(success=False, error=e.message, error_code=error_code_of(e))

        return RefundResult(
            success=True,
            refund=self._to_refund_info(data, request.merchant_refund_id, request.refund_amount_minor_units),
            raw_payload=data,
        )

    @_holding_clients
    async def query_refund(self, request: RefundQueryRequest) -> RefundResult:
        """按商户退款单号查询退款"""
        self.ensure_enabled()
        try:
            data = await self._query_with_retries(lambda: self.v3_client.query_refund(request.merchant_refund_id))
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"微信支付查询退款失败: out_refund_no={request.merchant_refund_id}, error={e!r}")
            return RefundResult(success=False, error=e.message, error_code=error_code_of(e))

        return RefundResult(
            success=True,
            refund=self._to_refund_info(data, request.merchant_refund_id),
            raw_payload=data,
        )

    @staticmethod
    def _to_refund_info(data: dict[str, Any], merchant_refund_id: str, refund_amount: int = 0) -> RefundInfo:
        return RefundInfo(
            refund_id=data.get("refund_id") or "",
            merchant_refund_id=data.get("out_refund_no") or merchant_refund_id,
            refund_amount_minor_units=int((data.get("amount") or {}).get("refund") or refund_amount),
            refund_status=map_trade_status(WECHAT_REFUND_STATUS, data.get("status") or ""),
            refunded_at=data.get("success_time"),
        )

    @_holding_clients
    async def close_order(self, request: QueryOrderRequest) -> bool:
        self.ensure_enabled()
        if not request.merchant_order_id:
            raise InvalidRequestError("微信支付关单需要 merchant_order_id")
        try:
            await self.v3_client.close_order(request.merchant_order_id)
        except EXPECTED_BUSINESS_ERRORS as e:
            logger.error(f"微信支付关闭订单失败: out_trade_no={request.merchant_order_id}, error={e!r}")
            return False
        return True
