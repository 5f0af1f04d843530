"""微信支付 APIv3 客户端"""

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx
from cryptography.hazmat.primitives.asymmetric import rsa

from libs.http_client import HttpClient, Middleware, NextFn, Request, Response, logging_middleware

from .crypto import load_private_key, sign
from .exceptions import GatewayBusinessError, NetworkError
from .utils import generate_nonce, generate_timestamp

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.mch.weixin.qq.com"
AUTH_SCHEMA = "WECHATPAY2-SHA256-RSA2048"


class WechatPayV3Signer:
    """商户 API 请求签名"""

    def __init__(self, mch_id: str, serial_no: str, private_key: str | rsa.RSAPrivateKey):
        self.mch_id = mch_id
        self.serial_no = serial_no
        self._private_key = (
            private_key if isinstance(private_key, rsa.RSAPrivateKey) else load_private_key(private_key)
        )

    def sign(self, message: str) -> str:
        return sign(message, self._private_key)

    def build_authorization(
        self,
        method: str,
        path: str,
        body: str = "",
        timestamp: str | None = None,
        nonce: str | None = None,
    ) -> str:
        """
        构建 Authorization 请求头

        签名串: ``METHOD\\nPATH\\nTIMESTAMP\\nNONCE\\nBODY\\n``
        """
        timestamp = timestamp or generate_timestamp()
        nonce = nonce or generate_nonce()
        signature = self.sign(f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{body}\n")
        return (
            f"{AUTH_SCHEMA} "
            f'mchid="{self.mch_id}",'
            f'nonce_str="{nonce}",'
            f'signature="{signature}",'
            f'timestamp="{timestamp}",'
            f'serial_no="{self.serial_no}"'
        )


def wechatpay_auth_middleware(signer: WechatPayV3Signer) -> Middleware:
    """为每个请求按最终的 method / path / body 计算签名"""

    async def middleware(request: Request, next: NextFn) -> Response:
        authorization = signer.build_authorization(
            request.method, request.path_with_query, request.body.decode("utf-8")
        )
        return await next(request.with_headers(Authorization=authorization))

    return middleware


class WechatPayV3Client:
    """
    微信支付 APIv3 客户端

    只负责签名、发送请求和错误归类，不做重试。
    """

    def __init__(
        self,
        app_id: str,
        mch_id: str,
        serial_no: str,
        private_key: str | rsa.RSAPrivateKey,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30.0,
        http_client: HttpClient | None = None,
    ):
        self.app_id = app_id
        self.mch_id = mch_id
        self.signer = WechatPayV3Signer(mch_id, serial_no, private_key)
        self._http = http_client or HttpClient(
            middlewares=[wechatpay_auth_middleware(self.signer), logging_middleware(logger)],
            default_timeout=timeout,
            default_headers={"Accept": "application/json", "User-Agent": "paystream-wechatpay/1.0"},
            base_url=base_url,
        )

    async def aclose(self) -> None:
        await self._http.close()

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {}
        content = ""
        if body is not None:
            headers["Content-Type"] = "application/json"
            content = json.dumps(body, ensure_ascii=False, separators=(",", ":"))

        try:
            response = await self._http.request(method, path, headers=headers, body=content)
        except httpx.HTTPError as e:
            raise NetworkError(f"微信支付请求失败: {type(e).__name__}", details={"path": path}) from e

        data: Any = None
        if response.body:
            try:
                data = response.json()
            except ValueError:
                data = None

        if response.ok:
            return data if isinstance(data, dict) else {}

        if isinstance(data, dict) and data.get("code"):
            logger.warning(
                f"微信支付业务错误: path={path}, status={response.status_code}, "
                f"code={data.get('code')}, message={data.get('message')}"
            )
            raise GatewayBusinessError(
                data.get("message") or "微信支付返回业务错误",
                gateway_code=data["code"],
                details=data,
            )
        raise NetworkError(
            f"微信支付返回异常状态码: {response.status_code}",
            details={"path": path, "status_code": response.status_code},
        )

    # ------------------------------------------------------------------ orders
    async def create_transaction(self, trade_type: str, params: dict[str, Any]) -> dict[str, Any]:
        """
        下单（native / jsapi / h5 / app）

        Returns:
            dict: native 返回 code_url，h5 返回 h5_url，jsapi / app 返回 prepay_id
        """
        body = {"appid": self.app_id, "mchid": self.mch_id, **params}
        return await self._request("POST", f"/v3/pay/transactions/{trade_type}", body)

    async def query_by_out_trade_no(self, out_trade_no: str) -> dict[str, Any]:
        path = f"/v3/pay/transactions/out-trade-no/{quote(out_trade_no, safe='')}?mchid={self.mch_id}"
        return await self._request("GET", path)

    async def query_by_transaction_id(self, transaction_id: str) -> dict[str, Any]:
        path = f"/v3/pay/transactions/id/{quote(transaction_id, safe='')}?mchid={self.mch_id}"
        return await self._request("GET", path)

    async def close_order(self, out_trade_no: str) -> None:
        await self._request(
            "POST",
            f"/v3/pay/transactions/out-trade-no/{quote(out_trade_no, safe='')}/close",
            {"mchid": self.mch_id},
        )

    # ----------------------------------------------------------------- refunds
    async def refund(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/v3/refund/domestic/refunds", params)

    async def query_refund(self, out_refund_no: str) -> dict[str, Any]:
        return await self._request("GET", f"/v3/refund/domestic/refunds/{quote(out_refund_no, safe='')}")

    # ------------------------------------------------------- client-side params
    def build_jsapi_pay_params(self, prepay_id: str) -> dict[str, str]:
        """生成 JSAPI / 小程序调起支付参数"""
        timestamp = generate_timestamp()
        nonce = generate_nonce()
        package = f"prepay_id={prepay_id}"
        pay_sign = self.signer.sign(f"{self.app_id}\n{timestamp}\n{nonce}\n{package}\n")
        return {
            "appId": self.app_id,
            "timeStamp": timestamp,
            "nonceStr": nonce,
            "package": package,
            "signType": "RSA",
            "paySign": pay_sign,
        }

    def build_app_pay_params(self, prepay_id: str) -> dict[str, str]:
        """生成 APP 调起支付参数"""
        timestamp = generate_timestamp()
        nonce = generate_nonce()
        pay_sign = self.signer.sign(f"{self.app_id}\n{timestamp}\n{nonce}\n{prepay_id}\n")
        return {
            "appid": self.app_id,
            "partnerid": self.mch_id,
            "prepayid": prepay_id,
            "package": "Sign=WXPay",
            "noncestr": nonce,
            "timestamp": timestamp,
            "sign": pay_sign,
        }
