"""微信支付 V2（XML）客户端，仅用于付款码支付"""

import logging
import ssl
from typing import Any

import httpx
from lxml import etree

from libs.http_client import HttpClient, logging_middleware

from .crypto import KeyedHashAlgorithm, build_canonical_string, constant_time_equals, keyed_hash
from .exceptions import (
    GatewayBusinessError,
    InvalidPayloadError,
    InvalidRequestError,
    NetworkError,
    VerificationFailedError,
)
from .utils import generate_nonce

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.mch.weixin.qq.com"

_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def dict_to_xml(data: dict[str, Any]) -> bytes:
    """``{"k": "v"}`` -> ``<xml><k><![CDATA[v]]></k></xml>``，跳过空值"""
    root = etree.Element("xml")
    for key, value in data.items():
        if value is None or value == "":
            continue
        etree.SubElement(root, key).text = etree.CDATA(str(value))
    return etree.tostring(root, encoding="utf-8")


def xml_to_dict(xml: bytes | str) -> dict[str, str]:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    try:
        root = etree.fromstring(xml, parser=_XML_PARSER)
    except etree.XMLSyntaxError as e:
        raise InvalidPayloadError("微信支付 V2 返回的不是合法的 XML") from e
    return {child.tag: (child.text or "") for child in root if isinstance(child.tag, str)}


class WechatPayV2Client:
    """微信支付 V2 API 客户端"""

    def __init__(
        self,
        app_id: str,
        mch_id: str,
        api_key: str,
        sign_type: str = KeyedHashAlgorithm.MD5,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30.0,
        cert_path: str | None = None,
        key_path: str | None = None,
        http_client: HttpClient | None = None,
        cert_http_client: HttpClient | None = None,
    ):
        self.app_id = app_id
        self.mch_id = mch_id
        self.api_key = api_key
        self.sign_type = KeyedHashAlgorithm(sign_type)
        self._base_url = base_url
        self._timeout = timeout
        self._cert_path = cert_path
        self._key_path = key_path
        self._http = http_client or self._build_http_client()
        self._cert_http = cert_http_client

    def _build_http_client(self, verify: ssl.SSLContext | bool = True) -> HttpClient:
        return HttpClient(
            middlewares=[logging_middleware(logger)],
            default_timeout=self._timeout,
            default_headers={"Content-Type": "application/xml", "User-Agent": "paystream-wechatpay/1.0"},
            base_url=self._base_url,
            verify=verify,
        )

    def _get_cert_http_client(self) -> HttpClient:
        """撤销接口需要商户 API 证书"""
        if self._cert_http is None:
            if self._cert_path and self._key_path:
                context = ssl.create_default_context()
                context.load_cert_chain(self._cert_path, self._key_path)
                self._cert_http = self._build_http_client(verify=context)
            else:
                logger.warning("未配置商户 API 证书，撤销请求将不携带客户端证书")
                self._cert_http = self._http
        return self._cert_http

    async def aclose(self) -> None:
        await self._http.close()
        if self._cert_http is not None and self._cert_http is not self._http:
            await self._cert_http.close()

    def generate_signature(self, params: dict[str, Any]) -> str:
        canonical = build_canonical_string(params, exclude=("sign",), secret=self.api_key)
        return keyed_hash(canonical, self.api_key, self.sign_type)

    def verify_response_signature(self, params: dict[str, Any]) -> bool:
        return constant_time_equals(params.get("sign"), self.generate_signature(params))

    def _build_request(self, params: dict[str, Any]) -> dict[str, Any]:
        data = {
            "appid": self.app_id,
            "mch_id": self.mch_id,
            "nonce_str": generate_nonce(),
            "sign_type": str(self.sign_type),
            **{k: v for k, v in params.items() if v is not None and v != ""},
        }
        data["sign"] = self.generate_signature(data)
        return data

    async def _request(
        self, path: str, params: dict[str, Any], http_client: HttpClient | None = None
    ) -> dict[str, str]:
        """
        发送 V2 请求

        return_code 为 SUCCESS 时先校验响应签名再使用任何字段；
        return_code 非 SUCCESS（通信失败）抛出 GatewayBusinessError。
        业务结果（result_code / err_code）由调用方判断。
        """
        client = http_client or self._http
        try:
            response = await client.post(path, body=dict_to_xml(self._build_request(params)))
        except httpx.HTTPError as e:
            raise NetworkError(f"微信支付 V2 请求失败: {type(e).__name__}", details={"path": path}) from e

        if response.status_code >= 400:
            raise NetworkError(
                f"微信支付 V2 返回异常状态码: {response.status_code}",
                details={"path": path, "status_code": response.status_code},
            )

        result = xml_to_dict(response.body)
        if result.get("return_code") != "SUCCESS":
            raise GatewayBusinessError(
                result.get("return_msg") or "微信支付 V2 通信失败",
                gateway_code=result.get("return_code") or "FAIL",
                details=result,
            )
        if not self.verify_response_signature(result):
            raise VerificationFailedError("微信支付 V2 响应签名验证失败", details={"path": path})
        return result

    @staticmethod
    def _order_ref(out_trade_no: str | None, transaction_id: str | None) -> dict[str, str | None]:
        if not out_trade_no and not transaction_id:
            raise InvalidRequestError("微信支付订单号和商户订单号不能同时为空")
        return {"out_trade_no": out_trade_no, "transaction_id": transaction_id}

    async def micropay(self, params: dict[str, Any]) -> dict[str, str]:
        """付款码支付，params 至少包含 body / out_trade_no / total_fee / spbill_create_ip / auth_code"""
        return await self._request("/pay/micropay", {"fee_type": "CNY", **params})

    async def query_order(
        self, out_trade_no: str | None = None, transaction_id: str | None = None
    ) -> dict[str, str]:
        return await self._request("/pay/orderquery", self._order_ref(out_trade_no, transaction_id))

    async def reverse_order(
        self, out_trade_no: str | None = None, transaction_id: str | None = None
    ) -> dict[str, str]:
        return await self._request(
            "/secapi/pay/reverse",
            self._order_ref(out_trade_no, transaction_id),
            http_client=self._get_cert_http_client(),
        )
