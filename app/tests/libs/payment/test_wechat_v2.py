from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from libs.http_client import Request, Response
from libs.payment.crypto import KeyedHashAlgorithm
from libs.payment.exceptions import (
    GatewayBusinessError,
    InvalidPayloadError,
    InvalidRequestError,
    NetworkError,
    VerificationFailedError,
)
from libs.payment.wechat_v2 import WechatPayV2Client, dict_to_xml, xml_to_dict

API_KEY = "192006250b4c09247ec02edce69f6a2d"


def _client(http_client=None, sign_type=KeyedHashAlgorithm.MD5, cert_http_client=None) -> WechatPayV2Client:
    return WechatPayV2Client(
        app_id="wx8888888888888888",
        mch_id="1900000001",
        api_key=API_KEY,
        sign_type=sign_type,
        http_client=http_client,
        cert_http_client=cert_http_client,
    )


def _http_returning(client: WechatPayV2Client, data: dict[str, str], status_code: int = 200, signed: bool = True):
    """模拟 HttpClient，返回（可选）带签名的 XML"""
    if signed:
        data = {**data, "sign": client.generate_signature(data)}
    http = MagicMock()
    http.post = AsyncMock(
        return_value=Response(
            status_code=status_code,
            headers={"Content-Type": "text/xml"},
            body=dict_to_xml(data),
            latency_ms=1,
            request=Request(method="POST", url="https://api.mch.weixin.qq.com/pay/micropay"),
        )
    )
    http.close = AsyncMock()
    return http


class TestXml:
    def test_dict_to_xml_uses_cdata_and_skips_empty(self):
        xml = dict_to_xml({"body": "会员<VIP>", "detail": "", "attach": None, "total_fee": 1})
        assert xml.decode() == "<xml><body><![CDATA[会员<VIP>]]></body><total_fee><![CDATA[1]]></total_fee></xml>"

    def test_xml_to_dict(self):
        xml = "<xml><return_code><![CDATA[SUCCESS]]></return_code><err_code_des></err_code_des></xml>"
        assert xml_to_dict(xml) == {"return_code": "SUCCESS", "err_code_des": ""}

    def test_invalid_xml(self):
        with pytest.raises(InvalidPayloadError):
            xml_to_dict(b"<xml><return_code>")

    def test_external_entities_not_resolved(self):
        xml = (
            '<?xml version="1.0"?><!DOCTYPE xml [<!ENTITY xxe SYSTEM "file:///etc/passwd">]>'
            "<xml><return_code>&xxe;</return_code></xml>"
        )
        assert "root:" not in xml_to_dict(xml).get("return_code", "")


class TestSignature:
    @pytest.mark.parametrize("sign_type", [KeyedHashAlgorithm.MD5, KeyedHashAlgorithm.HMAC_SHA256])
    def test_verify_response_signature(self, sign_type):
        client = _client(sign_type=sign_type)
        params = {"return_code": "SUCCESS", "result_code": "SUCCESS", "transaction_id": "4200000001"}
        params["sign"] = client.generate_signature(params)

        assert client.verify_response_signature(params)
        assert not client.verify_response_signature({**params, "transaction_id": "4200000002"})
        assert not client.verify_response_signature({k: v for k, v in params.items() if k != "sign"})


class TestRequests:
    @pytest.mark.asyncio
    async def test_micropay_request_is_signed(self):
        client = _client()
        http = _http_returning(client, {"return_code": "SUCCESS", "result_code": "SUCCESS"})
        client._http = http

        result = await client.micropay(
            {"body": "会员", "out_trade_no": "ORDER20240001", "total_fee": 1, "auth_code": "134567890123456789"}
        )

        assert result["result_code"] == "SUCCESS"
        path = http.post.call_args.args[0]
        sent = xml_to_dict(http.post.call_args.kwargs["body"])
        assert path == "/pay/micropay"
        assert sent["fee_type"] == "CNY"
        assert sent["sign_type"] == "MD5"
        assert sent["sign"] == client.generate_signature(sent)

    @pytest.mark.asyncio
    async def test_return_code_fail(self):
        client = _client()
        client._http = _http_returning(client, {"return_code": "FAIL", "return_msg": "签名错误"}, signed=False)

        with pytest.raises(GatewayBusinessError) as exc_info:
            await client.query_order(out_trade_no="ORDER20240001")
        assert exc_info.value.gateway_code == "FAIL"
        assert exc_info.value.message == "签名错误"

    @pytest.mark.asyncio
    async def test_bad_response_signature(self):
        client = _client()
        client._http = _http_returning(
            client, {"return_code": "SUCCESS", "result_code": "SUCCESS", "sign": "0" * 32}, signed=False
        )

        with pytest.raises(VerificationFailedError):
            await client.query_order(out_trade_no="ORDER20240001")

    @pytest.mark.asyncio
    async def test_http_status_error(self):
        client = _client()
        client._http = _http_returning(client, {"return_code": "SUCCESS"}, status_code=500)

        with pytest.raises(NetworkError):
            await client.query_order(transaction_id="4200000001")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        client = _client()
        http = MagicMock()
        http.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
        client._http = http

        with pytest.raises(NetworkError):
            await client.micropay({"out_trade_no": "ORDER20240001"})

    @pytest.mark.asyncio
    async def test_query_requires_an_id(self):
        with pytest.raises(InvalidRequestError):
            await _client().query_order()

    @pytest.mark.asyncio
    async def test_reverse_uses_cert_client(self):
        client = _client()
        cert_http = _http_returning(client, {"return_code": "SUCCESS", "result_code": "SUCCESS", "recall": "N"})
        client._cert_http = cert_http

        result = await client.reverse_order(out_trade_no="ORDER20240001")

        assert result["recall"] == "N"
        assert cert_http.post.call_args.args[0] == "/secapi/pay/reverse"
