from unittest.mock import MagicMock, patch
from urllib.parse import unquote_plus, urlencode

import pytest
from alipay.exceptions import AliPayValidationError

from libs.payment.alipay import ALIPAY_GATEWAY, ALIPAY_SANDBOX_GATEWAY, AlipayProvider
from libs.payment.base import (
    CreateOrderRequest,
    NotifyPayload,
    PaymentGateway,
    PresentationKind,
    QueryOrderRequest,
    RefundQueryRequest,
    RefundRequest,
    TradeStatus,
)
from libs.payment.exceptions import (
    InvalidPayloadError,
    InvalidRequestError,
    PaymentConfigError,
    UnsupportedMethodError,
    VerificationFailedError,
)


@pytest.fixture
def provider(alipay_config):
    return AlipayProvider(alipay_config)


def _payload(params: dict[str, str]) -> NotifyPayload:
    return NotifyPayload(
        "alipay",
        urlencode(params).encode(),
        {"Content-Type": "application/x-www-form-urlencoded; charset=utf-8"},
    )


def _order(**overrides) -> CreateOrderRequest:
    fields = {"merchant_order_id": "ORDER20240001", "total_amount_minor_units": 8888, "subject": "年度会员"}
    fields.update(overrides)
    return CreateOrderRequest(**fields)


class TestConfig:
    def test_invalid_app_id(self, alipay_config):
        with pytest.raises(PaymentConfigError):
            AlipayProvider({**alipay_config, "app_id": "wx8888888888888888"})

    def test_invalid_public_key(self, alipay_config):
        with pytest.raises(PaymentConfigError):
            AlipayProvider({**alipay_config, "alipay_public_key": "broken"})

    def test_invalid_sign_type(self, alipay_config):
        with pytest.raises(PaymentConfigError):
            AlipayProvider({**alipay_config, "sign_type": "MD5"})

    def test_gateway_selection(self, alipay_config):
        assert AlipayProvider(alipay_config).gateway == ALIPAY_GATEWAY
        assert AlipayProvider({**alipay_config, "sandbox": True}).gateway == ALIPAY_SANDBOX_GATEWAY
        custom = AlipayProvider({**alipay_config, "gateway": "https://openapi.example.com/gateway.do"})
        assert custom.gateway == "https://openapi.example.com/gateway.do"


class TestNotify:
    @pytest.mark.asyncio
    async def test_valid_notification(self, provider, alipay_notify):
        notification = await provider.handle_notify(_payload(alipay_notify()))

        assert notification.gateway == PaymentGateway.ALIPAY
        assert notification.trade_status == TradeStatus.SUCCESS
        assert notification.merchant_order_id == "ORDER20240001"
        assert notification.gateway_trade_id == "2024010122001456781000000001"
        assert notification.total_amount_minor_units == 8888
        assert notification.payer_id == "2088102177846880"

    @pytest.mark.asyncio
    async def test_dict_body(self, provider, alipay_notify):
        notification = await provider.handle_notify(NotifyPayload("alipay", alipay_notify()))
        assert notification.total_amount_minor_units == 8888

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "trade_status,expected",
        [
            ("TRADE_FINISHED", TradeStatus.SUCCESS),
            ("TRADE_CLOSED", TradeStatus.FAIL),
            ("WAIT_BUYER_PAY", TradeStatus.PENDING),
            ("TRADE_UNKNOWN", TradeStatus.PENDING),
        ],
    )
    async def test_trade_status_mapping(self, provider, alipay_notify, trade_status, expected):
        notification = await provider.handle_notify(_payload(alipay_notify(trade_status=trade_status)))
        assert notification.trade_status == expected

    @pytest.mark.asyncio
    async def test_tampered_amount(self, provider, alipay_notify):
        params = alipay_notify()
        params["total_amount"] = "0.01"

        with pytest.raises(VerificationFailedError):
            await provider.handle_notify(_payload(params))

    @pytest.mark.asyncio
    async def test_signed_by_other_key(self, provider, alipay_notify, alipay_app_keys):
        params = alipay_notify()
        forged = AlipayProvider(
            {**provider.config.model_dump(), "alipay_public_key": alipay_app_keys[1]}
        )

        with pytest.raises(VerificationFailedError):
            await forged.handle_notify(_payload(params))

    @pytest.mark.asyncio
    async def test_sign_type_mismatch(self, provider, alipay_notify):
        with pytest.raises(VerificationFailedError):
            await provider.handle_notify(_payload(alipay_notify(sign_type="RSA")))

    @pytest.mark.asyncio
    async def test_rsa_sign_type(self, alipay_config, alipay_notify):
        provider = AlipayProvider({**alipay_config, "sign_type": "RSA"})
        notification = await provider.handle_notify(_payload(alipay_notify(sign_type="RSA")))
        assert notification.trade_status == TradeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_app_id_mismatch(self, provider, alipay_notify):
        with pytest.raises(VerificationFailedError):
            await provider.handle_notify(_payload(alipay_notify(app_id="2021000000000002")))

    @pytest.mark.asyncio
    async def test_missing_field(self, provider, alipay_notify):
        params = alipay_notify()
        del params["trade_no"]

        with pytest.raises(InvalidPayloadError):
            await provider.handle_notify(_payload(params))

    @pytest.mark.asyncio
    async def test_empty_body(self, provider):
        with pytest.raises(InvalidPayloadError):
            await provider.handle_notify(_payload({}))

    @pytest.mark.asyncio
    async def test_bad_amount(self, provider, alipay_notify):
        with pytest.raises(InvalidPayloadError):
            await provider.handle_notify(_payload(alipay_notify(total_amount="abc")))


class TestNotifyAck:
    def test_success(self, provider):
        ack = provider.build_notify_ack(True)
        assert (ack.status_code, ack.content, ack.media_type) == (200, "success", "text/plain")

    def test_failure(self, provider):
        ack = provider.build_notify_ack(False, "签名验证失败")
        assert (ack.status_code, ack.content, ack.media_type) == (400, "fail", "text/plain")


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_qrcode(self, provider):
        with patch.object(provider.client, "api_alipay_trade_precreate") as mock_precreate:
            mock_precreate.return_value = {
                "code": "10000",
                "msg": "Success",
                "out_trade_no": "ORDER20240001",
                "qr_code": "https://qr.alipay.com/bax03431ljhokirwl38f00a7",
            }
            result = await provider.create_order("alipay.qrcode", _order(expire_minutes=15, attach="vip"))

        assert result.success
        assert result.presentation.kind == PresentationKind.QR_CODE
        assert result.presentation.value == "https://qr.alipay.com/bax03431ljhokirwl38f00a7"
        kwargs = mock_precreate.call_args.kwargs
        assert kwargs["total_amount"] == "88.88"
        assert kwargs["timeout_express"] == "15m"
        assert kwargs["passback_params"] == "vip"
        assert kwargs["notify_url"] == "https://pay.example.com/api/payment/alipay/notify"

    @pytest.mark.asyncio
    async def test_qrcode_business_error(self, provider):
        with patch.object(provider.client, "api_alipay_trade_precreate") as mock_precreate:
            mock_precreate.return_value = {
                "code": "40004",
                "msg": "Business Failed",
                "sub_code": "ACQ.TRADE_HAS_SUCCESS",
                "sub_msg": "交易已被支付",
            }
            result = await provider.create_order("alipay.qrcode", _order())

        assert not result.success
        assert result.error_code == "ACQ.TRADE_HAS_SUCCESS"
        assert result.error == "Business Failed: 交易已被支付"

    @pytest.mark.asyncio
    async def test_sdk_validation_error(self, provider):
        with patch.object(provider.client, "api_alipay_trade_precreate") as mock_precreate:
            mock_precreate.side_effect = AliPayValidationError()
            result = await provider.create_order("alipay.qrcode", _order())

        assert not result.success
        assert result.error_code == "VERIFY_FAILED"

    @pytest.mark.asyncio
    async def test_pc_redirect(self, provider):
        result = await provider.create_order("alipay.pc", _order())

        assert result.presentation.kind == PresentationKind.REDIRECT_URL
        assert result.presentation.value.startswith(f"{ALIPAY_GATEWAY}?")
        assert "alipay.trade.page.pay" in unquote_plus(result.presentation.value)

    @pytest.mark.asyncio
    async def test_h5_redirect(self, provider):
        result = await provider.create_order("alipay.h5", _order())

        assert result.presentation.kind == PresentationKind.REDIRECT_URL
        assert "alipay.trade.wap.pay" in unquote_plus(result.presentation.value)

    @pytest.mark.asyncio
    async def test_app_order_string(self, provider):
        result = await provider.create_order("alipay.app", _order())

        assert result.presentation.kind == PresentationKind.APP_PARAMS
        assert "alipay.trade.app.pay" in unquote_plus(result.presentation.value["order_string"])

    @pytest.mark.asyncio
    async def test_unsupported_method(self, provider):
        with pytest.raises(UnsupportedMethodError):
            await provider.create_order("alipay.native", _order())


class TestOrderOperations:
    @pytest.mark.asyncio
    async def test_query(self, provider):
        with patch.object(provider.client, "api_alipay_trade_query") as mock_query:
            mock_query.return_value = {
                "code": "10000",
                "msg": "Success",
                "out_trade_no": "ORDER20240001",
                "trade_no": "2024010122001456781000000001",
                "trade_status": "TRADE_SUCCESS",
                "total_amount": "88.88",
                "buyer_user_id": "2088102177846880",
                "send_pay_date": "2024-01-01 10:00:05",
            }
            result = await provider.query_order(QueryOrderRequest(merchant_order_id="ORDER20240001"))

        assert result.success
        assert result.order.trade_status == TradeStatus.SUCCESS
        assert result.order.total_amount_minor_units == 8888
        assert result.order.payer_id == "2088102177846880"
        assert mock_query.call_args.kwargs == {"out_trade_no": "ORDER20240001", "trade_no": None}

    @pytest.mark.asyncio
    async def test_query_network_error(self, provider):
        with patch.object(provider.client, "api_alipay_trade_query") as mock_query:
            mock_query.side_effect = ConnectionError("reset")
            result = await provider.query_order(QueryOrderRequest(merchant_order_id="ORDER20240001"))

        assert not result.success
        assert result.error_code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fund_change,expected", [("Y", TradeStatus.SUCCESS), ("N", TradeStatus.PENDING)])
    async def test_refund(self, provider, fund_change, expected):
        with patch.object(provider.client, "api_alipay_trade_refund") as mock_refund:
            mock_refund.return_value = {
                "code": "10000",
                "msg": "Success",
                "trade_no": "2024010122001456781000000001",
                "refund_fee": "10.00",
                "fund_change": fund_change,
            }
            result = await provider.refund(
                RefundRequest(refund_amount_minor_units=1000, merchant_order_id="ORDER20240001", reason="用户取消")
            )

        assert result.success
        assert result.refund.refund_status == expected
        assert result.refund.refund_amount_minor_units == 1000
        assert result.refund.refund_id == "2024010122001456781000000001"
        kwargs = mock_refund.call_args.kwargs
        assert kwargs["refund_amount"] == "10.00"
        assert kwargs["refund_reason"] == "用户取消"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("refund_status,expected", [("REFUND_SUCCESS", TradeStatus.SUCCESS), (None, TradeStatus.PENDING)])
    async def test_query_refund(self, provider, refund_status, expected):
        response = {
            "code": "10000",
            "msg": "Success",
            "trade_no": "2024010122001456781000000001",
            "out_trade_no": "ORDER20240001",
            "out_request_no": "RF20240001",
            "refund_amount": "10.00",
            "total_amount": "88.88",
        }
        if refund_status:
            response.update(refund_status=refund_status, gmt_refund_pay="2024-01-02 10:00:00")

        with patch.object(provider.client, "api_alipay_trade_fastpay_refund_query") as mock_query:
            mock_query.return_value = response
            result = await provider.query_refund(
                RefundQueryRequest(merchant_refund_id="RF20240001", merchant_order_id="ORDER20240001")
            )

        assert result.success
        assert result.refund.refund_status == expected
        assert result.refund.refund_amount_minor_units == 1000
        assert result.refund.merchant_refund_id == "RF20240001"
        assert mock_query.call_args.kwargs == {
            "out_request_no": "RF20240001",
            "out_trade_no": "ORDER20240001",
            "trade_no": None,
        }

    @pytest.mark.asyncio
    async def test_query_refund_business_error(self, provider):
        failed = {"code": "40004", "msg": "Business Failed", "sub_code": "ACQ.TRADE_NOT_EXIST", "sub_msg": "交易不存在"}
        with patch.object(provider.client, "api_alipay_trade_fastpay_refund_query", MagicMock(return_value=failed)):
            result = await provider.query_refund(
                RefundQueryRequest(merchant_refund_id="RF20240001", gateway_trade_id="2024010122001456781000000001")
            )

        assert not result.success
        assert result.error_code == "ACQ.TRADE_NOT_EXIST"

    @pytest.mark.asyncio
    async def test_query_refund_requires_order_id(self, provider):
        with patch.object(provider.client, "api_alipay_trade_fastpay_refund_query") as mock_query:
            with pytest.raises(InvalidRequestError):
                await provider.query_refund(RefundQueryRequest(merchant_refund_id="RF20240001"))
        mock_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_close(self, provider):
        with patch.object(provider.client, "api_alipay_trade_close", MagicMock(return_value={"code": "10000"})):
            assert await provider.close_order(QueryOrderRequest(merchant_order_id="ORDER20240001"))

    @pytest.mark.asyncio
    async def test_close_failure(self, provider):
        closed = {"code": "40004", "msg": "Business Failed", "sub_code": "ACQ.TRADE_NOT_EXIST"}
        with patch.object(provider.client, "api_alipay_trade_close", MagicMock(return_value=closed)):
            assert not await provider.close_order(QueryOrderRequest(merchant_order_id="ORDER20240001"))

    @pytest.mark.asyncio
    async def test_disabled_provider(self, alipay_config):
        provider = AlipayProvider({**alipay_config, "enabled": False})
        with pytest.raises(PaymentConfigError):
            await provider.query_order(QueryOrderRequest(merchant_order_id="ORDER20240001"))
