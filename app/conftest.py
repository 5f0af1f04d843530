"""Pytest 配置文件"""

import json
import logging
from base64 import b64encode

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from libs.payment.crypto import SignAlgorithm, build_canonical_string, sign
from libs.payment.factory import ProviderFactory, register_builtin_providers


def _generate_key_pair() -> tuple[str, str]:
    """生成 (PKCS#8 私钥 PEM, 公钥 PEM)"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture(autouse=True)
def restore_payment_log_level():
    """PaymentManager 会修改 libs.payment 的日志级别"""
    package_logger = logging.getLogger("libs.payment")
    level = package_logger.level
    yield
    package_logger.setLevel(level)


@pytest.fixture(scope="session")
def merchant_keys() -> tuple[str, str]:
    """商户 API 密钥对"""
    return _generate_key_pair()


@pytest.fixture(scope="session")
def platform_keys() -> tuple[str, str]:
    """微信支付平台密钥对（用于签名模拟回调）"""
    return _generate_key_pair()


@pytest.fixture(scope="session")
def alipay_app_keys() -> tuple[str, str]:
    """支付宝应用密钥对"""
    return _generate_key_pair()


@pytest.fixture(scope="session")
def alipay_keys() -> tuple[str, str]:
    """支付宝平台密钥对（用于签名模拟回调）"""
    return _generate_key_pair()


@pytest.fixture
def wechat_config(merchant_keys, platform_keys) -> dict:
    return {
        "enabled": True,
        "app_id": "wx8888888888888888",
        "mch_id": "1900000001",
        "api_v3_key": "0123456789abcdef0123456789abcdef",
        "private_key": merchant_keys[0],
        "serial_no": "MERCHANT0001",
        "platform_certificate": platform_keys[1],
        "platform_serial_no": "PLATFORM0001",
        "api_key": "192006250b4c09247ec02edce69f6a2d",
        "notify_url": "https://pay.example.com/api/payment/wechat/notify",
    }


@pytest.fixture
def alipay_config(alipay_app_keys, alipay_keys) -> dict:
    return {
        "enabled": True,
        "app_id": "2021000000000001",
        "private_key": alipay_app_keys[0],
        "alipay_public_key": alipay_keys[1],
        "notify_url": "https://pay.example.com/api/payment/alipay/notify",
        "return_url": "https://pay.example.com/return",
    }


@pytest.fixture
def provider_factory() -> ProviderFactory:
    """独立的注册表，避免测试之间共享实例缓存"""
    return register_builtin_providers(ProviderFactory())


@pytest.fixture
def wechat_notify(platform_keys, wechat_config):
    """构造带平台签名的微信支付回调，返回 (body, headers)"""

    def build(
        transaction: dict,
        timestamp: str = "1700000000",
        nonce: str = "5K8264ILTKCH16CQ2502SI8ZNMTM67VS",
        serial: str = "PLATFORM0001",
        event_type: str = "TRANSACTION.SUCCESS",
    ) -> tuple[bytes, dict[str, str]]:
        gcm_nonce = "fdasflkja484"
        associated_data = "transaction"
        ciphertext = AESGCM(wechat_config["api_v3_key"].encode()).encrypt(
            gcm_nonce.encode(),
            json.dumps(transaction, ensure_ascii=False).encode(),
            associated_data.encode(),
        )
        body = json.dumps(
            {
                "id": "EV-2018022511223320873",
                "create_time": "2024-01-01T10:00:00+08:00",
                "resource_type": "encrypt-resource",
                "event_type": event_type,
                "summary": "支付成功",
                "resource": {
                    "algorithm": "AEAD_AES_256_GCM",
                    "ciphertext": b64encode(ciphertext).decode(),
                    "nonce": gcm_nonce,
                    "associated_data": associated_data,
                    "original_type": "transaction",
                },
            },
            ensure_ascii=False,
            separators=(",", ":"),
        )
        headers = {
            "Wechatpay-Timestamp": timestamp,
            "Wechatpay-Nonce": nonce,
            "Wechatpay-Signature": sign(f"{timestamp}\n{nonce}\n{body}\n", platform_keys[0]),
            "Wechatpay-Serial": serial,
        }
        return body.encode("utf-8"), headers

    return build


@pytest.fixture
def wechat_transaction(wechat_config) -> dict:
    return {
        "appid": wechat_config["app_id"],
        "mchid": wechat_config["mch_id"],
        "out_trade_no": "ORDER20240001",
        "transaction_id": "4200000000202401010000000001",
        "trade_type": "NATIVE",
        "trade_state": "SUCCESS",
        "trade_state_desc": "支付成功",
        "success_time": "2024-01-01T10:00:05+08:00",
        "payer": {"openid": "oUpF8uMuAJO_M2pxb1Q9zNjWeS6o"},
        "amount": {"total": 8888, "payer_total": 8888, "currency": "CNY"},
    }


@pytest.fixture
def alipay_notify(alipay_keys, alipay_config):
    """构造带支付宝签名的异步通知参数"""

    def build(**overrides: str) -> dict[str, str]:
        params = {
            "app_id": alipay_config["app_id"],
            "notify_time": "2024-01-01 10:00:05",
            "notify_type": "trade_status_sync",
            "notify_id": "ac05099524730693a8b330c5ecf72da9786",
            "charset": "utf-8",
            "version": "1.0",
            "sign_type": "RSA2",
            "out_trade_no": "ORDER20240001",
            "trade_no": "2024010122001456781000000001",
            "trade_status": "TRADE_SUCCESS",
            "total_amount": "88.88",
            "buyer_id": "2088102177846880",
            **overrides,
        }
        algorithm = SignAlgorithm.RSA_SHA1 if params["sign_type"] == "RSA" else SignAlgorithm.RSA_SHA256
        params["sign"] = sign(
            build_canonical_string(params, exclude=("sign", "sign_type")), alipay_keys[0], algorithm
        )
        return params

    return build
