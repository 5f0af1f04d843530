"""支付签名 / 验签 / 解密工具

所有函数都是无状态的纯函数：
- 验签返回 False 表示签名确实不匹配；
- 无法进行验签（密钥损坏、签名不是 base64、算法不支持）时抛出 CryptoError 子类。
"""

import binascii
import hashlib
import hmac
import textwrap
from base64 import b64decode, b64encode
from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature, InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import (
    BadKeyError,
    BadSignatureFormatError,
    DecryptionFailedError,
    TagMismatchError,
    UnsupportedAlgorithmError,
)


class SignAlgorithm(StrEnum):
    """非对称签名算法"""

    RSA_SHA256 = "RSA-SHA256"  # 微信支付 v3 / 支付宝 RSA2
    RSA_SHA1 = "RSA-SHA1"  # 支付宝 RSA


class KeyedHashAlgorithm(StrEnum):
    """微信支付 v2 签名算法"""

    MD5 = "MD5"
    HMAC_SHA256 = "HMAC-SHA256"


_RSA_HASHES = {
    SignAlgorithm.RSA_SHA256: hashes.SHA256,
    SignAlgorithm.RSA_SHA1: hashes.SHA1,
}

GCM_KEY_SIZE = 32
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16


def _rsa_hash(algorithm: str) -> hashes.HashAlgorithm:
    try:
        return _RSA_HASHES[SignAlgorithm(algorithm)]()
    except ValueError:
        raise UnsupportedAlgorithmError(f"不支持的签名算法: {algorithm}") from None


# =============================================================================
# 密钥加载
# =============================================================================
def format_pem(key: str, label: str) -> str:
    """把不带头尾的 base64 密钥包装成 PEM 格式"""
    key = key.strip()
    if key.startswith("-----BEGIN"):
        return key
    body = "".join(key.split())
    lines = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN {label}-----\n{lines}\n-----END {label}-----"


def load_public_key(key: str | bytes) -> rsa.RSAPublicKey:
    """
    加载 RSA 公钥

    支持 PEM 公钥、X.509 PEM 证书（微信支付平台证书）以及不带头尾的 base64 公钥（支付宝）。
    """
    if isinstance(key, bytes):
        key = key.decode("utf-8")
    if not key or not key.strip():
        raise BadKeyError("公钥为空")

    try:
        if "BEGIN CERTIFICATE" in key:
            public_key = x509.load_pem_x509_certificate(key.strip().encode()).public_key()
        else:
            public_key = serialization.load_pem_public_key(
                format_pem(key, "PUBLIC KEY").encode()
            )
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise BadKeyError(f"公钥格式错误: {type(e).__name__}") from e

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise BadKeyError("公钥不是 RSA 公钥")
    return public_key


def load_private_key(key: str | bytes) -> rsa.RSAPrivateKey:
    """加载 RSA 私钥（PKCS#8 / PKCS#1 PEM，或不带头尾的 base64）"""
    if isinstance(key, bytes):
        key = key.decode("utf-8")
    if not key or not key.strip():
        raise BadKeyError("私钥为空")

    candidates = (
        [key.strip()]
        if key.strip().startswith("-----BEGIN")
        else [format_pem(key, "PRIVATE KEY"), format_pem(key, "RSA PRIVATE KEY")]
    )
    last_error: Exception | None = None
    for pem in candidates:
        try:
            private_key = serialization.load_pem_private_key(pem.encode(), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            last_error = e
            continue
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise BadKeyError("私钥不是 RSA 私钥")
        return private_key

    raise BadKeyError(f"私钥格式错误: {type(last_error).__name__}") from last_error


# =============================================================================
# 非对称签名
# =============================================================================
def sign(
    message: str | bytes,
    private_key: str | rsa.RSAPrivateKey,
    algorithm: str = SignAlgorithm.RSA_SHA256,
) -> str:
    """使用 RSA 私钥签名，返回 base64 编码的签名"""
    if isinstance(message, str):
        message = message.encode("utf-8")
    hash_algorithm = _rsa_hash(algorithm)
    key = private_key if isinstance(private_key, rsa.RSAPrivateKey) else load_private_key(private_key)
    signature = key.sign(message, padding.PKCS1v15(), hash_algorithm)
    return b64encode(signature).decode()


def verify_signature(
    message: str | bytes,
    signature: str,
    public_key: str | rsa.RSAPublicKey,
    algorithm: str = SignAlgorithm.RSA_SHA256,
) -> bool:
    """
    RSA 验签

    Args:
        message: 待验签字符串
        signature: base64 编码的签名
        public_key: 公钥（PEM / 证书 / base64）或已加载的公钥对象
        algorithm: 签名算法

    Returns:
        bool: 签名是否匹配

    Raises:
        BadKeyError: 公钥无法加载
        BadSignatureFormatError: 签名不是合法的 base64
        UnsupportedAlgorithmError: 不支持的算法
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    hash_algorithm = _rsa_hash(algorithm)
    key = public_key if isinstance(public_key, rsa.RSAPublicKey) else load_public_key(public_key)

    if not signature:
        raise BadSignatureFormatError("签名为空")
    try:
        raw_signature = b64decode(signature, validate=True)
    except (binascii.Error, ValueError) as e:
        raise BadSignatureFormatError("签名不是合法的 base64 字符串") from e

    try:
        key.verify(raw_signature, message, padding.PKCS1v15(), hash_algorithm)
    except InvalidSignature:
        return False
    return True


# =============================================================================
# AES-256-GCM 解密（微信支付 v3 回调 / 平台证书）
# =============================================================================
def decrypt_aes_gcm(
    ciphertext: str,
    key: str | bytes,
    nonce: str | bytes,
    associated_data: str | bytes | None = None,
) -> str:
    """
    解密 AEAD_AES_256_GCM 数据

    密文为 base64 编码，末尾 16 字节为认证标签。
    """
    key_bytes = key.encode("utf-8") if isinstance(key, str) else key
    nonce_bytes = nonce.encode("utf-8") if isinstance(nonce, str) else nonce
    if isinstance(associated_data, str):
        associated_data = associated_data.encode("utf-8")

    if len(key_bytes) != GCM_KEY_SIZE:
        raise DecryptionFailedError("APIv3 密钥长度必须为 32 字节")
    if len(nonce_bytes) != GCM_NONCE_SIZE:
        raise DecryptionFailedError("随机串长度必须为 12 字节")

    try:
        data = b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionFailedError("密文不是合法的 base64 字符串") from e
    if len(data) <= GCM_TAG_SIZE:
        raise DecryptionFailedError("密文长度不足")

    try:
        plaintext = AESGCM(key_bytes).decrypt(nonce_bytes, data, associated_data or None)
    except InvalidTag:
        # 不暴露任何解密细节
        raise TagMismatchError() from None

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptionFailedError("解密结果不是合法的 UTF-8 文本") from None


# =============================================================================
# 微信支付 v2 签名
# =============================================================================
def keyed_hash(message: str, secret: str, algorithm: str = KeyedHashAlgorithm.MD5) -> str:
    """
    计算微信支付 v2 签名（大写十六进制）

    MD5 模式下密钥已经以 ``&key=`` 后缀拼接在 message 中；HMAC-SHA256 模式再以密钥做 HMAC。
    """
    try:
        algorithm = KeyedHashAlgorithm(algorithm)
    except ValueError:
        raise UnsupportedAlgorithmError(f"不支持的签名类型: {algorithm}") from None

    data = message.encode("utf-8")
    if algorithm == KeyedHashAlgorithm.HMAC_SHA256:
        digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()
    else:
        digest = hashlib.md5(data).hexdigest()
    return digest.upper()


def build_canonical_string(
    params: Mapping[str, Any],
    exclude: Iterable[str] = ("sign",),
    secret: str | None = None,
) -> str:
    """
    构建待签名字符串

    按 key 升序排列，去掉空值和 exclude 中的字段，以 ``k=v&k=v`` 拼接；
    传入 secret 时在末尾追加 ``&key=<secret>``。
    """
    excluded = set(exclude)
    items = [
        f"{k}={v}"
        for k, v in sorted(params.items())
        if k not in excluded and v is not None and v != ""
    ]
    canonical = "&".join(items)
    if secret is not None:
        canonical = f"{canonical}&key={secret}"
    return canonical


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """常量时间比较，防止时序攻击"""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
