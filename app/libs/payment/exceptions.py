"""支付异常定义"""

from enum import StrEnum
from typing import Any


class PaymentErrorCode(StrEnum):
    """支付错误码"""

    CONFIG_ERROR = "CONFIG_ERROR"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_PARAMS = "INVALID_PARAMS"
    VERIFY_FAILED = "VERIFY_FAILED"
    DECRYPT_FAILED = "DECRYPT_FAILED"
    BAD_KEY = "BAD_KEY"
    BAD_SIGNATURE_FORMAT = "BAD_SIGNATURE_FORMAT"
    UNSUPPORTED_ALGORITHM = "UNSUPPORTED_ALGORITHM"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
    UNSUPPORTED_METHOD = "UNSUPPORTED_METHOD"
    NETWORK_ERROR = "NETWORK_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    TIMEOUT = "TIMEOUT"
    INDETERMINATE = "INDETERMINATE"
    MANAGER_DESTROYED = "MANAGER_DESTROYED"


class PaymentError(Exception):
    code: PaymentErrorCode = PaymentErrorCode.GATEWAY_ERROR
    message: str = "支付处理失败"

    def __init__(self, message: str | None = None, details: Any = None):
        self.message = message or self.__class__.message
        self.details = details
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!s}, message={self.message!r})"


# =============================================================================
# 配置 / 调用方错误
# =============================================================================
class PaymentConfigError(PaymentError):
    code = PaymentErrorCode.CONFIG_ERROR
    message = "支付配置错误"


class InvalidPayloadError(PaymentError):
    code = PaymentErrorCode.INVALID_PAYLOAD
    message = "回调数据格式错误"


class InvalidRequestError(PaymentError):
    code = PaymentErrorCode.INVALID_PARAMS
    message = "请求参数错误"


class UnknownProviderError(PaymentError):
    code = PaymentErrorCode.UNKNOWN_PROVIDER
    message = "未知的支付提供商"


class UnsupportedMethodError(PaymentError):
    code = PaymentErrorCode.UNSUPPORTED_METHOD
    message = "不支持的支付方式"


class ManagerDestroyedError(PaymentError):
    code = PaymentErrorCode.MANAGER_DESTROYED
    message = "PaymentManager 已销毁"


# =============================================================================
# 验签 / 解密
# =============================================================================
class VerificationFailedError(PaymentError):
    code = PaymentErrorCode.VERIFY_FAILED
    message = "签名验证失败"


class DecryptionFailedError(PaymentError):
    code = PaymentErrorCode.DECRYPT_FAILED
    message = "回调数据解密失败"


class TagMismatchError(DecryptionFailedError):
    message = "回调数据认证标签校验失败"


class CryptoError(PaymentError):
    """无法执行签名运算（密钥、签名格式或算法本身有问题）"""

    code = PaymentErrorCode.BAD_KEY
    message = "密钥处理失败"


class BadKeyError(CryptoError):
    code = PaymentErrorCode.BAD_KEY
    message = "密钥格式错误"


class BadSignatureFormatError(CryptoError):
    code = PaymentErrorCode.BAD_SIGNATURE_FORMAT
    message = "签名格式错误"


class UnsupportedAlgorithmError(CryptoError):
    code = PaymentErrorCode.UNSUPPORTED_ALGORITHM
    message = "不支持的签名算法"


# =============================================================================
# 网关调用
# =============================================================================
class NetworkError(PaymentError):
    code = PaymentErrorCode.NETWORK_ERROR
    message = "支付网关请求失败"


class GatewayBusinessError(PaymentError):
    code = PaymentErrorCode.GATEWAY_ERROR
    message = "支付网关返回业务错误"

    def __init__(
        self,
        message: str | None = None,
        gateway_code: str | None = None,
        details: Any = None,
    ):
        super().__init__(message, details)
        self.gateway_code = gateway_code


class PaymentTimeoutError(PaymentError):
    code = PaymentErrorCode.TIMEOUT
    message = "支付超时，订单已撤销"


class IndeterminateStateError(PaymentError):
    code = PaymentErrorCode.INDETERMINATE
    message = "系统错误，支付状态不明确"


# create / query / refund 中以结果形式返回而非抛出的业务错误；InvalidPayloadError 指网关响应无法解析
EXPECTED_BUSINESS_ERRORS: tuple[type[PaymentError], ...] = (
    NetworkError,
    InvalidPayloadError,
    GatewayBusinessError,
    VerificationFailedError,
    PaymentTimeoutError,
    IndeterminateStateError,
)
