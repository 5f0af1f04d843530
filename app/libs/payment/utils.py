"""支付通用工具函数"""

import re
import secrets
import string
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .exceptions import InvalidRequestError

_NONCE_ALPHABET = string.ascii_letters + string.digits
_ORDER_NO_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{6,32}$")


def generate_nonce(length: int = 32) -> str:
    """生成随机字符串"""
    return "".join(secrets.choice(_NONCE_ALPHABET) for _ in range(length))


def generate_timestamp() -> str:
    """生成时间戳（秒）"""
    return str(int(time.time()))


def current_millis() -> int:
    return int(time.time() * 1000)


def generate_order_no(prefix: str = "") -> str:
    """生成商户订单号：前缀 + 毫秒时间戳 + 8 位随机十六进制"""
    return f"{prefix}{current_millis()}{secrets.token_hex(4).upper()}"


def validate_order_no(order_no: str) -> bool:
    """订单号应为 6-32 位，只能包含数字、字母、下划线、横线"""
    return bool(order_no and _ORDER_NO_PATTERN.match(order_no))


def yuan_to_fen(amount: str | int | float | Decimal) -> int:
    """元转分，四舍五入"""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidRequestError(f"金额格式错误: {amount}") from None
    if not value.is_finite():
        raise InvalidRequestError(f"金额格式错误: {amount}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fen_to_yuan(amount: int) -> str:
    """分转元，保留两位小数"""
    return f"{(Decimal(amount) / 100).quantize(Decimal('0.01'))}"
