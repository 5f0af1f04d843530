"""支付配置"""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field, PositiveFloat
from pydantic_settings import BaseSettings

if TYPE_CHECKING:
    from libs.payment import PaymentManagerConfig


def _read_key_file(path: str, name: str) -> str:
    from libs.payment.exceptions import PaymentConfigError

    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as e:
        raise PaymentConfigError(f"读取{name}文件失败: {path}") from e


class PaymentConfig(BaseSettings):
    """支付相关配置"""

    # 全局配置
    PAYMENT_TIMEOUT: PositiveFloat = Field(default=30.0, description="支付网关请求超时（秒）")
    PAYMENT_RETRIES: int = Field(default=0, ge=0, description="查询接口网络错误重试次数")
    PAYMENT_LOG_LEVEL: str = Field(default="INFO", description="libs.payment 日志级别")
    PAYMENT_ENABLE_LOG: bool = Field(default=True, description="是否输出支付日志")

    # 微信支付配置
    WECHAT_PAY_ENABLED: bool | None = Field(default=None, description="是否启用微信支付，未设置时按配置完整性判断")
    WECHAT_PAY_SANDBOX: bool = Field(default=False, description="是否为测试环境")
    WECHAT_PAY_APP_ID: str = Field(default="", description="微信支付 APP ID")
    WECHAT_PAY_MCH_ID: str = Field(default="", description="微信支付商户号")
    WECHAT_PAY_API_V3_KEY: str = Field(default="", description="微信支付 APIv3 密钥")
    WECHAT_PAY_SERIAL_NO: str = Field(default="", description="微信支付商户证书序列号")
    WECHAT_PAY_PRIVATE_KEY_PATH: str = Field(default="", description="微信支付商户私钥文件路径")
    WECHAT_PAY_PLATFORM_CERT_PATH: str = Field(default="", description="微信支付平台证书（或平台公钥）文件路径")
    WECHAT_PAY_PLATFORM_SERIAL_NO: str = Field(default="", description="微信支付平台证书序列号")
    WECHAT_PAY_API_KEY: str = Field(default="", description="微信支付 API 密钥（V2，付款码支付使用）")
    WECHAT_PAY_V2_SIGN_TYPE: Literal["MD5", "HMAC-SHA256"] = Field(default="MD5", description="V2 签名类型")
    WECHAT_PAY_API_CLIENT_CERT_PATH: str = Field(default="", description="商户 API 证书路径（撤销订单使用）")
    WECHAT_PAY_API_CLIENT_KEY_PATH: str = Field(default="", description="商户 API 证书私钥路径（撤销订单使用）")
    WECHAT_PAY_NOTIFY_URL: str = Field(default="", description="微信支付回调通知地址")
    WECHAT_PAY_NOTIFY_FAILURE_STATUS: int = Field(default=200, description="微信支付回调处理失败时的 HTTP 状态码")

    # 支付宝配置
    ALIPAY_ENABLED: bool | None = Field(default=None, description="是否启用支付宝，未设置时按配置完整性判断")
    ALIPAY_APP_ID: str = Field(default="", description="支付宝应用 APP ID")
    ALIPAY_PRIVATE_KEY_PATH: str = Field(default="", description="支付宝应用私钥文件路径")
    ALIPAY_PUBLIC_KEY_PATH: str = Field(default="", description="支付宝公钥文件路径")
    ALIPAY_SIGN_TYPE: Literal["RSA2", "RSA"] = Field(default="RSA2", description="支付宝签名类型")
    ALIPAY_NOTIFY_URL: str = Field(default="", description="支付宝回调通知地址")
    ALIPAY_RETURN_URL: str = Field(default="", description="支付宝同步跳转地址")
    ALIPAY_SANDBOX: bool = Field(default=False, description="是否使用支付宝沙箱环境")

    @property
    def wechat_pay_enabled(self) -> bool:
        """判断微信支付是否启用"""
        if self.WECHAT_PAY_ENABLED is not None:
            return self.WECHAT_PAY_ENABLED
        return bool(
            self.WECHAT_PAY_APP_ID
            and self.WECHAT_PAY_MCH_ID
            and self.WECHAT_PAY_API_V3_KEY
            and self.WECHAT_PAY_PRIVATE_KEY_PATH
        )

    @property
    def alipay_enabled(self) -> bool:
        """判断支付宝支付是否启用"""
        if self.ALIPAY_ENABLED is not None:
            return self.ALIPAY_ENABLED
        return bool(
            self.ALIPAY_APP_ID and self.ALIPAY_PRIVATE_KEY_PATH and self.ALIPAY_PUBLIC_KEY_PATH
        )

    def wechat_provider_config(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "sandbox": self.WECHAT_PAY_SANDBOX,
            "notify_url": self.WECHAT_PAY_NOTIFY_URL or None,
            "app_id": self.WECHAT_PAY_APP_ID,
            "mch_id": self.WECHAT_PAY_MCH_ID,
            "api_v3_key": self.WECHAT_PAY_API_V3_KEY,
            "serial_no": self.WECHAT_PAY_SERIAL_NO,
            "private_key": _read_key_file(self.WECHAT_PAY_PRIVATE_KEY_PATH, "微信支付商户私钥"),
            "platform_certificate": _read_key_file(self.WECHAT_PAY_PLATFORM_CERT_PATH, "微信支付平台证书") or None,
            "platform_serial_no": self.WECHAT_PAY_PLATFORM_SERIAL_NO or None,
            "api_key": self.WECHAT_PAY_API_KEY or None,
            "v2_sign_type": self.WECHAT_PAY_V2_SIGN_TYPE,
            "api_client_cert_path": self.WECHAT_PAY_API_CLIENT_CERT_PATH or None,
            "api_client_key_path": self.WECHAT_PAY_API_CLIENT_KEY_PATH or None,
            "notify_failure_status": self.WECHAT_PAY_NOTIFY_FAILURE_STATUS,
        }

    def alipay_provider_config(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "sandbox": self.ALIPAY_SANDBOX,
            "notify_url": self.ALIPAY_NOTIFY_URL or None,
            "app_id": self.ALIPAY_APP_ID,
            "private_key": _read_key_file(self.ALIPAY_PRIVATE_KEY_PATH, "支付宝应用私钥"),
            "alipay_public_key": _read_key_file(self.ALIPAY_PUBLIC_KEY_PATH, "支付宝公钥"),
            "sign_type": self.ALIPAY_SIGN_TYPE,
            "return_url": self.ALIPAY_RETURN_URL or None,
        }

    def to_manager_config(self) -> "PaymentManagerConfig":
        """把环境变量配置转换为 PaymentManager 配置，只包含已启用的提供商"""
        from libs.payment import GlobalSettings, PaymentManagerConfig

        providers: dict[str, dict[str, Any]] = {}
        if self.wechat_pay_enabled:
            providers["wechat"] = self.wechat_provider_config()
        if self.alipay_enabled:
            providers["alipay"] = self.alipay_provider_config()

        return PaymentManagerConfig(
            providers=providers,
            global_settings=GlobalSettings(
                timeout=self.PAYMENT_TIMEOUT,
                retries=self.PAYMENT_RETRIES,
                log_level=self.PAYMENT_LOG_LEVEL,
                enable_log=self.PAYMENT_ENABLE_LOG,
            ),
        )
