from pydantic import Field, PositiveInt
from pydantic_settings import BaseSettings


class LoggingConfig(BaseSettings):
    """
    服务日志配置；libs.payment 自身的级别由 PAYMENT_LOG_LEVEL 控制
    """

    LOG_LEVEL: str = Field(default="INFO", description="根日志级别")

    LOG_FILE: str | None = Field(default=None, description="日志文件路径，不设置时只输出到控制台")

    LOG_FILE_MAX_SIZE: PositiveInt = Field(default=20, description="单个日志文件上限（MB）")

    LOG_FILE_BACKUP_COUNT: PositiveInt = Field(default=5, description="轮转保留的日志文件数")

    LOG_FORMAT: str = Field(
        default="%(asctime)s %(levelname)s [%(name)s] %(trace_id)s - %(message)s",
        description="日志格式，trace_id 为当前回调请求的追踪 ID",
    )

    LOG_TZ: str | None = Field(default="Asia/Shanghai", description="日志时间戳时区，与网关时间一致")

    LOG_QUIET_LOGGERS: str = Field(
        default="httpx,httpcore,alipay",
        description="逗号分隔，只输出 WARNING 以上的第三方 logger",
    )

    @property
    def quiet_loggers(self) -> list[str]:
        return [name.strip() for name in self.LOG_QUIET_LOGGERS.split(",") if name.strip()]


class FeatureConfig(LoggingConfig):
    pass
