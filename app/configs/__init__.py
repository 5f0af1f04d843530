from pydantic import Field
from pydantic_settings import SettingsConfigDict

from configs.common import CommonConfig
from configs.feature import FeatureConfig
from configs.payment import PaymentConfig


class AppConfig(CommonConfig, FeatureConfig, PaymentConfig):
    PROJECT_NAME: str = Field(default="paystream")

    model_config = SettingsConfigDict(
        # read from dotenv format config file
        env_file=".env",
        env_file_encoding="utf-8",
        # ignore extra attributes
        extra="ignore",
    )


app_config: AppConfig = AppConfig()

__all__ = ["app_config", "AppConfig"]
