from pydantic import Field
from pydantic_settings import BaseSettings


class CommonConfig(BaseSettings):
    DEBUG: bool = Field(
        description="Enable debug mode, exposes exception details in error responses",
        default=False,
    )

    # CORS Configuration
    CORS_ORIGINS: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins",
    )
