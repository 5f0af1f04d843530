import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from configs import app_config
from exceptions import exception_handler
from libs.payment import PaymentManager
from middlewares.http_middleware import CustomMiddleware

logger = logging.getLogger(__name__)


def build_lifespan(manager: PaymentManager | None):
    """管理器随应用启动创建，关闭时释放网关连接"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        payment_manager = manager or PaymentManager(app_config.to_manager_config())
        app.state.payment_manager = payment_manager
        logger.info(f"已启用的支付提供商: {payment_manager.get_enabled_providers()}")
        try:
            yield
        finally:
            await payment_manager.aclose()
            logger.info("支付管理器已关闭")

    return lifespan


def initialize_extensions(app: FastAPI):
    from extensions import ext_logging

    for ext in (ext_logging,):
        start_time = time.perf_counter()
        ext.init_app(app)
        if app_config.DEBUG:
            elapsed_ms = round((time.perf_counter() - start_time) * 1000, 2)
            logger.info(f"Loaded {ext.__name__.rsplit('.', 1)[-1]} ({elapsed_ms} ms)")


def config_router(app: FastAPI):
    from routers import payment

    app.include_router(payment.router)


def create_app(payment_manager: PaymentManager | None = None) -> FastAPI:
    """
    创建应用

    Args:
        payment_manager: 指定的支付管理器；不传时按环境变量配置创建
    """
    app = FastAPI(
        title=app_config.PROJECT_NAME,
        lifespan=build_lifespan(payment_manager),
        version="1.0.0",
        openapi_url="/api/openapi.json",
    )
    initialize_extensions(app)

    cors_origins = [origin.strip() for origin in app_config.CORS_ORIGINS.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(CustomMiddleware)

    config_router(app)
    exception_handler.set_up(app)

    logger.info(f"FastAPI 应用创建完成: {app_config.PROJECT_NAME}")
    return app
