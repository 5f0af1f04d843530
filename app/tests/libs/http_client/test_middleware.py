import logging

import pytest

from libs.http_client.middleware import logging_middleware
from libs.http_client.models import Request, Response


def _next_returning(status_code: int):
    async def next_fn(r: Request) -> Response:
        return Response(status_code=status_code, headers={}, body=b"", latency_ms=3, request=r)

    return next_fn


class TestLoggingMiddleware:
    @pytest.mark.asyncio
    async def test_logs_request_and_response(self, caplog):
        req = Request(method="GET", url="https://api.mch.weixin.qq.com/v3/pay/transactions/id/42?mchid=1900000001")
        logger = logging.getLogger("tests.http_client")

        with caplog.at_level(logging.DEBUG, logger="tests.http_client"):
            response = await logging_middleware(logger)(req, _next_returning(200))

        assert response.status_code == 200
        assert "-> GET /v3/pay/transactions/id/42?mchid=1900000001" in caplog.text
        assert "<- GET /v3/pay/transactions/id/42?mchid=1900000001 200 (3ms)" in caplog.text
        assert [r.levelno for r in caplog.records] == [logging.DEBUG, logging.INFO]

    @pytest.mark.asyncio
    async def test_error_status_logged_as_warning(self, caplog):
        req = Request(method="POST", url="https://api.mch.weixin.qq.com/pay/micropay")
        logger = logging.getLogger("tests.http_client")

        with caplog.at_level(logging.INFO, logger="tests.http_client"):
            await logging_middleware(logger)(req, _next_returning(502))

        assert caplog.records[-1].levelno == logging.WARNING
        assert "502" in caplog.records[-1].getMessage()
