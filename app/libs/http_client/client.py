import json
import ssl
import time
from functools import partial
from typing import Any

import httpx

from .models import Request, Response
from .types import Middleware

# 支付网关调用量小、长连接复用即可
GATEWAY_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=60.0)


def encode_body(body: bytes | str | dict | None) -> bytes:
    """请求体统一编码为 UTF-8 字节；签名与发送使用同一份字节"""
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body, ensure_ascii=False).encode("utf-8")


class HttpClient:
    """
    网关 HTTP 客户端

    请求依次经过 middlewares（签名、日志等）后由 httpx 发出，
    底层连接池在首次请求时创建，close() 后可再次使用。
    """

    def __init__(
        self,
        middlewares: list[Middleware] | None = None,
        base_url: str = "",
        default_timeout: float = 30.0,
        default_headers: dict[str, str] | None = None,
        verify: ssl.SSLContext | bool = True,
        limits: httpx.Limits | None = None,
    ):
        self._middlewares = tuple(middlewares or ())
        self._base_url = base_url.rstrip("/")
        self._default_timeout = default_timeout
        self._default_headers = dict(default_headers or {})
        self._verify = verify
        self._limits = limits or GATEWAY_LIMITS
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                limits=self._limits,
                timeout=self._default_timeout,
                verify=self._verify,
            )
        return self._client

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def __aenter__(self) -> "HttpClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, *_args: Any) -> None:
        await self.close()

    def _resolve_url(self, url: str) -> str:
        if not self._base_url or url.startswith(("http://", "https://")):
            return url
        return f"{self._base_url}/{url.lstrip('/')}"

    async def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: bytes | str | dict | None = None,
        timeout: float | None = None,
    ) -> Response:
        request = Request(
            method=method.upper(),
            url=self._resolve_url(url),
            headers={**self._default_headers, **(headers or {})},
            body=encode_body(body),
            timeout=timeout or self._default_timeout,
        )
        return await self._dispatch(request, 0)

    async def _dispatch(self, request: Request, index: int) -> Response:
        if index == len(self._middlewares):
            return await self._send(request)
        return await self._middlewares[index](request, partial(self._dispatch, index=index + 1))

    async def _send(self, request: Request) -> Response:
        client = await self._ensure_client()
        started = time.perf_counter()
        http_response = await client.request(
            method=request.method,
            url=request.url,
            headers=request.headers,
            content=request.body,
            timeout=request.timeout,
        )
        return Response(
            status_code=http_response.status_code,
            headers=dict(http_response.headers),
            body=http_response.content,
            latency_ms=int((time.perf_counter() - started) * 1000),
            request=request,
        )

    async def get(self, url: str, **kwargs: Any) -> Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Response:
        return await self.request("POST", url, **kwargs)
