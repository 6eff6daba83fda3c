"""Utilities for creating standardized httpx AsyncClient instances."""

from typing import Any, Protocol

import httpx

__all__ = ["create_mcp_http_client", "McpHttpClientFactory", "oauth_error_fields"]

# 默认的 HTTP 超时时间（秒）
DEFAULT_HTTP_TIMEOUT = 30.0


class McpHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient: ...


def create_mcp_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """创建带有统一默认值的 httpx AsyncClient。

    默认开启重定向跟随（元数据端点经常会做重定向），超时时间为 30 秒。

    参数：
        headers: 所有请求都会带上的请求头。
        timeout: 超时配置，未指定时使用 30 秒。
        auth: 可选的认证处理器。
        transport: 可选的底层传输（测试中用于注入 httpx.MockTransport）。
    """
    kwargs: dict[str, Any] = {"follow_redirects": True}

    if timeout is None:
        kwargs["timeout"] = httpx.Timeout(DEFAULT_HTTP_TIMEOUT)
    else:
        kwargs["timeout"] = timeout

    if headers is not None:
        kwargs["headers"] = headers

    if auth is not None:
        kwargs["auth"] = auth

    if transport is not None:
        kwargs["transport"] = transport

    return httpx.AsyncClient(**kwargs)


def oauth_error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    """尽量从 OAuth 错误响应体中取出 error 和 error_description。"""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")
