"""
Token endpoint requests: authorization code exchange and refresh.

令牌端点相关的请求：授权码换取令牌、刷新令牌，以及令牌存储协议。
所有请求都带上 resource 参数（RFC 8707），把令牌绑定到具体的资源服务器。
"""

import logging
import time
from typing import Protocol

import httpx
from pydantic import ValidationError

from mcp_oauth.shared._httpx_utils import oauth_error_fields
from mcp_oauth.shared.auth import ClientCredentials, OAuthMetadata, OAuthToken, TokenSet
from mcp_oauth.shared.exceptions import OAuthTokenError, TokenExchangeFailed, TokenRefreshFailed

logger = logging.getLogger(__name__)

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}


# 定义一个 TokenStorage 协议类，用于描述令牌存储的接口规范
class TokenStorage(Protocol):
    """令牌存储实现的协议（接口）类。持久化由外部的键值存储负责。"""

    async def get_tokens(self) -> TokenSet | None:
        """获取已存储的令牌。"""
        ...

    async def set_tokens(self, tokens: TokenSet) -> None:
        """存储令牌。"""
        ...

    async def get_client_info(self) -> ClientCredentials | None:
        """获取已存储的客户端信息。"""
        ...

    async def set_client_info(self, client_info: ClientCredentials) -> None:
        """存储客户端信息。"""
        ...


class InMemoryTokenStorage:
    """简单的内存中令牌存储实现类。"""

    def __init__(self):
        self._tokens: TokenSet | None = None
        self._client_info: ClientCredentials | None = None

    async def get_tokens(self) -> TokenSet | None:
        return self._tokens

    async def set_tokens(self, tokens: TokenSet) -> None:
        self._tokens = tokens

    async def get_client_info(self) -> ClientCredentials | None:
        return self._client_info

    async def set_client_info(self, client_info: ClientCredentials) -> None:
        self._client_info = client_info


async def _post_token_request(
    http_client: httpx.AsyncClient,
    token_endpoint: str,
    data: dict[str, str],
    error_cls: type[OAuthTokenError],
    action: str,
) -> OAuthToken:
    """向令牌端点发送表单请求，并解析令牌响应。"""
    try:
        response = await http_client.post(token_endpoint, data=data, headers=FORM_HEADERS)
    except httpx.HTTPError as e:
        raise error_cls(f"Token {action} request to {token_endpoint} failed: {e}", endpoint=token_endpoint) from e

    if not response.is_success:
        error, error_description = oauth_error_fields(response)
        raise error_cls(
            f"Token {action} failed: {response.status_code} {response.text}",
            endpoint=token_endpoint,
            status_code=response.status_code,
            error=error,
            error_description=error_description,
        )

    try:
        return OAuthToken.model_validate_json(response.content)
    except ValidationError as e:
        raise error_cls(
            f"Invalid token {action} response: {e}",
            endpoint=token_endpoint,
            status_code=response.status_code,
        ) from e


def _client_auth_fields(client_credentials: ClientCredentials) -> dict[str, str]:
    fields = {"client_id": client_credentials.client_id}
    # 只有机密客户端才发送 client_secret
    if client_credentials.client_secret:
        fields["client_secret"] = client_credentials.client_secret
    return fields


async def exchange_authorization_code(
    http_client: httpx.AsyncClient,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
    code: str,
    code_verifier: str,
    redirect_uri: str,
    resource: str,
    requested_scopes: list[str] | None = None,
) -> TokenSet:
    """使用授权码和 PKCE code_verifier 换取令牌。

    返回：
        新的 TokenSet；失败时抛出 TokenExchangeFailed，携带端点返回的错误信息。
    """
    token_endpoint = str(auth_server_metadata.token_endpoint)

    # 构造表单数据
    token_data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
        "resource": resource,
        **_client_auth_fields(client_credentials),
    }

    issued_at = time.time()
    token = await _post_token_request(http_client, token_endpoint, token_data, TokenExchangeFailed, "exchange")

    # 校验服务端返回的 scope 是否多给了权限
    if token.scope and requested_scopes:
        unauthorized_scopes = set(token.scope.split()) - set(requested_scopes)
        if unauthorized_scopes:
            raise TokenExchangeFailed(
                f"Server granted unauthorized scopes: {sorted(unauthorized_scopes)}",
                endpoint=token_endpoint,
            )

    logger.debug(f"Exchanged authorization code at {token_endpoint} (expires_in={token.expires_in})")
    return TokenSet.from_token_response(token, issued_at=issued_at)


async def refresh_access_token(
    http_client: httpx.AsyncClient,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
    token_set: TokenSet,
    resource: str,
) -> TokenSet:
    """使用 refresh token 刷新访问令牌。

    服务端没有返回新的 refresh token 时保留原来的。
    """
    if not token_set.refresh_token:
        raise TokenRefreshFailed("No refresh token available")

    token_endpoint = str(auth_server_metadata.token_endpoint)
    refresh_data = {
        "grant_type": "refresh_token",
        "refresh_token": token_set.refresh_token,
        "resource": resource,
        **_client_auth_fields(client_credentials),
    }

    issued_at = time.time()
    token = await _post_token_request(http_client, token_endpoint, refresh_data, TokenRefreshFailed, "refresh")
    return TokenSet.from_token_response(
        token,
        issued_at=issued_at,
        previous_refresh_token=token_set.refresh_token,
    )
