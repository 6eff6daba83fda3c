"""
Dynamic client registration (RFC 7591) and client identity resolution.

动态客户端注册，以及客户端身份的确定：
优先使用静态配置的 client_id；没有时在授权服务器支持的情况下注册一个公开客户端。
"""

import logging

import httpx
from pydantic import AnyUrl, ValidationError

from mcp_oauth.shared._httpx_utils import oauth_error_fields
from mcp_oauth.shared.auth import ClientCredentials, OAuthClientInformationFull, OAuthClientMetadata, OAuthMetadata
from mcp_oauth.shared.exceptions import NoClientIdentity, RegistrationFailed

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "mcp-oauth-client"


async def register(
    registration_endpoint: str,
    redirect_uris: list[str],
    http_client: httpx.AsyncClient,
    client_name: str = DEFAULT_CLIENT_NAME,
    scope: str | None = None,
    issuer: str | None = None,
) -> ClientCredentials:
    """向授权服务器注册一个公开客户端。

    参数：
        registration_endpoint: 授权服务器元数据中的 registration_endpoint。
        redirect_uris: 客户端将使用的重定向地址。
        http_client: 发送注册请求的 httpx 客户端。
        client_name: 注册时声明的客户端名称。
        scope: 可选的 scope。
        issuer: 授权服务器的 issuer，会记录在返回的凭证上。

    返回：
        ClientCredentials（包含 client_id，以及服务器下发的 client_secret）。
    """
    # 构建注册数据：公开客户端，不使用令牌端点认证
    client_metadata = OAuthClientMetadata(
        redirect_uris=[AnyUrl(uri) for uri in redirect_uris],
        token_endpoint_auth_method="none",
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        client_name=client_name,
        scope=scope,
    )
    registration_data = client_metadata.model_dump(by_alias=True, mode="json", exclude_none=True)

    try:
        response = await http_client.post(
            registration_endpoint,
            json=registration_data,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
    except httpx.HTTPError as e:
        raise RegistrationFailed(
            f"Client registration request to {registration_endpoint} failed: {e}",
            endpoint=registration_endpoint,
        ) from e

    if response.status_code not in (200, 201):
        error, error_description = oauth_error_fields(response)
        raise RegistrationFailed(
            f"Client registration failed: {response.status_code} {response.text}",
            endpoint=registration_endpoint,
            status_code=response.status_code,
            error=error,
            error_description=error_description,
        )

    try:
        client_info = OAuthClientInformationFull.model_validate_json(response.content)
    except ValidationError as e:
        raise RegistrationFailed(
            f"Invalid registration response: {e}",
            endpoint=registration_endpoint,
            status_code=response.status_code,
        ) from e

    logger.info(f"Registered public client {client_info.client_id} at {registration_endpoint}")
    return ClientCredentials(
        client_id=client_info.client_id,
        client_secret=client_info.client_secret,
        issuer=issuer,
    )


async def obtain_client_credentials(
    auth_server_metadata: OAuthMetadata,
    redirect_uris: list[str],
    http_client: httpx.AsyncClient,
    static_credentials: ClientCredentials | None = None,
    client_name: str = DEFAULT_CLIENT_NAME,
    scope: str | None = None,
) -> ClientCredentials:
    """确定访问该授权服务器时使用的客户端身份。

    1. 有静态配置的 client_id 时直接使用；
    2. 否则如果授权服务器提供了 registration_endpoint，则动态注册；
    3. 都不可行（或注册失败）时抛出 NoClientIdentity。
    """
    if static_credentials is not None:
        return static_credentials

    if auth_server_metadata.registration_endpoint is None:
        raise NoClientIdentity(
            f"No client_id configured and {auth_server_metadata.issuer_url} does not support dynamic registration"
        )

    try:
        return await register(
            str(auth_server_metadata.registration_endpoint),
            redirect_uris,
            http_client,
            client_name=client_name,
            scope=scope,
            issuer=auth_server_metadata.issuer_url,
        )
    except RegistrationFailed as e:
        logger.warning(f"Dynamic client registration failed: {e}")
        raise NoClientIdentity(
            f"No client_id configured and dynamic registration failed: {e}",
            endpoint=e.endpoint,
            status_code=e.status_code,
            error=e.error,
            error_description=e.error_description,
        ) from e
