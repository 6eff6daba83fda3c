"""
Token lifecycle management.

Keeps a resource's token set usable: refreshes shortly before expiry and falls back to a
full re-authorization when refresh is impossible or rejected.
"""

import logging
import time
from collections.abc import Callable

import httpx

from mcp_oauth.client.auth import AuthorizationFlowController
from mcp_oauth.client.tokens import TokenStorage, refresh_access_token
from mcp_oauth.shared.auth import ClientCredentials, OAuthMetadata, TokenSet
from mcp_oauth.shared.exceptions import TokenRefreshFailed

logger = logging.getLogger(__name__)

# 在过期前多少秒开始刷新
DEFAULT_REFRESH_BUFFER = 300.0


class TokenLifecycleManager:
    """令牌生命周期管理器：按需刷新，刷新失败时重新授权。"""

    def __init__(
        self,
        controller: AuthorizationFlowController,
        http_client: httpx.AsyncClient,
        redirect_uri: str,
        scopes: list[str] | None = None,
        storage: TokenStorage | None = None,
        refresh_buffer: float = DEFAULT_REFRESH_BUFFER,
        clock: Callable[[], float] = time.time,
    ):
        self.controller = controller
        self.http_client = http_client
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes or [])
        self.storage = storage
        self.refresh_buffer = refresh_buffer
        self.clock = clock

    def needs_refresh(self, token_set: TokenSet) -> bool:
        return token_set.expires_within(self.refresh_buffer, now=self.clock())

    async def ensure_valid(
        self,
        token_set: TokenSet | None,
        auth_server_metadata: OAuthMetadata,
        client_credentials: ClientCredentials,
        resource: str,
    ) -> TokenSet:
        """返回一个可用的令牌集合。

        没有令牌时执行授权；令牌将在 refresh_buffer 秒内过期时刷新或重新授权；否则原样返回。
        """
        if token_set is None:
            logger.info(f"No tokens held for {resource}, starting authorization")
            return await self._authorize(auth_server_metadata, client_credentials, resource)

        if not self.needs_refresh(token_set):
            return token_set

        logger.info(f"Access token for {resource} expires soon")
        return await self._refresh_or_reauthorize(token_set, auth_server_metadata, client_credentials, resource)

    async def handle_unauthorized(
        self,
        token_set: TokenSet | None,
        auth_server_metadata: OAuthMetadata,
        client_credentials: ClientCredentials,
        resource: str,
    ) -> TokenSet:
        """资源服务器返回 401 时调用：不管 expires_at，先刷新，失败再重新授权。"""
        if token_set is None:
            return await self._authorize(auth_server_metadata, client_credentials, resource)
        logger.info(f"Resource server {resource} rejected the access token")
        return await self._refresh_or_reauthorize(token_set, auth_server_metadata, client_credentials, resource)

    async def _refresh_or_reauthorize(
        self,
        token_set: TokenSet,
        auth_server_metadata: OAuthMetadata,
        client_credentials: ClientCredentials,
        resource: str,
    ) -> TokenSet:
        if token_set.refresh_token:
            try:
                refreshed = await refresh_access_token(
                    self.http_client,
                    auth_server_metadata,
                    client_credentials,
                    token_set,
                    resource,
                )
            except TokenRefreshFailed as e:
                # 刷新失败时回退到完整的授权流程
                logger.warning(f"Token refresh for {resource} failed, re-authorizing: {e}")
            else:
                logger.debug(f"Refreshed access token for {resource}")
                await self._store(refreshed)
                return refreshed
        else:
            logger.info(f"No refresh token for {resource}, re-authorizing")

        return await self._authorize(auth_server_metadata, client_credentials, resource)

    async def _authorize(
        self,
        auth_server_metadata: OAuthMetadata,
        client_credentials: ClientCredentials,
        resource: str,
    ) -> TokenSet:
        token_set = await self.controller.authorize(
            auth_server_metadata,
            client_credentials,
            resource,
            self.scopes,
            self.redirect_uri,
        )
        await self._store(token_set)
        return token_set

    async def _store(self, token_set: TokenSet) -> None:
        if self.storage is not None:
            await self.storage.set_tokens(token_set)
