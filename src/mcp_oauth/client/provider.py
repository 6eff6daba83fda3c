"""
OAuth2 authentication for HTTPX.

Plugs discovery, client registration, the PKCE flow and token lifecycle management into an
httpx.AsyncClient, so every request to the resource server carries a valid bearer token.

用于 HTTPX 的 OAuth2 认证实现：发现、注册、PKCE 授权和令牌生命周期管理都在这里串起来。
"""

import logging
from collections.abc import AsyncGenerator

import anyio
import httpx

from mcp_oauth.client.auth import AuthorizationFlowController
from mcp_oauth.client.callback import RedirectHandler, SurfaceFactory, open_in_system_browser
from mcp_oauth.client.config import OAuthClientConfig
from mcp_oauth.client.discovery import DiscoveryResult, discover
from mcp_oauth.client.lifecycle import TokenLifecycleManager
from mcp_oauth.client.registration import obtain_client_credentials
from mcp_oauth.client.tokens import InMemoryTokenStorage, TokenStorage
from mcp_oauth.shared._httpx_utils import create_mcp_http_client
from mcp_oauth.shared.auth import ClientCredentials, TokenSet
from mcp_oauth.shared.exceptions import AuthorizationNotRequired, OAuthFlowError

logger = logging.getLogger(__name__)


class OAuthClientProvider(httpx.Auth):
    """
    基于 PKCE 流程的 OAuth2 认证处理器，可直接传给 httpx.AsyncClient(auth=...)。
    """

    requires_response_body = True

    def __init__(
        self,
        server_url: str,
        config: OAuthClientConfig | None = None,
        storage: TokenStorage | None = None,
        redirect_handler: RedirectHandler = open_in_system_browser,
        surface_factory: SurfaceFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """初始化 OAuth2 认证处理器。

        参数：
            server_url: 资源服务器（MCP 服务端）的 URL。
            config: 客户端配置，默认使用 OAuthClientConfig()。
            storage: 令牌存储，默认使用内存存储。
            redirect_handler: 打开授权 URL 的处理器。
            surface_factory: 非回环重定向 URI 使用的内嵌浏览器界面工厂。
            http_client: 发送发现、注册和令牌请求的客户端；必须是不带本认证的独立客户端。
        """
        self.server_url = server_url
        self.config = config or OAuthClientConfig()
        self.storage = storage or InMemoryTokenStorage()
        self.http_client = http_client or create_mcp_http_client(
            timeout=httpx.Timeout(self.config.http_timeout)
        )
        self.controller = AuthorizationFlowController(
            self.http_client,
            redirect_handler=redirect_handler,
            surface_factory=surface_factory,
            timeout=self.config.authorization_timeout,
        )
        self.lifecycle = TokenLifecycleManager(
            self.controller,
            self.http_client,
            redirect_uri=self.config.redirect_uri,
            scopes=self.config.scopes,
            storage=self.storage,
            refresh_buffer=self.config.refresh_buffer,
        )

        self.discovery: DiscoveryResult | None = None
        self.client_credentials: ClientCredentials | None = None
        self.current_tokens: TokenSet | None = None
        # 资源服务器不要求认证时为 False
        self.authorization_required = True
        self._initialized = False
        self._lock = anyio.Lock()

    async def _initialize(self) -> None:
        """从存储中加载已有的令牌和客户端信息。"""
        self.current_tokens = await self.storage.get_tokens()
        self.client_credentials = await self.storage.get_client_info()
        self._initialized = True

    async def _prepare(self) -> None:
        """发现授权服务器并确定客户端身份（每个实例只做一次）。"""
        if not self.authorization_required:
            return
        if self.discovery is None:
            try:
                self.discovery = await discover(self.server_url, self.http_client, client_name=self.config.client_name)
            except AuthorizationNotRequired:
                logger.info(f"{self.server_url} does not require authorization")
                self.authorization_required = False
                return

        metadata = self.discovery.auth_server_metadata
        if self.client_credentials is None or not self.client_credentials.valid_for(metadata):
            self.client_credentials = await obtain_client_credentials(
                metadata,
                [self.config.redirect_uri],
                self.http_client,
                static_credentials=self.config.static_credentials(),
                client_name=self.config.client_name,
                scope=" ".join(self.config.scopes) or None,
            )
            await self.storage.set_client_info(self.client_credentials)

    async def _valid_tokens(self, unauthorized: bool = False) -> TokenSet:
        discovery, client_credentials = self.discovery, self.client_credentials
        if discovery is None or client_credentials is None:
            raise OAuthFlowError(f"Authorization for {self.server_url} has not been prepared")
        args = (self.current_tokens, discovery.auth_server_metadata, client_credentials, discovery.resource)
        if unauthorized:
            self.current_tokens = await self.lifecycle.handle_unauthorized(*args)
        else:
            self.current_tokens = await self.lifecycle.ensure_valid(*args)
        return self.current_tokens

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        """HTTPX 的异步认证流程集成入口。"""
        async with self._lock:
            if not self._initialized:
                await self._initialize()

            try:
                await self._prepare()
                if self.authorization_required:
                    tokens = await self._valid_tokens()
                    request.headers["Authorization"] = tokens.authorization_header()
            except Exception as e:
                logger.error(f"OAuth flow error: {e}")
                raise

            response = yield request

            # 收到 401 时刷新或重新授权，然后重试一次
            if response.status_code == 401 and self.authorization_required:
                tokens = await self._valid_tokens(unauthorized=True)
                request.headers["Authorization"] = tokens.authorization_header()
                yield request
