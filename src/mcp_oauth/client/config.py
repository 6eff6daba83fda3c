"""Client configuration, loaded from keyword arguments or from the environment."""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from mcp_oauth.client.auth import DEFAULT_AUTHORIZATION_TIMEOUT
from mcp_oauth.client.lifecycle import DEFAULT_REFRESH_BUFFER
from mcp_oauth.client.registration import DEFAULT_CLIENT_NAME
from mcp_oauth.shared._httpx_utils import DEFAULT_HTTP_TIMEOUT
from mcp_oauth.shared.auth import ClientCredentials

ENV_PREFIX = "MCP_OAUTH_"
DEFAULT_REDIRECT_URI = "http://localhost:3030/callback"


def _env_float(name: str, default: float) -> float:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None


@dataclass
class OAuthClientConfig:
    """OAuth 客户端配置。"""

    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: list[str] = field(default_factory=list)
    # 静态配置的客户端身份；为空时使用动态注册
    client_id: str | None = None
    client_secret: str | None = None
    client_name: str = DEFAULT_CLIENT_NAME
    authorization_timeout: float = DEFAULT_AUTHORIZATION_TIMEOUT
    refresh_buffer: float = DEFAULT_REFRESH_BUFFER
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "OAuthClientConfig":
        """从环境变量（以及 .env 文件）加载配置。

        读取的变量：MCP_OAUTH_REDIRECT_URI、MCP_OAUTH_SCOPES（空格分隔）、MCP_OAUTH_CLIENT_ID、
        MCP_OAUTH_CLIENT_SECRET、MCP_OAUTH_CLIENT_NAME、MCP_OAUTH_AUTHORIZATION_TIMEOUT、
        MCP_OAUTH_REFRESH_BUFFER、MCP_OAUTH_HTTP_TIMEOUT。
        """
        load_dotenv(env_file)

        return cls(
            redirect_uri=os.getenv(ENV_PREFIX + "REDIRECT_URI") or DEFAULT_REDIRECT_URI,
            scopes=(os.getenv(ENV_PREFIX + "SCOPES") or "").split(),
            client_id=os.getenv(ENV_PREFIX + "CLIENT_ID") or None,
            client_secret=os.getenv(ENV_PREFIX + "CLIENT_SECRET") or None,
            client_name=os.getenv(ENV_PREFIX + "CLIENT_NAME") or DEFAULT_CLIENT_NAME,
            authorization_timeout=_env_float("AUTHORIZATION_TIMEOUT", DEFAULT_AUTHORIZATION_TIMEOUT),
            refresh_buffer=_env_float("REFRESH_BUFFER", DEFAULT_REFRESH_BUFFER),
            http_timeout=_env_float("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        )

    def static_credentials(self) -> ClientCredentials | None:
        """静态配置的客户端凭证；未配置 client_id 时返回 None。"""
        if not self.client_id:
            return None
        return ClientCredentials(client_id=self.client_id, client_secret=self.client_secret)
