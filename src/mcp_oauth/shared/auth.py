"""
OAuth data models shared by the client components.

客户端各组件共用的 OAuth 数据模型（基于 pydantic）。
"""

import time
from typing import Any, Literal

from pydantic import AnyHttpUrl, AnyUrl, BaseModel, Field, field_validator


class OAuthToken(BaseModel):
    """令牌端点返回的令牌响应（RFC 6749 第 5.1 节）。"""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None
    refresh_token: str | None = None

    @field_validator("token_type", mode="before")
    @classmethod
    def normalize_token_type(cls, v: Any) -> Any:
        # 有些服务器返回小写的 "bearer"，统一规范为 "Bearer"
        if isinstance(v, str) and v.lower() == "bearer":
            return "Bearer"
        return v


class TokenSet(BaseModel):
    """某个资源服务器持有的令牌集合。

    expires_at 是签发时间加上 expires_in 得到的 Unix 时间戳；
    为 None 时表示在收到 401 之前视为永不过期。
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: float | None = None
    scope: str | None = None

    @classmethod
    def from_token_response(
        cls,
        token: OAuthToken,
        issued_at: float | None = None,
        previous_refresh_token: str | None = None,
    ) -> "TokenSet":
        """根据令牌端点的响应构造 TokenSet。

        如果服务端没有返回新的 refresh_token（轮换是可选的），则保留之前的 refresh_token。
        """
        if issued_at is None:
            issued_at = time.time()
        expires_at = issued_at + token.expires_in if token.expires_in is not None else None
        return cls(
            access_token=token.access_token,
            token_type=token.token_type,
            refresh_token=token.refresh_token or previous_refresh_token,
            expires_at=expires_at,
            scope=token.scope,
        )

    def expires_within(self, seconds: float, now: float | None = None) -> bool:
        """判断令牌是否会在 seconds 秒内过期（没有过期时间时永远返回 False）。"""
        if self.expires_at is None:
            return False
        if now is None:
            now = time.time()
        return now >= self.expires_at - seconds

    def authorization_header(self) -> str:
        """构造 Authorization 请求头的值。"""
        return f"Bearer {self.access_token}"


class ProtectedResourceMetadata(BaseModel):
    """受保护资源元数据（RFC 9728）。"""

    resource: AnyHttpUrl
    authorization_servers: list[AnyHttpUrl] = Field(..., min_length=1)
    scopes_supported: list[str] | None = None
    bearer_methods_supported: list[str] | None = None
    resource_name: str | None = None
    resource_documentation: AnyHttpUrl | None = None


class OAuthMetadata(BaseModel):
    """授权服务器元数据（RFC 8414）。"""

    issuer: AnyHttpUrl
    authorization_endpoint: AnyHttpUrl
    token_endpoint: AnyHttpUrl
    registration_endpoint: AnyHttpUrl | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] = ["code"]
    grant_types_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    revocation_endpoint: AnyHttpUrl | None = None

    @property
    def pkce_methods(self) -> set[str]:
        """授权服务器声明支持的 PKCE 方法集合。"""
        return set(self.code_challenge_methods_supported or [])

    @property
    def issuer_url(self) -> str:
        """去掉末尾斜杠的 issuer 字符串，便于比较和拼接。"""
        return str(self.issuer).rstrip("/")


class OAuthClientMetadata(BaseModel):
    """动态客户端注册请求中的客户端元数据（RFC 7591 第 2 节）。"""

    redirect_uris: list[AnyUrl] = Field(..., min_length=1)
    # 公开客户端（桌面应用）不持有密钥，依赖 PKCE
    token_endpoint_auth_method: Literal["none", "client_secret_post", "client_secret_basic"] = "none"
    grant_types: list[str] = ["authorization_code", "refresh_token"]
    response_types: list[str] = ["code"]
    scope: str | None = None
    client_name: str | None = None
    client_uri: AnyHttpUrl | None = None
    software_id: str | None = None
    software_version: str | None = None


class OAuthClientInformationFull(OAuthClientMetadata):
    """注册成功后授权服务器返回的完整客户端信息（RFC 7591 第 3.2.1 节）。"""

    client_id: str
    client_secret: str | None = None
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None


class ClientCredentials(BaseModel):
    """调用令牌端点时使用的客户端身份。

    issuer 只在通过动态注册获得身份时设置：这样的 client_id 只对该授权服务器有效。
    """

    client_id: str
    client_secret: str | None = None
    issuer: str | None = None

    @property
    def is_confidential(self) -> bool:
        return bool(self.client_secret)

    def valid_for(self, metadata: OAuthMetadata) -> bool:
        """判断该客户端身份能否用于给定的授权服务器。"""
        return self.issuer is None or self.issuer.rstrip("/") == metadata.issuer_url
