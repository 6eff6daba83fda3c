"""
Authorization server discovery for MCP resource servers.

Implements the discovery chain: unauthenticated handshake → WWW-Authenticate challenge →
protected resource metadata (RFC 9728) → authorization server metadata (RFC 8414) → PKCE check.

MCP 资源服务器的授权服务器发现。
依次执行：未认证握手 → 解析 WWW-Authenticate 质询 → 受保护资源元数据 → 授权服务器元数据 → 校验 PKCE 支持。
发现过程中不做任何重试，网络错误直接抛给调用方。
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, TypeVar
from urllib.parse import urljoin

import httpx
from pydantic import BaseModel, ValidationError

from mcp_oauth.shared.auth import OAuthMetadata, ProtectedResourceMetadata
from mcp_oauth.shared.auth_utils import canonicalize_resource_url, check_resource_allowed
from mcp_oauth.shared.exceptions import (
    AuthorizationNotRequired,
    DiscoveryNetworkError,
    MetadataMissingField,
    PKCEUnsupported,
    UnsupportedAuthScheme,
)

logger = logging.getLogger(__name__)

# 定义 HTTP 头部常量
MCP_PROTOCOL_VERSION = "mcp-protocol-version"
LATEST_PROTOCOL_VERSION = "2025-06-18"
WWW_AUTHENTICATE = "WWW-Authenticate"

# 定义 well-known 路径常量
PROTECTED_RESOURCE_WELL_KNOWN = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_WELL_KNOWN = "/.well-known/oauth-authorization-server"

# OAuth 2.1 强制要求的 PKCE 方法
REQUIRED_PKCE_METHOD = "S256"

# RFC 7230 的 token 字符集
_TOKEN = r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+"
# 认证参数：key="quoted value" 或 key=token，后面可选一个逗号
_AUTH_PARAM_RE = re.compile(rf'\s*({_TOKEN})\s*=\s*("(?:[^"\\]|\\.)*"|[^\s,]*)\s*,?')
# 认证方案：前面可能有分隔多个质询的逗号，后面必须是空白、逗号或结尾
_AUTH_SCHEME_RE = re.compile(rf"\s*,?\s*({_TOKEN})(?=\s|,|$)")
_QUOTED_PAIR_RE = re.compile(r"\\(.)")

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class AuthChallenge:
    """WWW-Authenticate 头中的一个认证质询。"""

    scheme: str
    params: dict[str, str] = field(default_factory=dict)

    @property
    def is_bearer(self) -> bool:
        return self.scheme.lower() == "bearer"

    @property
    def realm(self) -> str | None:
        return self.params.get("realm")

    @property
    def error(self) -> str | None:
        return self.params.get("error")

    @property
    def error_description(self) -> str | None:
        return self.params.get("error_description")

    @property
    def resource_metadata(self) -> str | None:
        return self.params.get("resource_metadata")

    @property
    def scope(self) -> str | None:
        return self.params.get("scope")


@dataclass
class DiscoveryResult:
    """一次发现过程的结果。"""

    # 规范化后的资源标识符，之后作为 resource 参数发送
    resource: str
    auth_server_metadata: OAuthMetadata
    protected_resource_metadata: ProtectedResourceMetadata
    # 实际请求的受保护资源元数据 URL
    resource_metadata_url: str
    # 401 响应中的 Bearer 质询（服务器没有返回 WWW-Authenticate 时为 None）
    challenge: AuthChallenge | None = None


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return _QUOTED_PAIR_RE.sub(r"\1", value[1:-1])
    return value


def parse_www_authenticate(header: str) -> list[AuthChallenge]:
    """解析 WWW-Authenticate 头，返回其中的所有质询。

    语法：方案 token，后面跟着逗号分隔的 key="value" 参数；
    同一个头里可以出现多个质询（例如 `Basic realm="a", Bearer realm="b"`）。
    参数名统一转为小写。
    """
    challenges: list[AuthChallenge] = []
    current: AuthChallenge | None = None
    pos = 0

    while pos < len(header):
        if not header[pos:].strip(" ,\t"):
            break

        if current is not None:
            # 优先尝试解析当前质询的参数
            match = _AUTH_PARAM_RE.match(header, pos)
            if match:
                current.params[match.group(1).lower()] = _unquote(match.group(2))
                pos = match.end()
                continue

        match = _AUTH_SCHEME_RE.match(header, pos)
        if not match:
            logger.debug(f"Stopped parsing malformed WWW-Authenticate header at offset {pos}")
            break

        current = AuthChallenge(scheme=match.group(1))
        challenges.append(current)
        pos = match.end()

    return challenges


def find_bearer_challenge(header: str | None) -> AuthChallenge | None:
    """从 WWW-Authenticate 头中找出 Bearer 质询。

    没有该头时返回 None；有质询但没有 Bearer 方案时抛出 UnsupportedAuthScheme。
    """
    if not header or not header.strip():
        return None

    challenges = parse_www_authenticate(header)
    for challenge in challenges:
        if challenge.is_bearer:
            return challenge

    schemes = ", ".join(c.scheme for c in challenges) or header
    raise UnsupportedAuthScheme(f"Resource server requires unsupported authentication scheme: {schemes}")


def default_resource_metadata_url(resource: str) -> str:
    """返回默认的受保护资源元数据地址：{规范资源}/.well-known/oauth-protected-resource。"""
    return canonicalize_resource_url(resource).rstrip("/") + PROTECTED_RESOURCE_WELL_KNOWN


def authorization_server_metadata_url(issuer: str) -> str:
    """返回授权服务器元数据地址：{issuer}/.well-known/oauth-authorization-server。"""
    return issuer.rstrip("/") + AUTHORIZATION_SERVER_WELL_KNOWN


def _handshake_payload(client_name: str, client_version: str) -> dict[str, Any]:
    # 最小化的 MCP initialize 请求，只用于触发 401 质询
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": client_name, "version": client_version},
        },
    }


async def _get_json(http_client: httpx.AsyncClient, url: str) -> dict[str, Any]:
    """GET 一个 JSON 元数据文档。"""
    try:
        response = await http_client.get(
            url,
            headers={"Accept": "application/json", MCP_PROTOCOL_VERSION: LATEST_PROTOCOL_VERSION},
        )
    except httpx.HTTPError as e:
        raise DiscoveryNetworkError(f"Failed to fetch metadata from {url}: {e}", endpoint=url) from e

    if not response.is_success:
        raise DiscoveryNetworkError(
            f"Metadata request to {url} failed: {response.status_code}",
            endpoint=url,
            status_code=response.status_code,
        )

    try:
        data = response.json()
    except ValueError as e:
        raise MetadataMissingField("<document>", endpoint=url, detail="response is not valid JSON") from e

    if not isinstance(data, dict):
        raise MetadataMissingField("<document>", endpoint=url, detail="response is not a JSON object")
    return data


def _validate_metadata(model: type[ModelT], data: dict[str, Any], endpoint: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # 缺失或为空的必需字段都归为 MetadataMissingField
        first = e.errors()[0]
        field_name = str(first["loc"][0]) if first["loc"] else "<document>"
        raise MetadataMissingField(field_name, endpoint=endpoint, detail=first["msg"]) from e


async def fetch_protected_resource_metadata(http_client: httpx.AsyncClient, url: str) -> ProtectedResourceMetadata:
    """获取并校验受保护资源元数据。"""
    data = await _get_json(http_client, url)
    return _validate_metadata(ProtectedResourceMetadata, data, url)


async def fetch_authorization_server_metadata(http_client: httpx.AsyncClient, issuer: str) -> OAuthMetadata:
    """获取并校验授权服务器元数据，同时确认其支持 S256 PKCE。"""
    url = authorization_server_metadata_url(issuer)
    data = await _get_json(http_client, url)
    metadata = _validate_metadata(OAuthMetadata, data, url)
    require_pkce_support(metadata, endpoint=url)
    return metadata


def require_pkce_support(metadata: OAuthMetadata, endpoint: str | None = None) -> None:
    """授权服务器未声明支持 S256 时失败关闭。"""
    if REQUIRED_PKCE_METHOD not in metadata.pkce_methods:
        raise PKCEUnsupported(
            f"Authorization server {metadata.issuer_url} does not support PKCE with {REQUIRED_PKCE_METHOD} "
            f"(advertised: {sorted(metadata.pkce_methods) or 'none'})",
            endpoint=endpoint,
        )


async def fetch_authorization_challenge(
    http_client: httpx.AsyncClient,
    resource_url: str,
    client_name: str = "mcp-oauth-client",
    client_version: str = "0.1.0",
) -> AuthChallenge | None:
    """向资源服务器发送未认证的握手请求，返回 401 响应中的 Bearer 质询。

    响应不是 401 时抛出 AuthorizationNotRequired。
    """
    try:
        response = await http_client.post(
            resource_url,
            json=_handshake_payload(client_name, client_version),
            headers={
                "Accept": "application/json, text/event-stream",
                MCP_PROTOCOL_VERSION: LATEST_PROTOCOL_VERSION,
            },
        )
    except httpx.HTTPError as e:
        raise DiscoveryNetworkError(f"Handshake with {resource_url} failed: {e}", endpoint=resource_url) from e

    if response.status_code != 401:
        raise AuthorizationNotRequired(
            f"Resource server {resource_url} answered {response.status_code} without an authorization challenge",
            endpoint=resource_url,
            status_code=response.status_code,
        )

    return find_bearer_challenge(response.headers.get(WWW_AUTHENTICATE))


async def discover(
    resource_url: str,
    http_client: httpx.AsyncClient,
    client_name: str = "mcp-oauth-client",
) -> DiscoveryResult:
    """发现资源服务器信任的授权服务器。

    参数：
        resource_url: 资源服务器（MCP 服务端）的 URL。
        http_client: 用于发送所有发现请求的 httpx 客户端。
        client_name: 握手请求中声明的客户端名称。

    返回：
        DiscoveryResult，包含规范资源标识符和两份元数据。
    """
    requested_resource = canonicalize_resource_url(resource_url)

    # 第一步：未认证握手，期待 401 质询
    challenge = await fetch_authorization_challenge(http_client, resource_url, client_name=client_name)
    if challenge and challenge.error:
        logger.debug(f"Resource server challenge error: {challenge.error} {challenge.error_description or ''}")

    # 第二步：确定受保护资源元数据地址，质询中给出时直接使用
    if challenge and challenge.resource_metadata:
        resource_metadata_url = urljoin(resource_url, challenge.resource_metadata)
    else:
        resource_metadata_url = default_resource_metadata_url(requested_resource)
    logger.debug(f"Fetching protected resource metadata from {resource_metadata_url}")

    # 第三步：获取受保护资源元数据
    prm = await fetch_protected_resource_metadata(http_client, resource_metadata_url)

    # 如果 PRM 声明的 resource 覆盖了请求的资源，则使用 PRM 中的值作为 resource 参数
    resource = requested_resource
    prm_resource = canonicalize_resource_url(str(prm.resource))
    if check_resource_allowed(requested_resource=requested_resource, configured_resource=prm_resource):
        resource = prm_resource
    else:
        logger.warning(
            f"Protected resource metadata declares {prm_resource}, which does not cover {requested_resource}; "
            "using the requested resource"
        )

    # 第四步：第一个授权服务器为权威服务器（不会回退到其它服务器）
    issuer = str(prm.authorization_servers[0])
    if len(prm.authorization_servers) > 1:
        logger.debug(f"Multiple authorization servers advertised, using the first: {issuer}")

    # 第五步：获取授权服务器元数据并校验 PKCE
    auth_server_metadata = await fetch_authorization_server_metadata(http_client, issuer)
    logger.info(f"Discovered authorization server {auth_server_metadata.issuer_url} for {resource}")

    return DiscoveryResult(
        resource=resource,
        auth_server_metadata=auth_server_metadata,
        protected_resource_metadata=prm,
        resource_metadata_url=resource_metadata_url,
        challenge=challenge,
    )
