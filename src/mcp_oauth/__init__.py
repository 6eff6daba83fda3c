"""OAuth 2.1 client for MCP tool servers (PKCE, discovery and resource indicators)."""

from mcp_oauth.shared.auth import ClientCredentials, OAuthMetadata, ProtectedResourceMetadata, TokenSet
from mcp_oauth.shared.auth_utils import canonicalize_resource_url

__all__ = [
    "ClientCredentials",
    "OAuthMetadata",
    "ProtectedResourceMetadata",
    "TokenSet",
    "canonicalize_resource_url",
]
