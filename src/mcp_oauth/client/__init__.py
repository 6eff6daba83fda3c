from mcp_oauth.client.auth import (
    AttemptRegistry,
    AttemptStatus,
    AuthorizationAttempt,
    AuthorizationFlowController,
    PKCEParameters,
)
from mcp_oauth.client.callback import BrowserSurface, DeliveryMode
from mcp_oauth.client.config import OAuthClientConfig
from mcp_oauth.client.discovery import DiscoveryResult, discover
from mcp_oauth.client.lifecycle import TokenLifecycleManager
from mcp_oauth.client.provider import OAuthClientProvider
from mcp_oauth.client.registration import obtain_client_credentials, register
from mcp_oauth.client.tokens import InMemoryTokenStorage, TokenStorage

__all__ = [
    "AttemptRegistry",
    "AttemptStatus",
    "AuthorizationAttempt",
    "AuthorizationFlowController",
    "BrowserSurface",
    "DeliveryMode",
    "DiscoveryResult",
    "InMemoryTokenStorage",
    "OAuthClientConfig",
    "OAuthClientProvider",
    "PKCEParameters",
    "TokenLifecycleManager",
    "TokenStorage",
    "discover",
    "obtain_client_credentials",
    "register",
]
