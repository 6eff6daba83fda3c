import pytest

from mcp_oauth.shared.auth import ClientCredentials, OAuthMetadata

ISSUER = "https://auth.example.com"
RESOURCE = "https://mcp.example.com/mcp"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def auth_server_metadata() -> OAuthMetadata:
    return OAuthMetadata(
        issuer=ISSUER,
        authorization_endpoint=f"{ISSUER}/authorize",
        token_endpoint=f"{ISSUER}/token",
        registration_endpoint=f"{ISSUER}/register",
        code_challenge_methods_supported=["S256"],
    )


@pytest.fixture
def client_credentials() -> ClientCredentials:
    return ClientCredentials(client_id="test-client", issuer=ISSUER)
