from urllib.parse import parse_qs

import httpx
import pytest

from mcp_oauth.client.lifecycle import TokenLifecycleManager
from mcp_oauth.client.tokens import InMemoryTokenStorage
from mcp_oauth.shared.auth import ClientCredentials, OAuthMetadata, TokenSet

NOW = 1_000_000.0
RESOURCE = "https://mcp.example.com/mcp"
REDIRECT_URI = "http://localhost:3030/callback"


class FakeController:
    """记录 authorize 调用的流程控制器替身。"""

    def __init__(self):
        self.calls: list[tuple] = []

    async def authorize(self, auth_server_metadata, client_credentials, resource, scopes, redirect_uri):
        self.calls.append((resource, scopes, redirect_uri))
        return TokenSet(access_token=f"authorized-{len(self.calls)}", refresh_token="rt-new", expires_at=NOW + 3600)


class RefreshEndpoint:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "refreshed", "token_type": "Bearer", "expires_in": 3600})


@pytest.fixture
def refresh_endpoint() -> RefreshEndpoint:
    return RefreshEndpoint()


@pytest.fixture
async def http_client(refresh_endpoint: RefreshEndpoint):
    async with httpx.AsyncClient(transport=httpx.MockTransport(refresh_endpoint)) as client:
        yield client


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
def storage() -> InMemoryTokenStorage:
    return InMemoryTokenStorage()


@pytest.fixture
def manager(http_client: httpx.AsyncClient, controller: FakeController, storage: InMemoryTokenStorage):
    return TokenLifecycleManager(
        controller,  # type: ignore[arg-type]
        http_client,
        redirect_uri=REDIRECT_URI,
        scopes=["read"],
        storage=storage,
        clock=lambda: NOW,
    )


def tokens(expires_in: float | None, refresh_token: str | None = "rt-1") -> TokenSet:
    expires_at = NOW + expires_in if expires_in is not None else None
    return TokenSet(access_token="current", refresh_token=refresh_token, expires_at=expires_at)


@pytest.mark.anyio
async def test_refresh_boundary(manager: TokenLifecycleManager):
    assert manager.needs_refresh(tokens(4 * 60))
    assert manager.needs_refresh(tokens(5 * 60))
    assert not manager.needs_refresh(tokens(10 * 60))
    assert not manager.needs_refresh(tokens(None))


@pytest.mark.anyio
async def test_token_expiring_in_four_minutes_is_refreshed(
    manager: TokenLifecycleManager,
    refresh_endpoint: RefreshEndpoint,
    controller: FakeController,
    storage: InMemoryTokenStorage,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
):
    result = await manager.ensure_valid(tokens(4 * 60), auth_server_metadata, client_credentials, RESOURCE)

    assert result.access_token == "refreshed"
    # 服务端没有轮换 refresh token 时保留旧的
    assert result.refresh_token == "rt-1"
    assert refresh_endpoint.requests[0]["grant_type"] == "refresh_token"
    assert refresh_endpoint.requests[0]["resource"] == RESOURCE
    assert controller.calls == []
    assert await storage.get_tokens() == result


@pytest.mark.anyio
async def test_token_expiring_in_ten_minutes_is_returned_unchanged(
    manager: TokenLifecycleManager,
    refresh_endpoint: RefreshEndpoint,
    controller: FakeController,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
):
    current = tokens(10 * 60)
    result = await manager.ensure_valid(current, auth_server_metadata, client_credentials, RESOURCE)

    assert result is current
    assert refresh_endpoint.requests == []
    assert controller.calls == []


@pytest.mark.anyio
async def test_no_tokens_starts_authorization(
    manager: TokenLifecycleManager,
    controller: FakeController,
    storage: InMemoryTokenStorage,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
):
    result = await manager.ensure_valid(None, auth_server_metadata, client_credentials, RESOURCE)

    assert result.access_token == "authorized-1"
    assert controller.calls == [(RESOURCE, ["read"], REDIRECT_URI)]
    assert await storage.get_tokens() == result


@pytest.mark.anyio
async def test_refresh_failure_falls_back_to_authorization(
    manager: TokenLifecycleManager,
    refresh_endpoint: RefreshEndpoint,
    controller: FakeController,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
):
    refresh_endpoint.status_code = 400
    result = await manager.ensure_valid(tokens(60), auth_server_metadata, client_credentials, RESOURCE)

    assert len(refresh_endpoint.requests) == 1
    assert result.access_token == "authorized-1"
    assert len(controller.calls) == 1


@pytest.mark.anyio
async def test_missing_refresh_token_goes_straight_to_authorization(
    manager: TokenLifecycleManager,
    refresh_endpoint: RefreshEndpoint,
    controller: FakeController,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
):
    result = await manager.ensure_valid(
        tokens(-10, refresh_token=None), auth_server_metadata, client_credentials, RESOURCE
    )

    assert refresh_endpoint.requests == []
    assert result.access_token == "authorized-1"


@pytest.mark.anyio
async def test_unauthorized_refreshes_regardless_of_expiry(
    manager: TokenLifecycleManager,
    refresh_endpoint: RefreshEndpoint,
    auth_server_metadata: OAuthMetadata,
    client_credentials: ClientCredentials,
):
    result = await manager.handle_unauthorized(tokens(3600), auth_server_metadata, client_credentials, RESOURCE)

    assert result.access_token == "refreshed"
    assert len(refresh_endpoint.requests) == 1
