import json

import httpx
import pytest

from mcp_oauth.client.discovery import (
    default_resource_metadata_url,
    discover,
    find_bearer_challenge,
    parse_www_authenticate,
    require_pkce_support,
)
from mcp_oauth.shared.auth import OAuthMetadata
from mcp_oauth.shared.exceptions import (
    AuthorizationNotRequired,
    DiscoveryNetworkError,
    MetadataMissingField,
    PKCEUnsupported,
    UnsupportedAuthScheme,
)

RESOURCE_URL = "https://mcp.example.com/mcp"
ISSUER = "https://auth.example.com"

PRM = {"resource": RESOURCE_URL, "authorization_servers": [ISSUER]}
AS_METADATA = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/authorize",
    "token_endpoint": f"{ISSUER}/token",
    "code_challenge_methods_supported": ["S256"],
}


class FakeServers:
    """资源服务器和授权服务器的模拟，记录所有请求。"""

    def __init__(
        self,
        challenge: str | None = 'Bearer realm="mcp"',
        initialize_status: int = 401,
        documents: dict[str, object] | None = None,
    ):
        self.challenge = challenge
        self.initialize_status = initialize_status
        if documents is None:
            documents = {
                "https://mcp.example.com/mcp/.well-known/oauth-protected-resource": PRM,
                f"{ISSUER}/.well-known/oauth-authorization-server": AS_METADATA,
            }
        self.documents = documents
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and str(request.url) == RESOURCE_URL:
            headers = {"WWW-Authenticate": self.challenge} if self.challenge else {}
            return httpx.Response(self.initialize_status, headers=headers)
        document = self.documents.get(str(request.url))
        if document is None:
            return httpx.Response(404)
        if isinstance(document, str):
            return httpx.Response(200, content=document.encode())
        return httpx.Response(200, json=document)

    @property
    def fetched(self) -> list[str]:
        return [str(r.url) for r in self.requests if r.method == "GET"]


def client_for(servers: FakeServers) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(servers))


def test_parse_bearer_challenge():
    header = 'Bearer realm="mcp", error="invalid_token", resource_metadata="https://x.example/prm"'
    [challenge] = parse_www_authenticate(header)
    assert challenge.is_bearer
    assert challenge.realm == "mcp"
    assert challenge.error == "invalid_token"
    assert challenge.resource_metadata == "https://x.example/prm"


def test_parse_multiple_challenges():
    challenges = parse_www_authenticate('Basic realm="a", Bearer scope="read write", error=invalid_token')
    assert [c.scheme for c in challenges] == ["Basic", "Bearer"]
    assert challenges[0].realm == "a"
    assert challenges[1].scope == "read write"
    assert challenges[1].error == "invalid_token"


def test_parse_escaped_quotes():
    [challenge] = parse_www_authenticate(r'Bearer error_description="bad \"token\""')
    assert challenge.error_description == 'bad "token"'


def test_find_bearer_challenge_without_header():
    assert find_bearer_challenge(None) is None
    assert find_bearer_challenge("") is None


def test_find_bearer_challenge_rejects_other_schemes():
    with pytest.raises(UnsupportedAuthScheme):
        find_bearer_challenge('Basic realm="a"')


def test_default_resource_metadata_url():
    assert (
        default_resource_metadata_url("HTTPS://MCP.example.com:443/mcp/")
        == "https://mcp.example.com/mcp/.well-known/oauth-protected-resource"
    )
    assert (
        default_resource_metadata_url("https://mcp.example.com")
        == "https://mcp.example.com/.well-known/oauth-protected-resource"
    )


def test_require_pkce_support():
    metadata = OAuthMetadata.model_validate({**AS_METADATA, "code_challenge_methods_supported": ["plain"]})
    with pytest.raises(PKCEUnsupported):
        require_pkce_support(metadata)


@pytest.mark.anyio
async def test_discover_default_metadata_location():
    servers = FakeServers()
    async with client_for(servers) as client:
        result = await discover(RESOURCE_URL, client)

    assert result.resource == RESOURCE_URL
    assert result.auth_server_metadata.issuer_url == ISSUER
    assert result.resource_metadata_url == "https://mcp.example.com/mcp/.well-known/oauth-protected-resource"
    assert servers.fetched == [
        "https://mcp.example.com/mcp/.well-known/oauth-protected-resource",
        f"{ISSUER}/.well-known/oauth-authorization-server",
    ]


@pytest.mark.anyio
async def test_discover_uses_challenge_resource_metadata_verbatim():
    custom_url = "https://meta.example.net/custom/prm-location"
    servers = FakeServers(
        challenge=f'Bearer realm="mcp", resource_metadata="{custom_url}"',
        documents={
            custom_url: PRM,
            f"{ISSUER}/.well-known/oauth-authorization-server": AS_METADATA,
        },
    )
    async with client_for(servers) as client:
        result = await discover(RESOURCE_URL, client)

    assert servers.fetched[0] == custom_url
    assert result.resource_metadata_url == custom_url
    assert not any(url.startswith("https://mcp.example.com/") for url in servers.fetched)


@pytest.mark.anyio
async def test_discover_first_authorization_server_is_authoritative():
    prm = {**PRM, "authorization_servers": [ISSUER, "https://backup.example.com"]}
    servers = FakeServers()
    servers.documents["https://mcp.example.com/mcp/.well-known/oauth-protected-resource"] = prm
    async with client_for(servers) as client:
        result = await discover(RESOURCE_URL, client)

    assert result.auth_server_metadata.issuer_url == ISSUER
    assert not any("backup.example.com" in url for url in servers.fetched)


@pytest.mark.anyio
async def test_discover_pkce_unsupported():
    servers = FakeServers()
    servers.documents[f"{ISSUER}/.well-known/oauth-authorization-server"] = {
        **AS_METADATA,
        "code_challenge_methods_supported": ["plain"],
    }
    async with client_for(servers) as client:
        with pytest.raises(PKCEUnsupported):
            await discover(RESOURCE_URL, client)


@pytest.mark.anyio
async def test_discover_pkce_methods_absent():
    as_metadata = dict(AS_METADATA)
    del as_metadata["code_challenge_methods_supported"]
    servers = FakeServers()
    servers.documents[f"{ISSUER}/.well-known/oauth-authorization-server"] = as_metadata
    async with client_for(servers) as client:
        with pytest.raises(PKCEUnsupported):
            await discover(RESOURCE_URL, client)


@pytest.mark.anyio
@pytest.mark.parametrize(
    "prm, field",
    [
        ({"authorization_servers": [ISSUER]}, "resource"),
        ({"resource": RESOURCE_URL}, "authorization_servers"),
        ({"resource": RESOURCE_URL, "authorization_servers": []}, "authorization_servers"),
    ],
)
async def test_discover_prm_missing_field(prm: dict, field: str):
    servers = FakeServers()
    servers.documents["https://mcp.example.com/mcp/.well-known/oauth-protected-resource"] = prm
    async with client_for(servers) as client:
        with pytest.raises(MetadataMissingField) as exc_info:
            await discover(RESOURCE_URL, client)
    assert exc_info.value.field == field


@pytest.mark.anyio
async def test_discover_as_metadata_missing_token_endpoint():
    as_metadata = dict(AS_METADATA)
    del as_metadata["token_endpoint"]
    servers = FakeServers()
    servers.documents[f"{ISSUER}/.well-known/oauth-authorization-server"] = as_metadata
    async with client_for(servers) as client:
        with pytest.raises(MetadataMissingField) as exc_info:
            await discover(RESOURCE_URL, client)
    assert exc_info.value.field == "token_endpoint"


@pytest.mark.anyio
async def test_discover_invalid_json_document():
    servers = FakeServers()
    servers.documents["https://mcp.example.com/mcp/.well-known/oauth-protected-resource"] = "<html>nope</html>"
    async with client_for(servers) as client:
        with pytest.raises(MetadataMissingField):
            await discover(RESOURCE_URL, client)


@pytest.mark.anyio
async def test_discover_authorization_not_required():
    servers = FakeServers(initialize_status=200, challenge=None)
    async with client_for(servers) as client:
        with pytest.raises(AuthorizationNotRequired) as exc_info:
            await discover(RESOURCE_URL, client)
    assert exc_info.value.status_code == 200
    assert servers.fetched == []


@pytest.mark.anyio
async def test_discover_unsupported_scheme():
    servers = FakeServers(challenge='Basic realm="mcp"')
    async with client_for(servers) as client:
        with pytest.raises(UnsupportedAuthScheme):
            await discover(RESOURCE_URL, client)


@pytest.mark.anyio
async def test_discover_metadata_not_found():
    servers = FakeServers(documents={})
    async with client_for(servers) as client:
        with pytest.raises(DiscoveryNetworkError) as exc_info:
            await discover(RESOURCE_URL, client)
    assert exc_info.value.status_code == 404


@pytest.mark.anyio
async def test_discover_network_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(DiscoveryNetworkError):
            await discover(RESOURCE_URL, client)


@pytest.mark.anyio
async def test_discovery_sends_initialize_request():
    servers = FakeServers()
    async with client_for(servers) as client:
        await discover(RESOURCE_URL, client, client_name="discovery-test")

    initialize = servers.requests[0]
    assert initialize.method == "POST"
    body = json.loads(initialize.content)
    assert body["method"] == "initialize"
    assert body["params"]["clientInfo"]["name"] == "discovery-test"
    assert "authorization" not in initialize.headers
