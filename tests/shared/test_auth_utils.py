import pytest

from mcp_oauth.shared.auth_utils import canonicalize_resource_url, check_resource_allowed, resource_origin
from mcp_oauth.shared.exceptions import InvalidResourceURL


@pytest.mark.parametrize(
    "url, expected",
    [
        ("HTTPS://Host.example:443/api/", "https://host.example/api"),
        ("https://host.example/api", "https://host.example/api"),
        ("http://host.example:80/", "http://host.example/"),
        ("http://host.example", "http://host.example/"),
        ("https://host.example:8443/mcp", "https://host.example:8443/mcp"),
        ("https://host.example/Path/Case", "https://host.example/Path/Case"),
        ("https://host.example/api?x=1#frag", "https://host.example/api"),
        ("https://user:pw@host.example/api", "https://host.example/api"),
        ("http://[::1]:3000/mcp/", "http://[::1]:3000/mcp"),
    ],
)
def test_canonicalize_resource_url(url: str, expected: str):
    assert canonicalize_resource_url(url) == expected


@pytest.mark.parametrize(
    "url",
    [
        "HTTPS://Host.example:443/api/",
        "https://host.example/api//",
        "http://LOCALHOST:8080",
        "https://host.example/",
        "https://host.example/a/b/?q",
    ],
)
def test_canonicalize_is_idempotent(url: str):
    once = canonicalize_resource_url(url)
    assert canonicalize_resource_url(once) == once


def test_equivalent_urls_share_identifier():
    assert canonicalize_resource_url("HTTPS://Host.example:443/api/") == canonicalize_resource_url(
        "https://host.example/api"
    )


@pytest.mark.parametrize("url", ["", "/relative/path", "host.example/api", "https://host.example:notaport/"])
def test_invalid_resource_url(url: str):
    with pytest.raises(InvalidResourceURL):
        canonicalize_resource_url(url)


def test_invalid_resource_url_is_value_error():
    with pytest.raises(ValueError):
        canonicalize_resource_url("not a url")


def test_resource_origin():
    assert resource_origin("HTTPS://Host.example:443/api/v1") == "https://host.example"
    assert resource_origin("http://localhost:3000/mcp") == "http://localhost:3000"


@pytest.mark.parametrize(
    "requested, configured, allowed",
    [
        ("https://host.example/api/mcp", "https://host.example/api", True),
        ("https://host.example/api", "https://host.example/api/", True),
        ("https://host.example/api", "https://host.example/", True),
        ("https://host.example/api2", "https://host.example/api", False),
        ("https://host.example/api", "https://host.example/api/mcp", False),
        ("https://host.example/api", "http://host.example/api", False),
        ("https://host.example/api", "https://other.example/api", False),
        ("https://host.example:8443/api", "https://host.example/api", False),
    ],
)
def test_check_resource_allowed(requested: str, configured: str, allowed: bool):
    assert check_resource_allowed(requested, configured) is allowed
