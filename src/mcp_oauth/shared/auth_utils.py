"""
Utilities for RFC 8707 resource indicators.

RFC 8707 资源指示符相关的工具函数：把资源服务器 URL 规范化为资源标识符，
并判断受保护资源元数据中声明的 resource 是否覆盖请求的资源。
"""

from urllib.parse import urlsplit

from mcp_oauth.shared.exceptions import InvalidResourceURL

# 各协议的默认端口，规范化时会被去掉
DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize_resource_url(url: str) -> str:
    """把资源服务器 URL 转换为规范的资源标识符。

    - scheme 和 host 转为小写
    - 默认端口（http 80 / https 443）被去掉，非默认端口保留
    - path 原样保留，但去掉末尾的斜杠；空路径和根路径都规范化为 "/"
    - query、fragment 以及 userinfo 全部丢弃

    规范化是幂等的：canonicalize_resource_url(canonicalize_resource_url(x)) == canonicalize_resource_url(x)。
    """
    if not isinstance(url, str):
        raise InvalidResourceURL(f"Resource URL must be a string, got {type(url).__name__}")

    try:
        parsed = urlsplit(url.strip())
        port = parsed.port  # 端口非法时这里会抛出 ValueError
    except ValueError as e:
        raise InvalidResourceURL(f"Invalid resource URL {url!r}: {e}") from e

    if not parsed.scheme or not parsed.hostname:
        raise InvalidResourceURL(f"Resource URL must be absolute: {url!r}")

    scheme = parsed.scheme.lower()
    host = parsed.hostname  # urlsplit 已经把 hostname 转为小写
    if ":" in host:
        # IPv6 地址需要重新加上方括号
        host = f"[{host}]"

    netloc = host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"

    # 空路径与根路径等价，统一为 "/"；其余路径去掉所有末尾斜杠，保证幂等
    path = parsed.path.rstrip("/") or "/"

    return f"{scheme}://{netloc}{path}"


def resource_origin(url: str) -> str:
    """返回资源标识符的 origin 部分（scheme://host[:port]）。"""
    parsed = urlsplit(canonicalize_resource_url(url))
    return f"{parsed.scheme}://{parsed.netloc}"


def check_resource_allowed(requested_resource: str, configured_resource: str) -> bool:
    """判断受保护资源元数据中配置的 resource 是否覆盖请求的资源。

    两者必须同源，并且配置的路径是请求路径按路径段边界的前缀。
    """
    requested = urlsplit(canonicalize_resource_url(requested_resource))
    configured = urlsplit(canonicalize_resource_url(configured_resource))

    if requested.scheme != configured.scheme or requested.netloc != configured.netloc:
        return False

    requested_path = requested.path
    configured_path = configured.path
    if len(requested_path) < len(configured_path):
        return False

    # 统一补上末尾斜杠，避免 /api 匹配到 /api2
    if not requested_path.endswith("/"):
        requested_path += "/"
    if not configured_path.endswith("/"):
        configured_path += "/"

    return requested_path.startswith(configured_path)
