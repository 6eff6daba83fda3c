"""
OAuth client error taxonomy.

OAuth 客户端的异常体系。所有异常都继承自 OAuthFlowError，
并携带可选的结构化信息（端点、HTTP 状态码、服务端返回的 error / error_description），
便于上层协作方渲染面向用户的提示信息。
"""


# 定义 OAuth 流程的基础异常类
class OAuthFlowError(Exception):
    """OAuth 流程错误的基类异常。"""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        status_code: int | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


# ---------- 资源 URL ----------


class InvalidResourceURL(OAuthFlowError, ValueError):
    """资源服务器 URL 无法解析为绝对 URL。"""


# ---------- 元数据发现 ----------


class DiscoveryError(OAuthFlowError):
    """元数据发现阶段错误的基类。"""


class AuthorizationNotRequired(DiscoveryError):
    """资源服务器没有返回 401，调用方可以直接以未认证方式继续。"""


class UnsupportedAuthScheme(DiscoveryError):
    """401 响应的 WWW-Authenticate 中没有 Bearer 质询。"""


class MetadataMissingField(DiscoveryError):
    """元数据文档缺少必需字段。"""

    def __init__(self, field: str, *, endpoint: str | None = None, detail: str | None = None):
        message = f"Metadata from {endpoint or 'server'} is missing required field '{field}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, endpoint=endpoint)
        self.field = field


class PKCEUnsupported(DiscoveryError):
    """授权服务器没有声明支持 S256 的 PKCE。"""


class DiscoveryNetworkError(DiscoveryError):
    """发现请求在网络层失败，或元数据端点返回了非 2xx 状态。"""


# ---------- 客户端身份 ----------


class OAuthRegistrationError(OAuthFlowError):
    """当客户端注册失败时引发的异常。"""


class RegistrationFailed(OAuthRegistrationError):
    """动态客户端注册请求被拒绝或失败。"""


class NoClientIdentity(OAuthFlowError):
    """既没有静态配置的 client_id，也无法通过动态注册获得。"""


# ---------- 授权尝试 ----------


class AuthorizationDenied(OAuthFlowError):
    """授权服务器在回调中返回了 error 参数。"""

    def __init__(self, error: str, error_description: str | None = None, *, endpoint: str | None = None):
        message = f"Authorization denied: {error}"
        if error_description:
            message = f"{message} ({error_description})"
        super().__init__(message, endpoint=endpoint, error=error, error_description=error_description)


class StateMismatch(OAuthFlowError):
    """回调中的 state 与任何进行中的授权尝试都不匹配（CSRF 防护）。"""


class UserCancelled(OAuthFlowError):
    """用户在回调到达之前关闭了授权界面。"""


class AuthorizationTimeout(OAuthFlowError):
    """授权尝试在超时时间内没有收到回调。"""


class CallbackListenerError(OAuthFlowError):
    """无法在重定向 URI 的回环端口上启动回调监听器。"""


# ---------- 令牌 ----------


class OAuthTokenError(OAuthFlowError):
    """当令牌操作失败时引发的异常。"""


class TokenExchangeFailed(OAuthTokenError):
    """使用授权码换取令牌失败。"""


class TokenRefreshFailed(OAuthTokenError):
    """使用 refresh token 刷新令牌失败。"""
