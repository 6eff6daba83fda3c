"""
OAuth 2.1 authorization code flow with PKCE.

Implements the authorization attempt state machine, the in-flight attempt registry keyed by
`state`, callback correlation for both delivery modes, and the code-for-token exchange.

带有 PKCE 的 OAuth 2.1 授权码流程。
实现授权尝试的状态机、以 state 为键的进行中尝试注册表、两种投递方式下的回调关联，以及授权码换取令牌。
"""

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import parse_qs, urlencode, urlsplit

import anyio
import httpx
from pydantic import BaseModel, Field

from mcp_oauth.client.callback import (
    CallbackDelivery,
    DeliveryMode,
    LoopbackListenerPool,
    RedirectHandler,
    SurfaceFactory,
    create_delivery,
    open_in_system_browser,
    select_delivery_mode,
)
from mcp_oauth.client.tokens import exchange_authorization_code
from mcp_oauth.shared.auth import ClientCredentials, OAuthMetadata, TokenSet
from mcp_oauth.shared.auth_utils import canonicalize_resource_url
from mcp_oauth.shared.exceptions import (
    AuthorizationDenied,
    AuthorizationTimeout,
    NoClientIdentity,
    OAuthFlowError,
    StateMismatch,
    TokenExchangeFailed,
    UserCancelled,
)

logger = logging.getLogger(__name__)

# 每个授权尝试的默认超时时间（秒）
DEFAULT_AUTHORIZATION_TIMEOUT = 300.0


# 定义 PKCE（Proof Key for Code Exchange）参数的数据模型
class PKCEParameters(BaseModel):
    """PKCE（授权码校验）参数。"""

    # code_verifier 是客户端生成的原始密钥字符串，长度限制为 43 到 128
    code_verifier: str = Field(..., min_length=43, max_length=128)
    # code_challenge 是由 code_verifier 派生出的 SHA256 哈希，经 base64-url 编码后的字符串
    code_challenge: str = Field(..., min_length=43, max_length=128)

    @classmethod
    def generate(cls) -> "PKCEParameters":
        """生成新的 PKCE 参数。"""
        # 64 字节随机数经 base64url 编码得到 86 个字符，只包含 [A-Za-z0-9-_]
        code_verifier = secrets.token_urlsafe(64)
        return cls(code_verifier=code_verifier, code_challenge=compute_code_challenge(code_verifier))


def compute_code_challenge(code_verifier: str) -> str:
    """code_challenge = base64url(SHA256(code_verifier))，去掉末尾的填充等号。"""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class AttemptStatus(str, Enum):
    """授权尝试的状态机。"""

    CREATED = "created"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.FULFILLED, AttemptStatus.REJECTED)


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


@dataclass
class AuthorizationAttempt:
    """一次进行中的授权尝试，以不可猜测的 state 为键。"""

    state: str
    code_verifier: str
    code_challenge: str
    resource: str
    scopes: list[str]
    redirect_uri: str
    delivery_mode: DeliveryMode
    auth_server_metadata: OAuthMetadata
    client_credentials: ClientCredentials
    created_at: float = field(default_factory=time.time)
    status: AttemptStatus = AttemptStatus.CREATED
    token_set: TokenSet | None = None
    error: Exception | None = None
    # 一次性的完成信号：只会被设置一次
    _done: anyio.Event = field(default_factory=anyio.Event, repr=False)

    @classmethod
    def create(
        cls,
        auth_server_metadata: OAuthMetadata,
        client_credentials: ClientCredentials,
        resource: str,
        scopes: list[str],
        redirect_uri: str,
    ) -> "AuthorizationAttempt":
        pkce = PKCEParameters.generate()
        return cls(
            state=secrets.token_urlsafe(32),
            code_verifier=pkce.code_verifier,
            code_challenge=pkce.code_challenge,
            resource=resource,
            scopes=list(scopes),
            redirect_uri=redirect_uri,
            delivery_mode=select_delivery_mode(redirect_uri),
            auth_server_metadata=auth_server_metadata,
            client_credentials=client_credentials,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def outcome(self) -> AttemptOutcome:
        if self.status is AttemptStatus.FULFILLED:
            return AttemptOutcome.FULFILLED
        if self.status is AttemptStatus.REJECTED:
            return AttemptOutcome.REJECTED
        return AttemptOutcome.PENDING

    @property
    def state_hint(self) -> str:
        """用于日志的截断 state。"""
        return f"{self.state[:8]}..."

    def advance(self, status: AttemptStatus) -> None:
        """进入下一个非终止状态。"""
        if self.is_terminal:
            raise OAuthFlowError(f"Attempt {self.state_hint} is already {self.status.value}")
        self.status = status

    def fulfill(self, token_set: TokenSet) -> bool:
        """转为 FULFILLED。已经处于终止状态时不做任何事并返回 False。"""
        if self.is_terminal:
            return False
        self.status = AttemptStatus.FULFILLED
        self.token_set = token_set
        self._done.set()
        return True

    def reject(self, error: Exception) -> bool:
        """转为 REJECTED。已经处于终止状态时不做任何事并返回 False。"""
        if self.is_terminal:
            return False
        self.status = AttemptStatus.REJECTED
        self.error = error
        self._done.set()
        return True

    async def wait(self) -> None:
        """等待尝试进入终止状态。"""
        await self._done.wait()

    def result(self) -> TokenSet:
        """返回令牌，或抛出拒绝原因。"""
        if self.status is AttemptStatus.FULFILLED and self.token_set is not None:
            return self.token_set
        if self.status is AttemptStatus.REJECTED and self.error is not None:
            raise self.error
        raise OAuthFlowError(f"Attempt {self.state_hint} is still {self.status.value}")


class AttemptRegistry:
    """进行中的授权尝试注册表，以 state 为键。

    注册表是唯一的共享可变资源；所有解析路径都先检查尝试的终止标志，因此不需要加锁。
    """

    def __init__(self):
        self._attempts: dict[str, AuthorizationAttempt] = {}

    def register(self, attempt: AuthorizationAttempt) -> None:
        if attempt.state in self._attempts:
            raise OAuthFlowError("Duplicate authorization state")
        self._attempts[attempt.state] = attempt

    def get(self, state: str | None) -> AuthorizationAttempt | None:
        if not state:
            return None
        return self._attempts.get(state)

    def discard(self, state: str) -> AuthorizationAttempt | None:
        return self._attempts.pop(state, None)

    def __contains__(self, state: object) -> bool:
        return state in self._attempts

    def __len__(self) -> int:
        return len(self._attempts)

    def states(self) -> list[str]:
        return list(self._attempts)


def _first_param(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    return values[0] if values else None


class AuthorizationFlowController:
    """PKCE 授权流程控制器。

    负责生成 PKCE 材料、打开回调投递方式、把回调与发起请求的授权尝试关联起来，并完成授权码换取令牌。
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        redirect_handler: RedirectHandler = open_in_system_browser,
        surface_factory: SurfaceFactory | None = None,
        timeout: float = DEFAULT_AUTHORIZATION_TIMEOUT,
    ):
        """初始化流程控制器。

        参数：
            http_client: 访问令牌端点的 httpx 客户端。
            redirect_handler: 回环模式下把授权 URL 交给系统浏览器的处理器。
            surface_factory: 非回环重定向 URI 使用的内嵌浏览器界面工厂。
            timeout: 每个授权尝试从创建开始的最长等待时间（秒）。
        """
        self.http_client = http_client
        self.redirect_handler = redirect_handler
        self.surface_factory = surface_factory
        self.timeout = timeout
        self.attempts = AttemptRegistry()
        # 同一端口上的回环尝试共用一个监听器
        self.listeners = LoopbackListenerPool()

    def build_authorization_url(self, attempt: AuthorizationAttempt) -> str:
        """构造授权 URL。"""
        auth_params = {
            "response_type": "code",
            "client_id": attempt.client_credentials.client_id,
            "redirect_uri": attempt.redirect_uri,
            "state": attempt.state,
            "code_challenge": attempt.code_challenge,
            "code_challenge_method": "S256",
            # resource 参数（RFC 8707）把令牌绑定到该资源服务器
            "resource": attempt.resource,
        }
        if attempt.scopes:
            auth_params["scope"] = " ".join(attempt.scopes)

        auth_endpoint = str(attempt.auth_server_metadata.authorization_endpoint)
        separator = "&" if urlsplit(auth_endpoint).query else "?"
        return f"{auth_endpoint}{separator}{urlencode(auth_params)}"

    async def authorize(
        self,
        auth_server_metadata: OAuthMetadata,
        client_credentials: ClientCredentials,
        resource: str,
        scopes: list[str],
        redirect_uri: str,
    ) -> TokenSet:
        """执行完整的授权码 + PKCE 流程，返回令牌。

        该调用可能会等待数分钟的用户交互；失败时抛出 AuthorizationDenied、StateMismatch、
        UserCancelled、AuthorizationTimeout、CallbackListenerError 或 TokenExchangeFailed。
        """
        resource = canonicalize_resource_url(resource)

        if not client_credentials.valid_for(auth_server_metadata):
            raise NoClientIdentity(
                f"Client {client_credentials.client_id} was registered with {client_credentials.issuer}, "
                f"not {auth_server_metadata.issuer_url}"
            )

        attempt = AuthorizationAttempt.create(
            auth_server_metadata, client_credentials, resource, scopes, redirect_uri
        )
        delivery = create_delivery(
            redirect_uri, attempt.state, self.redirect_handler, self.surface_factory, self.listeners
        )
        # 在任何 I/O 之前注册，避免回调先于注册到达
        self.attempts.register(attempt)
        logger.info(
            f"Starting authorization for {resource} via {delivery.mode.value} (state {attempt.state_hint})"
        )

        try:
            with anyio.move_on_after(self.timeout):
                await self._run_attempt(attempt, delivery)

            if not attempt.is_terminal:
                self._reject(
                    attempt,
                    AuthorizationTimeout(f"No authorization callback within {self.timeout:g} seconds"),
                )
        except OAuthFlowError as e:
            # 例如回调监听器无法启动
            self._reject(attempt, e)
            raise
        finally:
            if not attempt.is_terminal:
                # 调用方取消了等待，清理注册表
                self._reject(attempt, UserCancelled("Authorization was abandoned by the caller"))

        return attempt.result()

    async def _run_attempt(self, attempt: AuthorizationAttempt, delivery: CallbackDelivery) -> None:
        # 打开授权页面之前就开始接受回调，界面可能在 open() 返回前就完成跳转
        attempt.advance(AttemptStatus.AWAITING_CALLBACK)
        async with delivery.open(self.build_authorization_url(attempt)):
            if attempt.is_terminal:
                return
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._pump_callbacks, attempt, delivery)
                await attempt.wait()
                tg.cancel_scope.cancel()

    async def _pump_callbacks(self, attempt: AuthorizationAttempt, delivery: CallbackDelivery) -> None:
        """把投递方式收到的回调交给状态机，直到尝试离开等待状态。"""
        while attempt.status is AttemptStatus.AWAITING_CALLBACK:
            try:
                callback_url = await delivery.wait_for_callback()
            except UserCancelled as e:
                self._reject(attempt, e)
                return
            await self._complete_attempt(attempt, callback_url)

    async def handle_callback(self, callback_url: str) -> None:
        """处理从控制器外部送达的回调（例如自定义 URI scheme 的处理器）。

        按回调中的 state 查找授权尝试；找不到时抛出 StateMismatch，且不会创建或修改任何尝试。
        """
        params = parse_qs(urlsplit(callback_url).query)
        attempt = self.attempts.get(_first_param(params, "state"))
        if attempt is None:
            logger.warning("Rejected authorization callback with unknown state")
            raise StateMismatch("Callback state does not match any in-flight authorization")
        await self._complete_attempt(attempt, callback_url)

    async def _complete_attempt(self, attempt: AuthorizationAttempt, callback_url: str) -> None:
        """回调处理（两种投递方式共用）。"""
        if attempt.status is not AttemptStatus.AWAITING_CALLBACK:
            # 已在换取令牌或已终止：state 只能被消费一次，之后的回调一律忽略
            logger.debug(f"Ignoring callback for attempt {attempt.state_hint} in status {attempt.status.value}")
            return

        params = parse_qs(urlsplit(callback_url).query)

        # 检查授权服务器返回的错误
        error = _first_param(params, "error")
        if error:
            self._reject(attempt, AuthorizationDenied(error, _first_param(params, "error_description")))
            return

        # 检查返回的 state 是否一致（防止 CSRF），必须在信任 code 之前完成
        returned_state = _first_param(params, "state")
        if returned_state is None or not secrets.compare_digest(returned_state, attempt.state):
            self._reject(attempt, StateMismatch("Callback state does not match the authorization request"))
            return

        code = _first_param(params, "code")
        if not code:
            self._reject(
                attempt, AuthorizationDenied("invalid_request", "Authorization callback did not include a code")
            )
            return

        attempt.advance(AttemptStatus.EXCHANGING)
        try:
            token_set = await exchange_authorization_code(
                self.http_client,
                attempt.auth_server_metadata,
                attempt.client_credentials,
                code=code,
                code_verifier=attempt.code_verifier,
                redirect_uri=attempt.redirect_uri,
                resource=attempt.resource,
                requested_scopes=attempt.scopes,
            )
        except TokenExchangeFailed as e:
            self._reject(attempt, e)
            return

        self._fulfill(attempt, token_set)

    def _fulfill(self, attempt: AuthorizationAttempt, token_set: TokenSet) -> None:
        if attempt.fulfill(token_set):
            self.attempts.discard(attempt.state)
            logger.info(f"Authorization for {attempt.resource} completed (state {attempt.state_hint})")

    def _reject(self, attempt: AuthorizationAttempt, error: Exception) -> None:
        if attempt.reject(error):
            self.attempts.discard(attempt.state)
            logger.warning(f"Authorization for {attempt.resource} rejected (state {attempt.state_hint}): {error}")
