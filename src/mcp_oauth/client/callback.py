"""
Authorization callback delivery.

Two mutually exclusive ways to receive the authorization redirect, behind one interface:

- LoopbackDelivery: an HTTP listener on the redirect URI's loopback port, shared by all
  attempts on that port and routing callbacks by `state`, with the authorization URL
  opened in the system browser.
- BrowserSurfaceDelivery: an embedded browser surface provided by the UI layer,
  whose navigation events are watched for the redirect URI.

授权回调的两种投递方式：本地回环 HTTP 监听器，或 UI 层提供的内嵌浏览器界面。
两者都实现 CallbackDelivery 接口，根据重定向 URI 在创建授权尝试时选定其一。
"""

import abc
import html
import logging
import socket
import threading
import webbrowser
from collections.abc import AsyncIterator, Awaitable, Callable
from concurrent.futures import CancelledError
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from enum import Enum
from functools import partial
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

import anyio
import anyio.to_thread
from anyio.from_thread import BlockingPortal

from mcp_oauth.shared.exceptions import CallbackListenerError, UserCancelled

logger = logging.getLogger(__name__)

# 回环地址集合，重定向 URI 指向这些主机时使用本地 HTTP 监听器
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

# 监听线程每次等待请求的超时时间（秒），决定了关闭监听器的响应速度
_POLL_INTERVAL = 0.1

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization complete</title></head>
<body>
    <h1>Authorization Successful!</h1>
    <p>You can close this window and return to the application.</p>
    <script>setTimeout(() => window.close(), 2000);</script>
</body>
</html>
"""

ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authorization failed</title></head>
<body>
    <h1>Authorization Failed</h1>
    <p>Error: {error}</p>
    <p>You can close this window and return to the application.</p>
</body>
</html>
"""

# 重定向处理器：接收授权 URL，负责把它交给浏览器
RedirectHandler = Callable[[str], Awaitable[None]]

# 监听线程把回调请求路径交给某个授权尝试
Route = Callable[[str], None]


class DeliveryMode(str, Enum):
    """授权回调的投递方式。"""

    LOOPBACK_HTTP = "loopback-http"
    EXTERNAL_BROWSER = "external-browser"


def select_delivery_mode(redirect_uri: str) -> DeliveryMode:
    """根据重定向 URI 选择投递方式：http 回环地址使用本地监听器，其余使用浏览器界面。"""
    parsed = urlsplit(redirect_uri)
    if parsed.scheme.lower() == "http" and (parsed.hostname or "") in LOOPBACK_HOSTS:
        return DeliveryMode.LOOPBACK_HTTP
    return DeliveryMode.EXTERNAL_BROWSER


async def open_in_system_browser(authorization_url: str) -> None:
    """默认的跳转处理器，在系统默认浏览器中打开授权地址。"""
    logger.info(f"Opening system browser for authorization: {authorization_url}")
    await anyio.to_thread.run_sync(webbrowser.open, authorization_url)


class BrowserSurface(Protocol):
    """UI 层提供的内嵌浏览器界面。

    open() 在给定 URL 上打开界面。之后每次导航（包括重定向）都要调用 on_navigate(url)，
    其返回 True 时界面必须停止这次导航；用户关闭界面时调用 on_closed()。
    两个回调都要在事件循环线程中调用。
    """

    async def open(self, url: str, on_navigate: Callable[[str], bool], on_closed: Callable[[], None]) -> None: ...

    async def close(self) -> None: ...


SurfaceFactory = Callable[[], BrowserSurface]


class CallbackDelivery(abc.ABC):
    """回调投递方式的公共接口。"""

    mode: DeliveryMode

    def __init__(self, redirect_uri: str):
        self.redirect_uri = redirect_uri
        # 每种投递方式最多投递一个回调 URL，缓冲区大小为 1
        self._send_stream, self._receive_stream = anyio.create_memory_object_stream[str](1)

    @abc.abstractmethod
    def open(self, authorization_url: str) -> AbstractAsyncContextManager[None]:
        """打开监听器或界面，并把授权 URL 交给用户；作为异步上下文管理器使用，退出时关闭。"""

    async def wait_for_callback(self) -> str:
        """等待回调到达，返回完整的回调 URL。投递通道在回调前关闭时抛出 UserCancelled。"""
        try:
            return await self._receive_stream.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise UserCancelled("Authorization was cancelled before the callback arrived") from None

    def _deliver(self, callback_url: str) -> None:
        """在事件循环线程中投递回调 URL。"""
        try:
            self._send_stream.send_nowait(callback_url)
        except (anyio.WouldBlock, anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Dropped authorization callback: delivery already completed")


class _CallbackHTTPServer(HTTPServer):
    """回环端口上的 HTTP 服务器，按 state 把回调交给对应的授权尝试。"""

    def __init__(self, host: str, port: int, callback_path: str, take_route: Callable[[str | None], Route | None]):
        if ":" in host:
            self.address_family = socket.AF_INET6
        self.callback_path = callback_path
        self.take_route = take_route
        self.stopped = False
        super().__init__((host, port), _CallbackRequestHandler)
        self.timeout = _POLL_INTERVAL


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    """处理 OAuth 回调中的 GET 请求。"""

    server: _CallbackHTTPServer

    def _respond(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        parsed = urlsplit(self.path)

        # 重定向路径之外的请求一律 404
        if parsed.path != self.server.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        query_params = parse_qs(parsed.query)
        state = query_params.get("state", [None])[0]

        # 每个 state 只会被路由一次
        route = self.server.take_route(state)
        if route is None:
            logger.warning("Loopback callback with unknown or already used state")
            self._respond(400, ERROR_PAGE.format(error="unknown or expired authorization request").encode())
            return

        if "error" in query_params:
            self._respond(400, ERROR_PAGE.format(error=html.escape(query_params["error"][0])).encode())
        else:
            self._respond(200, SUCCESS_PAGE.encode())

        route(self.path)

    def log_message(self, format, *args):
        """重写日志方法，禁止默认打印日志到终端。"""
        pass


class LoopbackListener:
    """一个回环端口上的共享监听器。

    同一端口上的所有授权尝试共用一个监听线程，回调按 state 分发。
    """

    def __init__(self, host: str, port: int, callback_path: str):
        self.host = host
        self.port = port
        self.callback_path = callback_path
        self.users = 0
        self._routes: dict[str, Route] = {}
        self._routes_lock = threading.Lock()
        # 端口被占用时这里抛出 OSError
        self.server = _CallbackHTTPServer(host, port, callback_path, self._take_route)
        self._thread = threading.Thread(target=self._serve, name=f"oauth-callback-{port}", daemon=True)

    @property
    def key(self) -> tuple[str, int]:
        return self.host, self.port

    def start(self) -> None:
        self._thread.start()
        logger.info(f"Callback listener started on {self.host}:{self.port}{self.callback_path}")

    def subscribe(self, state: str, route: Route) -> None:
        with self._routes_lock:
            self._routes[state] = route

    def unsubscribe(self, state: str) -> None:
        with self._routes_lock:
            self._routes.pop(state, None)

    def _take_route(self, state: str | None) -> Route | None:
        if not state:
            return None
        with self._routes_lock:
            return self._routes.pop(state, None)

    def _serve(self) -> None:
        while not self.server.stopped:
            self.server.handle_request()

    async def aclose(self) -> None:
        # 停止监听线程（最多等待一个轮询周期）
        self.server.stopped = True
        await anyio.to_thread.run_sync(self._thread.join)
        self.server.server_close()
        logger.debug(f"Callback listener on port {self.port} closed")


class LoopbackListenerPool:
    """按 (host, port) 共享回环监听器；最后一个使用者释放时关闭监听器。"""

    def __init__(self):
        self._listeners: dict[tuple[str, int], LoopbackListener] = {}
        self._closing: dict[tuple[str, int], anyio.Event] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._listeners

    async def acquire(self, host: str, port: int, callback_path: str) -> LoopbackListener:
        key = (host, port)
        # 等待同一端口上正在关闭的监听器释放端口
        while key in self._closing:
            await self._closing[key].wait()

        listener = self._listeners.get(key)
        if listener is None:
            try:
                listener = LoopbackListener(host, port, callback_path)
            except OSError as e:
                raise CallbackListenerError(
                    f"Cannot listen for the authorization callback on {host}:{port}: {e}",
                    endpoint=f"{host}:{port}",
                ) from e
            listener.start()
            self._listeners[key] = listener
        elif listener.callback_path != callback_path:
            raise CallbackListenerError(
                f"Port {port} already serves callbacks on {listener.callback_path}, not {callback_path}",
                endpoint=f"{host}:{port}",
            )

        listener.users += 1
        return listener

    async def release(self, listener: LoopbackListener) -> None:
        listener.users -= 1
        if listener.users > 0:
            return

        key = listener.key
        del self._listeners[key]
        closing = self._closing[key] = anyio.Event()
        try:
            with anyio.CancelScope(shield=True):
                await listener.aclose()
        finally:
            del self._closing[key]
            closing.set()


class LoopbackDelivery(CallbackDelivery):
    """通过本地回环 HTTP 监听器接收回调。"""

    mode = DeliveryMode.LOOPBACK_HTTP

    def __init__(
        self,
        redirect_uri: str,
        state: str,
        redirect_handler: RedirectHandler = open_in_system_browser,
        listener_pool: LoopbackListenerPool | None = None,
    ):
        super().__init__(redirect_uri)
        parsed = urlsplit(redirect_uri)
        self.state = state
        self.host = parsed.hostname or "127.0.0.1"
        self.port = parsed.port or 80
        self.callback_path = parsed.path or "/"
        self._origin = f"{parsed.scheme}://{parsed.netloc}"
        self.redirect_handler = redirect_handler
        self.listener_pool = listener_pool or LoopbackListenerPool()

    def _route_from_thread(self, portal: BlockingPortal, request_path: str) -> None:
        # 在监听线程中被调用，通过 portal 切回事件循环投递
        try:
            portal.call(self._deliver, f"{self._origin}{request_path}")
        except (RuntimeError, CancelledError):
            logger.debug("Dropped authorization callback: attempt already finished")

    @asynccontextmanager
    async def open(self, authorization_url: str) -> AsyncIterator[None]:
        listener = await self.listener_pool.acquire(self.host, self.port, self.callback_path)
        try:
            async with BlockingPortal() as portal:
                listener.subscribe(self.state, partial(self._route_from_thread, portal))
                try:
                    await self.redirect_handler(authorization_url)
                    yield
                finally:
                    listener.unsubscribe(self.state)
        finally:
            self._send_stream.close()
            await self.listener_pool.release(listener)


class BrowserSurfaceDelivery(CallbackDelivery):
    """通过 UI 层提供的内嵌浏览器界面接收回调。"""

    mode = DeliveryMode.EXTERNAL_BROWSER

    def __init__(self, redirect_uri: str, surface_factory: SurfaceFactory):
        super().__init__(redirect_uri)
        self.surface_factory = surface_factory
        self._matched = False
        self._closing = False

    def _on_navigate(self, url: str) -> bool:
        """检查导航地址是否为重定向 URI，是则投递回调并要求界面停止导航。"""
        if self._matched or not url.startswith(self.redirect_uri):
            return False
        self._matched = True
        logger.debug("Redirect detected in browser surface")
        self._deliver(url)
        return True

    def _on_closed(self) -> None:
        if self._matched or self._closing:
            return
        # 用户在回调到达之前关闭了界面
        logger.info("Authorization surface closed by user")
        self._send_stream.close()

    @asynccontextmanager
    async def open(self, authorization_url: str) -> AsyncIterator[None]:
        surface = self.surface_factory()
        await surface.open(authorization_url, self._on_navigate, self._on_closed)
        try:
            yield
        finally:
            self._closing = True
            with anyio.CancelScope(shield=True):
                await surface.close()
            self._send_stream.close()


def create_delivery(
    redirect_uri: str,
    state: str,
    redirect_handler: RedirectHandler = open_in_system_browser,
    surface_factory: SurfaceFactory | None = None,
    listener_pool: LoopbackListenerPool | None = None,
) -> CallbackDelivery:
    """根据重定向 URI 创建对应的投递方式。

    回环模式下，传入同一个 listener_pool 的授权尝试共用同一端口上的监听器。
    """
    mode = select_delivery_mode(redirect_uri)
    if mode is DeliveryMode.LOOPBACK_HTTP:
        return LoopbackDelivery(redirect_uri, state, redirect_handler, listener_pool)

    if surface_factory is None:
        raise ValueError(f"Redirect URI {redirect_uri} requires a browser surface, but none is configured")
    return BrowserSurfaceDelivery(redirect_uri, surface_factory)
