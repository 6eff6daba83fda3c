import argparse
import logging
import sys
from functools import partial

import anyio

from mcp_oauth.client.auth import AuthorizationFlowController
from mcp_oauth.client.config import OAuthClientConfig
from mcp_oauth.client.discovery import discover
from mcp_oauth.client.registration import obtain_client_credentials
from mcp_oauth.shared._httpx_utils import create_mcp_http_client
from mcp_oauth.shared.auth import TokenSet
from mcp_oauth.shared.exceptions import AuthorizationNotRequired, OAuthFlowError

# 设置日志记录器，日志等级为 INFO
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("client")


def _mask(secret: str | None) -> str:
    if not secret:
        return "-"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


def print_token_summary(resource: str, tokens: TokenSet) -> None:
    print(f"Resource:      {resource}")
    print(f"Token type:    {tokens.token_type}")
    print(f"Access token:  {_mask(tokens.access_token)}")
    print(f"Refresh token: {_mask(tokens.refresh_token)}")
    print(f"Expires at:    {tokens.expires_at if tokens.expires_at is not None else 'never'}")
    print(f"Scope:         {tokens.scope or '-'}")


# 定义主入口异步函数：发现 → 客户端身份 → 授权
async def main(server_url: str, config: OAuthClientConfig) -> int:
    async with create_mcp_http_client() as http_client:
        try:
            result = await discover(server_url, http_client, client_name=config.client_name)
        except AuthorizationNotRequired:
            logger.info(f"{server_url} does not require authorization")
            return 0

        credentials = await obtain_client_credentials(
            result.auth_server_metadata,
            [config.redirect_uri],
            http_client,
            static_credentials=config.static_credentials(),
            client_name=config.client_name,
            scope=" ".join(config.scopes) or None,
        )

        controller = AuthorizationFlowController(http_client, timeout=config.authorization_timeout)
        tokens = await controller.authorize(
            result.auth_server_metadata,
            credentials,
            result.resource,
            config.scopes,
            config.redirect_uri,
        )

    print_token_summary(result.resource, tokens)
    return 0


async def run(server_url: str, config: OAuthClientConfig) -> int:
    try:
        return await main(server_url, config)
    except OAuthFlowError as e:
        logger.error(f"Authorization failed: {e}")
        return 1


# 命令行接口函数
def cli():
    parser = argparse.ArgumentParser(description="对 MCP 资源服务器执行 OAuth 2.1 授权")
    parser.add_argument("server_url", help="资源服务器（MCP 服务端）的 URL")
    parser.add_argument("--env-file", help="读取配置的 .env 文件", default=None)
    parser.add_argument("--redirect-uri", help="覆盖 MCP_OAUTH_REDIRECT_URI", default=None)
    parser.add_argument("--scope", action="append", help="请求的 scope，可多次使用", default=[])
    parser.add_argument("--client-id", help="静态配置的 client_id", default=None)

    args = parser.parse_args()  # 解析命令行参数
    config = OAuthClientConfig.from_env(args.env_file)
    if args.redirect_uri:
        config.redirect_uri = args.redirect_uri
    if args.scope:
        config.scopes = args.scope
    if args.client_id:
        config.client_id = args.client_id

    # 使用 anyio 启动主函数（asyncio 后端）
    sys.exit(anyio.run(partial(run, args.server_url, config)))


if __name__ == "__main__":
    cli()  # 启动命令行接口
