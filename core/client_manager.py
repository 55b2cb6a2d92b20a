"""
HTTP 客户端管理模块

统一管理上游调用使用的 httpx.AsyncClient 连接池，按 host + proxy 维度复用客户端。
"""

from contextlib import asynccontextmanager
from urllib.parse import urlparse
from typing import Dict, Optional

import httpx

from core.utils import get_proxy


class ClientManager:
    """
    HTTP 客户端管理器

    - 按 host + proxy 维度复用 httpx.AsyncClient
    - 通过 init() 注入默认配置（headers/verify/follow_redirects 等）
    - transport 仅用于测试注入 httpx.MockTransport
    """

    def __init__(
        self,
        pool_size: int = 200,
        max_keepalive_connections: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.pool_size = pool_size
        self.max_keepalive_connections = max_keepalive_connections
        self.transport = transport
        self.clients: Dict[str, httpx.AsyncClient] = {}
        self.default_config: dict = {}

    async def init(self, default_config: dict) -> None:
        """设置默认 client 配置"""
        self.default_config = default_config

    def _client_key(self, base_url: str, proxy: Optional[str]) -> str:
        host = urlparse(base_url).netloc
        if proxy:
            return f"{host}_{proxy.replace('socks5h://', 'socks5://')}"
        return host

    @asynccontextmanager
    async def get_client(self, base_url: str, proxy: Optional[str] = None):
        """获取或创建 base_url 的 host + proxy 对应的 AsyncClient"""
        client_key = self._client_key(base_url, proxy)

        if client_key not in self.clients:
            timeout = httpx.Timeout(
                connect=15.0,
                read=None,  # 由调用方按请求设置
                write=60.0,
                pool=10.0,
            )
            limits = httpx.Limits(
                max_connections=self.pool_size,
                max_keepalive_connections=self.max_keepalive_connections,
            )

            client_config = {
                **self.default_config,
                "timeout": timeout,
                "limits": limits,
            }
            if self.transport is not None:
                client_config["transport"] = self.transport
            else:
                client_config = get_proxy(proxy, client_config)

            self.clients[client_key] = httpx.AsyncClient(**client_config)

        # 连接池生命周期由 close() 统一管理，这里不关闭
        yield self.clients[client_key]

    async def close(self) -> None:
        """关闭所有已创建的 AsyncClient，并清空连接池"""
        for client in self.clients.values():
            await client.aclose()
        self.clients.clear()
