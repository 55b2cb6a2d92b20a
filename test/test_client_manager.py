import os
import sys

import httpx
import pytest
from httpx_socks import AsyncProxyTransport

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.client_manager import ClientManager
from core.utils import get_proxy


def test_socks5_proxy_uses_socks_transport():
    config = get_proxy("socks5h://127.0.0.1:1080", {"http2": True})

    assert isinstance(config["transport"], AsyncProxyTransport)
    assert "proxy" not in config
    assert config["http2"] is True


def test_http_proxy_is_passed_to_client():
    config = get_proxy("http://proxy.local:8080", {})

    assert config == {"proxy": "http://proxy.local:8080"}


def test_no_proxy_keeps_config():
    assert get_proxy(None, {"verify": True}) == {"verify": True}


@pytest.mark.asyncio
async def test_clients_are_pooled_per_host_and_proxy():
    manager = ClientManager()
    try:
        async with manager.get_client("https://dashscope.test/api") as direct:
            pass
        async with manager.get_client("https://dashscope.test/other") as direct_again:
            pass
        async with manager.get_client("https://dashscope.test", proxy="socks5h://127.0.0.1:1080") as proxied:
            pass
        async with manager.get_client("https://dashscope.test", proxy="socks5://127.0.0.1:1080") as proxied_again:
            pass
        keys = set(manager.clients)
    finally:
        await manager.close()

    assert direct is direct_again
    assert proxied is proxied_again
    assert proxied is not direct
    assert isinstance(proxied, httpx.AsyncClient)
    assert keys == {"dashscope.test", "dashscope.test_socks5://127.0.0.1:1080"}
    assert manager.clients == {}
