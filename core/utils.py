from urllib.parse import urlparse

from httpx_socks import AsyncProxyTransport


def safe_get(data, *keys, default=None):
    for key in keys:
        try:
            if isinstance(data, (dict, list)):
                data = data[key]
            elif isinstance(key, str) and hasattr(data, key):
                data = getattr(data, key)
            else:
                data = data.get(key)
        except (KeyError, IndexError, AttributeError, TypeError):
            return default
    if not data:
        return default
    return data


def get_proxy(proxy, client_config=None):
    """把代理地址写入 httpx.AsyncClient 的构造参数，socks5 走专用 transport"""
    client_config = dict(client_config or {})
    if proxy:
        parsed = urlparse(proxy)
        scheme = parsed.scheme.rstrip('h')

        if scheme == 'socks5':
            proxy = proxy.replace('socks5h://', 'socks5://')
            client_config["transport"] = AsyncProxyTransport.from_url(proxy)
        else:
            client_config["proxy"] = proxy
    return client_config

