"""
上游请求模块

所有渠道共用的 DoRequest：由渠道的 request_adapter 构造 url/headers，
以 POST 发送已经选定的请求体。传输层错误统一转换为 do_request_failed。
"""

import httpx

from .channels.registry import ChannelDefinition
from .error_response import RelayError, error_wrapper
from .log_config import logger
from .models import RelayMeta


async def do_request(
    client: httpx.AsyncClient,
    channel: ChannelDefinition,
    meta: RelayMeta,
    body: bytes,
    timeout: float,
) -> httpx.Response:
    """
    发送上游请求，不做重试。

    Returns:
        httpx.Response: 已读取完整响应体的上游响应（任意状态码）

    Raises:
        RelayError: 构造请求或网络传输失败时 (do_request_failed, 500)
    """
    if channel.request_adapter is None:
        raise RelayError(f"channel {channel.type_name} has no request adapter", "do_request_failed", 500)

    try:
        url, headers = await channel.request_adapter(client, meta)
        logger.info(
            "channel: %-8s model: %-22s url: %s",
            channel.type_name,
            meta.actual_model_name,
            url,
        )
        response = await client.post(url, headers=headers, content=body, timeout=timeout)
    except RelayError:
        raise
    except httpx.HTTPError as e:
        logger.error("DoRequest failed: %s", e)
        raise error_wrapper(e, "do_request_failed", 500) from e
    except Exception as e:
        logger.error("build request for %s failed: %s", channel.type_name, e)
        raise error_wrapper(e, "do_request_failed", 500) from e

    return response
