from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from starlette.responses import Response

from ..models import APIType, ImageGenerationRequest, RelayMeta


# Type aliases for better readability
# - RequestAdapter: build (url, headers) for the upstream image call
# - ImageRequestConverter: transcode the canonical request into the provider's native body
# - ResponseAdapter: turn the upstream response into the client response (raises RelayError on failure)
RequestAdapter = Callable[
    [httpx.AsyncClient, RelayMeta],
    Awaitable[Tuple[str, Dict[str, str]]],
]

ImageRequestConverter = Callable[[ImageGenerationRequest], Any]

ResponseAdapter = Callable[
    [httpx.AsyncClient, httpx.Response, RelayMeta],
    Awaitable[Response],
]


@dataclass
class ChannelDefinition:
    """
    图像渠道适配器定义:
    - api_type: 适配器族, 注册表的 key
    - type_name: 渠道类型名(如 "openai" / "ali" 等, 用于日志/展示)
    - default_base_url: 渠道未配置 base_url 时使用
    - request_adapter: 构造上游请求的 url 和 headers
    - convert_image_request: 把 OpenAI 格式请求转换为厂商原生格式 (OpenAI 兼容渠道为 None)
    - response_adapter: 处理上游响应并生成返回给客户端的响应
    """

    api_type: APIType
    type_name: str
    default_base_url: Optional[str] = None
    description: Optional[str] = None
    request_adapter: Optional[RequestAdapter] = None
    convert_image_request: Optional[ImageRequestConverter] = None
    response_adapter: Optional[ResponseAdapter] = None

    def base_url(self, meta: RelayMeta) -> str:
        return (meta.base_url or self.default_base_url or "").rstrip("/")

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典，用于 API 响应"""
        return {
            "api_type": int(self.api_type),
            "type_name": self.type_name,
            "default_base_url": self.default_base_url,
            "description": self.description,
            "has_image_converter": self.convert_image_request is not None,
        }


# 全局注册表: key 为 APIType, value 为渠道定义
_REGISTRY: Dict[APIType, ChannelDefinition] = {}


def register_channel(
    api_type: APIType,
    type_name: str,
    default_base_url: Optional[str] = None,
    description: Optional[str] = None,
    request_adapter: Optional[RequestAdapter] = None,
    convert_image_request: Optional[ImageRequestConverter] = None,
    response_adapter: Optional[ResponseAdapter] = None,
    overwrite: bool = False,
) -> None:
    """
    注册一个图像渠道适配器, 供 core.handler 按 APIType 调度。

    Args:
        api_type: 适配器族
        type_name: 渠道类型名
        default_base_url: 默认的 Base URL
        description: 渠道描述
        request_adapter: 请求适配器
        convert_image_request: 请求体转换函数
        response_adapter: 响应适配器
        overwrite: 是否覆盖已存在的渠道（测试替换假适配器时使用）
    """
    if api_type in _REGISTRY and not overwrite:
        raise ValueError(f"Channel with api_type={api_type!r} already registered")

    _REGISTRY[api_type] = ChannelDefinition(
        api_type=api_type,
        type_name=type_name,
        default_base_url=default_base_url,
        description=description,
        request_adapter=request_adapter,
        convert_image_request=convert_image_request,
        response_adapter=response_adapter,
    )


def get_channel(api_type: APIType) -> Optional[ChannelDefinition]:
    """
    按 APIType 获取渠道定义, 若未注册则返回 None。
    """
    return _REGISTRY.get(api_type)


def list_channels() -> List[ChannelDefinition]:
    return list(_REGISTRY.values())
