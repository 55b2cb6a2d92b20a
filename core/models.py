"""
数据模型

- ImageGenerationRequest: 兼容 OpenAI Images API 的请求体
- ChannelType / APIType: 上游渠道类型与适配器族
- Token: 计费用的令牌快照
- RelayMeta: 单次请求在流水线各组件之间共享的上下文
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from time import time
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageGenerationRequest(BaseModel):
    """
    图像生成请求体。

    未建模的字段（各厂商的扩展参数）通过 extra="allow" 原样保留，
    重新序列化时会一并带上。
    """

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model: str = ""
    prompt: Optional[str] = None
    n: int = 0
    size: str = ""
    quality: Optional[str] = None
    response_format: Optional[str] = None
    style: Optional[str] = None
    user: Optional[str] = None

    def to_upstream_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class ChannelType(IntEnum):
    UNKNOWN = 0
    OPENAI = 1
    AZURE = 3
    CUSTOM = 8
    ANTHROPIC = 14
    BAIDU = 15
    ZHIPU = 16
    ALI = 17

    @classmethod
    def parse(cls, value) -> "ChannelType":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.UNKNOWN


class APIType(IntEnum):
    OPENAI = 0
    ANTHROPIC = 1
    BAIDU = 3
    ZHIPU = 4
    ALI = 5


# 渠道类型 -> 适配器族；未列出的渠道按 OpenAI 兼容处理
_CHANNEL_API_TYPES: Dict[ChannelType, APIType] = {
    ChannelType.ANTHROPIC: APIType.ANTHROPIC,
    ChannelType.BAIDU: APIType.BAIDU,
    ChannelType.ZHIPU: APIType.ZHIPU,
    ChannelType.ALI: APIType.ALI,
}


def channel_type_to_api_type(channel_type: ChannelType) -> APIType:
    return _CHANNEL_API_TYPES.get(channel_type, APIType.OPENAI)


@dataclass
class Token:
    id: int
    name: str = ""
    user_id: int = 0
    remain_quota: int = 0
    unlimited_quota: bool = False
    billing_enabled: bool = False


@dataclass
class RelayMeta:
    """单次请求的中继上下文，请求结束即丢弃"""

    user_id: int
    token_id: int
    channel_id: int
    channel_type: ChannelType = ChannelType.OPENAI
    api_type: APIType = APIType.OPENAI
    token_name: str = ""
    channel_name: str = ""
    group: str = "default"
    base_url: str = ""
    api_key: str = ""
    api_version: str = ""
    proxy: str = ""
    model_mapping: Dict[str, str] = field(default_factory=dict)
    response_format: str = ""
    origin_model_name: str = ""
    actual_model_name: str = ""
    start_time: float = field(default_factory=time)


class ImageObject(BaseModel):
    url: Optional[str] = None
    b64_json: Optional[str] = None
    revised_prompt: Optional[str] = None


class ImageGenerationResponse(BaseModel):
    """OpenAI 格式的图像生成响应，非 OpenAI 渠道的结果会被转换成这个形状"""

    created: int = Field(default_factory=lambda: int(time()))
    data: list[ImageObject] = Field(default_factory=list)
