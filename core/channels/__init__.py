"""
渠道注册模块

导入并注册所有图像渠道适配器。
注册表按 APIType 索引，未注册的 APIType（如 Anthropic）没有图像能力。
"""

from .registry import (
    ChannelDefinition,
    RequestAdapter,
    ImageRequestConverter,
    ResponseAdapter,
    register_channel,
    get_channel,
    list_channels,
)

# 导入各渠道模块以触发注册
from . import openai_channel
from . import ali_channel
from . import baidu_channel
from . import zhipu_channel

# 调用各渠道的 register() 函数
openai_channel.register()
ali_channel.register()
baidu_channel.register()
zhipu_channel.register()

__all__ = [
    # 类型定义
    "ChannelDefinition",
    "RequestAdapter",
    "ImageRequestConverter",
    "ResponseAdapter",
    # 注册 API
    "register_channel",
    "get_channel",
    "list_channels",
]
