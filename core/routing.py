"""
渠道选择模块

按用户分组 + 请求模型挑选渠道：只考虑启用的渠道，取最高优先级，同优先级随机。
选中的渠道与令牌信息一起组装成 RelayMeta，交给 ImageRelayHandler。
"""

import json
import random
from typing import Iterable, List, Optional

from sqlalchemy import select

from db import Channel as ChannelRow

from core.auth import AuthContext
from core.decoder import parse_model_mapping
from core.error_response import RelayError
from core.image_constants import default_image_model
from core.log_config import logger
from core.models import ChannelType, RelayMeta, channel_type_to_api_type

CHANNEL_STATUS_ENABLED = 1


def _split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def peek_model_name(body: bytes) -> str:
    """
    分发前只需要模型名：未指定模型或请求体解析失败时返回空串，
    真正的解析错误留给解码阶段报告。
    """
    try:
        data = json.loads(body or b"")
    except (TypeError, ValueError):
        return ""
    if isinstance(data, dict) and isinstance(data.get("model"), str):
        return data["model"]
    return ""


def _channel_serves(channel, model: str) -> bool:
    # 未指定模型时按渠道类型的默认图像模型匹配，与解码阶段的默认值一致
    model = model or default_image_model(ChannelType.parse(channel.type))
    return model in _split_csv(channel.models)


def pick_channel(channels: Iterable, group: str, model: str):
    """
    从候选渠道中选出一个：
    - 状态为启用
    - group 字段（逗号分隔）包含用户分组
    - models 字段（逗号分隔）包含请求模型；未指定模型时取该渠道类型的默认模型
    最高优先级中随机取一个，没有候选时返回 None。
    """
    candidates = [
        channel for channel in channels
        if channel.status == CHANNEL_STATUS_ENABLED
        and group in _split_csv(channel.group)
        and _channel_serves(channel, model)
    ]
    if not candidates:
        return None

    top_priority = max(channel.priority or 0 for channel in candidates)
    top = [channel for channel in candidates if (channel.priority or 0) == top_priority]
    return random.choice(top)


async def select_channel(session_factory, group: str, model: str):
    async with session_factory() as session:
        result = await session.execute(
            select(ChannelRow).where(ChannelRow.status == CHANNEL_STATUS_ENABLED)
        )
        channels = result.scalars().all()

    channel = pick_channel(channels, group, model)
    if channel is None:
        model = model or "<default>"
        logger.warning("no available channel for group %s model %s", group, model)
        raise RelayError(
            f"no available channel for model {model} under group {group}",
            "no_available_channel",
            503,
        )
    return channel


def build_relay_meta(auth: AuthContext, channel) -> RelayMeta:
    channel_type = ChannelType.parse(channel.type)
    return RelayMeta(
        user_id=auth.user_id,
        token_id=auth.token_id,
        token_name=auth.token_name,
        group=auth.group,
        channel_id=channel.id,
        channel_name=channel.name or "",
        channel_type=channel_type,
        api_type=channel_type_to_api_type(channel_type),
        base_url=channel.base_url or "",
        api_key=channel.key or "",
        api_version=channel.other or "",
        proxy=channel.proxy or "",
        model_mapping=parse_model_mapping(channel.model_mapping),
    )
