"""
请求解码

把原始请求体解析为 ImageGenerationRequest，补齐默认值，
并通过渠道的模型映射得到实际上游模型名。
"""

import json
from typing import Dict, Optional, Tuple

from pydantic import ValidationError

from .error_response import RelayError, error_wrapper
from .image_constants import DEFAULT_IMAGE_SIZE, default_image_model
from .log_config import logger
from .models import ImageGenerationRequest, RelayMeta


def get_mapped_model_name(model_name: str, model_mapping: Optional[Dict[str, str]]) -> Tuple[str, bool]:
    """返回 (实际模型名, 是否发生映射)；映射值为空时视为未映射"""
    if not model_mapping:
        return model_name, False
    mapped = model_mapping.get(model_name)
    if mapped:
        return mapped, True
    return model_name, False


def parse_model_mapping(raw) -> Dict[str, str]:
    """渠道表里的 model_mapping 以 JSON 字符串保存，也兼容直接传入 dict"""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error("invalid model mapping %r: %s", raw, e)
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def get_image_request(body: bytes, meta: RelayMeta) -> ImageGenerationRequest:
    """
    解析请求体并按渠道补默认值。

    解析失败或缺少 prompt 时抛出 RelayError(invalid_image_request, 400)。
    """
    try:
        data = json.loads(body or b"")
    except (TypeError, ValueError) as e:
        raise error_wrapper(e, "invalid_image_request", 400) from e
    if not isinstance(data, dict):
        raise RelayError("request body must be a JSON object", "invalid_image_request", 400)

    try:
        image_request = ImageGenerationRequest.model_validate(data)
    except ValidationError as e:
        raise error_wrapper(e, "invalid_image_request", 400) from e

    if not image_request.prompt:
        raise RelayError("prompt is required", "invalid_image_request", 400)

    if image_request.n == 0:
        image_request.n = 1
    if not image_request.size:
        image_request.size = DEFAULT_IMAGE_SIZE
    if not image_request.model:
        image_request.model = default_image_model(meta.channel_type)

    return image_request


def decode_image_request(body: bytes, meta: RelayMeta) -> Tuple[ImageGenerationRequest, bool]:
    """解析 + 模型映射，记录原始与实际模型名到 meta，返回 (请求, 是否映射)"""
    image_request = get_image_request(body, meta)

    meta.origin_model_name = image_request.model
    image_request.model, is_model_mapped = get_mapped_model_name(image_request.model, meta.model_mapping)
    meta.actual_model_name = image_request.model

    return image_request, is_model_mapped
