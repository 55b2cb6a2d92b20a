"""
图像模型能力表与请求校验

默认表可被 api.yaml 的 image 段或选项表覆盖，运行时以 PricingSnapshot 中的副本为准。
"""

from typing import Dict, FrozenSet, Mapping, Tuple

from .error_response import RelayError
from .models import ChannelType, ImageGenerationRequest


# model -> size -> 单张成本倍率
DEFAULT_IMAGE_SIZE_RATIOS: Dict[str, Dict[str, float]] = {
    "dall-e-2": {
        "256x256": 1,
        "512x512": 1.125,
        "1024x1024": 1.25,
    },
    "dall-e-3": {
        "1024x1024": 1,
        "1024x1792": 2,
        "1792x1024": 2,
    },
    "ali-stable-diffusion-xl": {
        "512x1024": 1,
        "1024x768": 1,
        "1024x1024": 1,
        "576x1024": 1,
        "1024x576": 1,
    },
    "wanx-v1": {
        "1024x1024": 1,
        "720x1280": 1,
        "1280x720": 1,
    },
    "sd_xl": {
        "768x768": 1,
        "768x1024": 1,
        "1024x768": 1,
        "576x1024": 1,
        "1024x576": 1,
        "1024x1024": 1,
    },
    "cogview-3": {
        "1024x1024": 1,
        "768x1344": 1,
        "864x1152": 1,
        "1344x768": 1,
        "1152x864": 1,
        "1440x720": 1,
        "720x1440": 1,
    },
}

# model -> (min_n, max_n)
DEFAULT_IMAGE_GENERATION_AMOUNTS: Dict[str, Tuple[int, int]] = {
    "dall-e-2": (1, 10),
    "dall-e-3": (1, 1),
    "ali-stable-diffusion-xl": (1, 4),
    "wanx-v1": (1, 4),
    "sd_xl": (1, 4),
    "cogview-3": (1, 1),
}

DEFAULT_IMAGE_PROMPT_LENGTH_LIMITS: Dict[str, int] = {
    "dall-e-2": 1000,
    "dall-e-3": 4000,
    "ali-stable-diffusion-xl": 4000,
    "wanx-v1": 4000,
    "sd_xl": 1024,
    "cogview-3": 833,
}

DEFAULT_IMAGE_QUALITIES: Dict[str, FrozenSet[str]] = {
    "dall-e-2": frozenset({"standard"}),
    "dall-e-3": frozenset({"standard", "hd"}),
    "ali-stable-diffusion-xl": frozenset({"standard"}),
    "wanx-v1": frozenset({"standard"}),
    "sd_xl": frozenset({"standard"}),
    "cogview-3": frozenset({"standard"}),
}

# 请求体未指定 model 时按渠道类型补默认模型
DEFAULT_IMAGE_MODELS: Dict[ChannelType, str] = {
    ChannelType.ALI: "wanx-v1",
    ChannelType.BAIDU: "sd_xl",
    ChannelType.ZHIPU: "cogview-3",
}
FALLBACK_IMAGE_MODEL = "dall-e-2"
DEFAULT_IMAGE_SIZE = "1024x1024"


def default_image_model(channel_type: ChannelType) -> str:
    return DEFAULT_IMAGE_MODELS.get(channel_type, FALLBACK_IMAGE_MODEL)


def is_within_range(amounts: Mapping[str, Tuple[int, int]], model: str, value: int) -> bool:
    if model not in amounts:
        return False
    min_n, max_n = amounts[model]
    return min_n <= value <= max_n


def validate_image_request(request: ImageGenerationRequest, snapshot) -> None:
    """
    按能力表校验请求，失败时抛出 RelayError(400)。

    校验顺序：模型 -> 数量 -> 尺寸 -> 质量 -> 提示词长度。
    """
    model = request.model
    if model not in snapshot.image_generation_amounts:
        raise RelayError(f"model {model} is not supported for image generation", "invalid_model", 400)

    if not is_within_range(snapshot.image_generation_amounts, model, request.n):
        min_n, max_n = snapshot.image_generation_amounts[model]
        raise RelayError(f"n must be between {min_n} and {max_n} for model {model}", "invalid_n", 400)

    if request.size not in snapshot.image_size_ratios.get(model, {}):
        raise RelayError(f"size {request.size} is not supported for model {model}", "invalid_size", 400)

    if request.quality:
        if request.quality not in snapshot.image_qualities.get(model, frozenset()):
            raise RelayError(f"quality {request.quality} is not supported for model {model}", "invalid_quality", 400)

    limit = snapshot.image_prompt_length_limits.get(model)
    if limit is not None and len(request.prompt or "") > limit:
        raise RelayError(f"prompt is too long, max length is {limit}", "prompt_too_long", 400)


def get_image_cost_ratio(request: ImageGenerationRequest, snapshot) -> float:
    """
    单张图片的成本倍率：尺寸倍率，dall-e-3 的 hd 质量额外加价
    （1024x1024 翻倍，其余尺寸 1.5 倍）。
    """
    if request is None:
        raise ValueError("image request is nil")
    size_ratios = snapshot.image_size_ratios.get(request.model)
    if not size_ratios or request.size not in size_ratios:
        raise ValueError(f"no cost ratio for model {request.model} size {request.size}")

    image_cost_ratio = float(size_ratios[request.size])
    if request.quality == "hd" and request.model == "dall-e-3":
        if request.size == "1024x1024":
            image_cost_ratio *= 2
        else:
            image_cost_ratio *= 1.5
    return image_cost_ratio
