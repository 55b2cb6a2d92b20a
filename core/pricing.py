"""
计费引擎

负责：
- 进程级价格表快照 (PricingSnapshot)：只读，整体替换发布
- 从选项表 / 配置文件构建快照
- 图像请求的额度计算 (compute_image_quota)

三种计费模式按顺序匹配，先命中者生效：
1. 按次计费开启 + 模型倍率开启 + 令牌开启按次计费 + ModelRatio2 有该模型
2. 按次计费开启 + 模型倍率关闭 + ModelRatio2 有该模型（沿用历史单位 500000）
3. 默认：模型倍率 * 分组倍率 * 尺寸倍率 * 成本倍率 * 1000，截断后乘以 n
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .env import option_bool
from .error_response import error_wrapper
from .image_constants import (
    DEFAULT_IMAGE_GENERATION_AMOUNTS,
    DEFAULT_IMAGE_PROMPT_LENGTH_LIMITS,
    DEFAULT_IMAGE_QUALITIES,
    DEFAULT_IMAGE_SIZE_RATIOS,
    get_image_cost_ratio,
)
from .log_config import logger
from .models import ImageGenerationRequest


# 历史按次计费单位，已部署的价格表依赖该值，不可修改
LEGACY_PER_REQUEST_QUOTA_UNIT = 500000

DEFAULT_QUOTA_PER_UNIT = 500 * 1000.0

DEFAULT_MODEL_RATIO: Dict[str, float] = {
    "dall-e-2": 8,       # $0.016 - $0.020 / image
    "dall-e-3": 20,      # $0.040 - $0.120 / image
    "ali-stable-diffusion-xl": 8,
    "wanx-v1": 8,
    "sd_xl": 8,
    "cogview-3": 3.5,
}

DEFAULT_GROUP_RATIO: Dict[str, float] = {
    "default": 1,
    "vip": 1,
    "svip": 1,
}

PER_REQUEST_BILLING = "per-request billing"

BILLING_BY_REQUEST_OPTION = "BillingByRequestEnabled"
MODEL_RATIO_ENABLED_OPTION = "ModelRatioEnabled"


def _freeze(mapping: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class PricingSnapshot:
    """某一时刻的完整价格表视图，一次请求内始终使用同一个快照"""

    model_ratio: Mapping[str, float] = field(default_factory=lambda: _freeze(DEFAULT_MODEL_RATIO))
    model_ratio2: Mapping[str, float] = field(default_factory=lambda: _freeze({}))
    group_ratio: Mapping[str, float] = field(default_factory=lambda: _freeze(DEFAULT_GROUP_RATIO))
    image_size_ratios: Mapping[str, Mapping[str, float]] = field(
        default_factory=lambda: _freeze({k: _freeze(v) for k, v in DEFAULT_IMAGE_SIZE_RATIOS.items()})
    )
    image_generation_amounts: Mapping[str, Tuple[int, int]] = field(
        default_factory=lambda: _freeze(DEFAULT_IMAGE_GENERATION_AMOUNTS)
    )
    image_prompt_length_limits: Mapping[str, int] = field(
        default_factory=lambda: _freeze(DEFAULT_IMAGE_PROMPT_LENGTH_LIMITS)
    )
    image_qualities: Mapping[str, FrozenSet[str]] = field(
        default_factory=lambda: _freeze(DEFAULT_IMAGE_QUALITIES)
    )
    quota_per_unit: float = DEFAULT_QUOTA_PER_UNIT
    options: Mapping[str, str] = field(default_factory=lambda: _freeze({}))

    def get_model_ratio(self, name: str) -> float:
        ratio = self.model_ratio.get(name)
        if ratio is None:
            logger.warning("model ratio not found: %s, using 1", name)
            return 1.0
        return float(ratio)

    def get_model_ratio2(self, name: str) -> Optional[float]:
        ratio = self.model_ratio2.get(name)
        return float(ratio) if ratio is not None else None

    def get_group_ratio(self, name: str) -> float:
        ratio = self.group_ratio.get(name)
        if ratio is None:
            logger.warning("group ratio not found: %s, using 1", name)
            return 1.0
        return float(ratio)

    @property
    def billing_by_request_enabled(self) -> bool:
        return option_bool(self.options.get(BILLING_BY_REQUEST_OPTION))

    @property
    def model_ratio_enabled(self) -> bool:
        return option_bool(self.options.get(MODEL_RATIO_ENABLED_OPTION))


class PricingStore:
    """
    价格表的发布点。

    读者直接取 snapshot 引用，不加锁；写者在锁内基于当前快照构造新快照后整体替换。
    """

    def __init__(self, snapshot: Optional[PricingSnapshot] = None) -> None:
        self._snapshot = snapshot or PricingSnapshot()
        self._write_lock = threading.Lock()

    def snapshot(self) -> PricingSnapshot:
        return self._snapshot

    def publish(self, snapshot: PricingSnapshot) -> PricingSnapshot:
        with self._write_lock:
            self._snapshot = snapshot
        return snapshot

    def update_options(self, options: Mapping[str, str]) -> PricingSnapshot:
        """合并选项并重建相关价格表，返回新快照"""
        with self._write_lock:
            merged = dict(self._snapshot.options)
            merged.update({str(k): str(v) for k, v in options.items()})
            self._snapshot = apply_options(self._snapshot, merged)
            return self._snapshot


def _load_ratio_json(key: str, raw: str) -> Optional[Dict[str, float]]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.error("error unmarshalling option %s: %s", key, e)
        return None
    if not isinstance(data, dict):
        logger.error("option %s must be a JSON object", key)
        return None
    try:
        ratios = {str(k): float(v) for k, v in data.items()}
    except (TypeError, ValueError) as e:
        logger.error("option %s contains non-numeric ratio: %s", key, e)
        return None
    if any(v < 0 for v in ratios.values()):
        logger.error("option %s contains negative ratio", key)
        return None
    return ratios


def apply_options(base: PricingSnapshot, options: Mapping[str, str]) -> PricingSnapshot:
    """
    用选项表构建新快照。

    ModelRatio / ModelRatio2 / GroupRatio 为 JSON 字符串，QuotaPerUnit 为数字字符串；
    格式错误时保留原值并记录日志。
    """
    changes: Dict[str, Any] = {"options": _freeze(options)}

    for option_key, attr in (
        ("ModelRatio", "model_ratio"),
        ("ModelRatio2", "model_ratio2"),
        ("GroupRatio", "group_ratio"),
    ):
        raw = options.get(option_key)
        if raw:
            parsed = _load_ratio_json(option_key, raw)
            if parsed is not None:
                changes[attr] = _freeze(parsed)

    raw_quota_per_unit = options.get("QuotaPerUnit")
    if raw_quota_per_unit:
        try:
            quota_per_unit = float(raw_quota_per_unit)
            if quota_per_unit <= 0:
                raise ValueError("QuotaPerUnit must be positive")
            changes["quota_per_unit"] = quota_per_unit
        except ValueError as e:
            logger.error("invalid QuotaPerUnit %r: %s", raw_quota_per_unit, e)

    return replace(base, **changes)


def apply_image_overrides(base: PricingSnapshot, image_config: Optional[Mapping[str, Any]]) -> PricingSnapshot:
    """合并 api.yaml 中 image 段对能力表的覆盖（按模型整体替换）"""
    if not image_config:
        return base

    changes: Dict[str, Any] = {}

    size_ratios = image_config.get("size_ratios")
    if isinstance(size_ratios, Mapping):
        merged = {k: dict(v) for k, v in base.image_size_ratios.items()}
        for model, sizes in size_ratios.items():
            merged[str(model)] = {str(s): float(r) for s, r in dict(sizes).items()}
        changes["image_size_ratios"] = _freeze({k: _freeze(v) for k, v in merged.items()})

    amounts = image_config.get("amounts")
    if isinstance(amounts, Mapping):
        merged_amounts = dict(base.image_generation_amounts)
        for model, bounds in amounts.items():
            min_n, max_n = bounds
            merged_amounts[str(model)] = (int(min_n), int(max_n))
        changes["image_generation_amounts"] = _freeze(merged_amounts)

    prompt_limits = image_config.get("prompt_length_limits")
    if isinstance(prompt_limits, Mapping):
        merged_limits = dict(base.image_prompt_length_limits)
        merged_limits.update({str(k): int(v) for k, v in prompt_limits.items()})
        changes["image_prompt_length_limits"] = _freeze(merged_limits)

    qualities = image_config.get("qualities")
    if isinstance(qualities, Mapping):
        merged_qualities = dict(base.image_qualities)
        merged_qualities.update({str(k): frozenset(v) for k, v in qualities.items()})
        changes["image_qualities"] = _freeze(merged_qualities)

    return replace(base, **changes)


@dataclass(frozen=True)
class QuotaPlan:
    quota: int
    model_ratio: float
    group_ratio: float
    model_ratio_string: str

    @property
    def multiplier(self) -> str:
        return f"{self.model_ratio_string}, group ratio {self.group_ratio:.2f}"


def compute_image_quota(
    snapshot: PricingSnapshot,
    request: ImageGenerationRequest,
    group: str,
    token_billing_enabled: bool,
) -> QuotaPlan:
    """
    计算本次图像请求应扣的额度。

    request.model 必须已经是映射后的实际模型名。
    成本倍率查找失败时抛出 RelayError(get_image_cost_ratio_failed, 500)。
    """
    try:
        image_cost_ratio = get_image_cost_ratio(request, snapshot)
    except ValueError as e:
        raise error_wrapper(e, "get_image_cost_ratio_failed", 500) from e

    model_ratio = snapshot.get_model_ratio(request.model)
    group_ratio = snapshot.get_group_ratio(group)
    ratio = model_ratio * group_ratio
    # 预留给按尺寸定价，目前固定为 1
    size_ratio = 1.0

    billing_by_request = snapshot.billing_by_request_enabled
    model_ratio_enabled = snapshot.model_ratio_enabled
    model_ratio2 = snapshot.get_model_ratio2(request.model)

    if billing_by_request and model_ratio_enabled and token_billing_enabled and model_ratio2 is not None:
        ratio = model_ratio2 * group_ratio
        quota = int(ratio * snapshot.quota_per_unit)
        model_ratio_string = PER_REQUEST_BILLING
    elif billing_by_request and not model_ratio_enabled and model_ratio2 is not None:
        ratio = model_ratio2 * group_ratio
        quota = int(ratio * 1 * LEGACY_PER_REQUEST_QUOTA_UNIT)
        model_ratio_string = PER_REQUEST_BILLING
    else:
        quota = int(ratio * size_ratio * image_cost_ratio * 1000) * request.n
        model_ratio_string = f"model ratio {model_ratio:.2f}"

    return QuotaPlan(
        quota=quota,
        model_ratio=model_ratio,
        group_ratio=group_ratio,
        model_ratio_string=model_ratio_string,
    )
