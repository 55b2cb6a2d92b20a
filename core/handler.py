"""
图像中继处理模块

ImageRelayHandler 串起一次图像生成请求的完整流水线：
解码 -> 校验 -> 计价 -> 余额准入 -> 选择适配器并构造请求体 -> 上游请求 -> 响应处理 + 结算。

任一步失败都抛出 RelayError，由路由层渲染；结算只在上游返回 200 后执行一次。
"""

import asyncio
import json

from starlette.responses import Response

from core.channels import get_channel
from core.channels.registry import ChannelDefinition
from core.client_manager import ClientManager
from core.decoder import decode_image_request
from core.error_response import RelayError, error_wrapper
from core.image_constants import validate_image_request
from core.log_config import logger
from core.models import ChannelType, ImageGenerationRequest, RelayMeta
from core.pricing import PricingStore, compute_image_quota
from core.request import do_request
from core.settlement import settle
from core.store import QuotaStore

# 默认超时时间（图像生成较慢，且阿里渠道需要轮询）
DEFAULT_TIMEOUT = 600

# 需要把请求体转换为厂商原生格式的渠道
_CONVERTING_CHANNEL_TYPES = {ChannelType.ALI, ChannelType.BAIDU, ChannelType.ZHIPU}


class ImageRelayHandler:
    """
    图像请求处理器

    无状态：每次 relay() 都会取一份新的价格快照，请求之间不共享可变数据。
    """

    def __init__(
        self,
        client_manager: ClientManager,
        store: QuotaStore,
        pricing_store: PricingStore,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Args:
            client_manager: 上游 httpx 客户端池
            store: 额度读写
            pricing_store: 价格表发布点
            default_timeout: 上游请求超时（秒）
        """
        self.client_manager = client_manager
        self.store = store
        self.pricing_store = pricing_store
        self.default_timeout = default_timeout

    async def relay(self, body: bytes, meta: RelayMeta) -> Response:
        snapshot = self.pricing_store.snapshot()

        image_request, is_model_mapped = decode_image_request(body, meta)
        meta.response_format = image_request.response_format or ""

        try:
            validate_image_request(image_request, snapshot)
        except RelayError as e:
            logger.warning("image request rejected: code=%s message=%s", e.code, e.message)
            raise

        token_billing_enabled = await self._token_billing_enabled(meta.token_id)
        plan = compute_image_quota(snapshot, image_request, meta.group, token_billing_enabled)
        user_quota = await self._check_quota(meta.user_id, plan.quota)

        channel = get_channel(meta.api_type)
        if channel is None:
            raise RelayError(f"invalid api type: {int(meta.api_type)}", "invalid_api_type", 400)

        request_body = self._select_body(channel, image_request, body, meta, is_model_mapped)

        async with self.client_manager.get_client(channel.base_url(meta), proxy=meta.proxy or None) as client:
            response = await do_request(client, channel, meta, request_body, self.default_timeout)

            try:
                return await self._do_response(client, channel, response, meta)
            finally:
                if response.status_code == 200:
                    # 客户端断开时不能打断结算
                    await asyncio.shield(settle(self.store, meta, plan, user_quota))

    async def _token_billing_enabled(self, token_id: int) -> bool:
        try:
            token = await self.store.get_token_by_id(token_id)
        except Exception as e:
            logger.error("get token %s failed, per-request billing disabled: %s", token_id, e)
            return False
        return token.billing_enabled

    async def _check_quota(self, user_id: int, quota: int) -> int:
        """余额准入：读到的余额可能是缓存的旧值，最终以结算写入为准"""
        try:
            user_quota = await self.store.cache_get_user_quota(user_id)
        except Exception as e:
            logger.error("get user %s quota failed: %s", user_id, e)
            raise error_wrapper(e, "get_user_quota_failed", 500) from e

        if user_quota - quota < 0:
            logger.warning("user %s quota %s is not enough for %s", user_id, user_quota, quota)
            raise RelayError("user quota is not enough", "insufficient_user_quota", 403)
        return user_quota

    def _select_body(
        self,
        channel: ChannelDefinition,
        image_request: ImageGenerationRequest,
        body: bytes,
        meta: RelayMeta,
        is_model_mapped: bool,
    ) -> bytes:
        request_body = body
        if is_model_mapped or meta.channel_type == ChannelType.AZURE:
            try:
                request_body = image_request.to_upstream_json().encode("utf-8")
            except (TypeError, ValueError) as e:
                raise error_wrapper(e, "marshal_image_request_failed", 500) from e

        if meta.channel_type in _CONVERTING_CHANNEL_TYPES and channel.convert_image_request is not None:
            try:
                converted = channel.convert_image_request(image_request)
            except Exception as e:
                logger.error("convert image request for %s failed: %s", channel.type_name, e)
                raise error_wrapper(e, "convert_image_request_failed", 500) from e
            try:
                request_body = json.dumps(converted, ensure_ascii=False).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise error_wrapper(e, "marshal_image_request_failed", 500) from e

        return request_body

    async def _do_response(
        self,
        client,
        channel: ChannelDefinition,
        response,
        meta: RelayMeta,
    ) -> Response:
        if channel.response_adapter is None:
            raise RelayError(f"channel {channel.type_name} has no response adapter", "do_response_failed", 500)
        try:
            return await channel.response_adapter(client, response, meta)
        except RelayError as e:
            logger.error("respErr is not nil: %r", e)
            raise
        except Exception as e:
            logger.error("DoResponse failed: %s", e)
            raise error_wrapper(e, "do_response_failed", 500) from e

