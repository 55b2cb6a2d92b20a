"""
结算

上游返回 200 后执行一次。各步骤彼此独立：某一步失败只记录日志，
不影响后续步骤，也不影响已经返回给客户端的响应。
"""

from time import time

from .log_config import logger
from .models import RelayMeta
from .pricing import QuotaPlan
from .store import QuotaStore

# 图像请求没有 prompt/completion token 的概念
CONSUME_LOG_CONTENT = " "


async def settle(store: QuotaStore, meta: RelayMeta, plan: QuotaPlan, user_quota: int) -> None:
    """
    按顺序执行：
    1. 扣减令牌/用户额度
    2. 刷新用户余额缓存
    3. 写消费日志（仅 quota > 0）
    4. 累加用户已用额度与请求次数
    5. 累加渠道已用额度

    user_quota 为准入检查时读到的余额，写入消费日志。
    """
    quota = plan.quota

    try:
        await store.post_consume_token_quota(meta.token_id, quota)
    except Exception as e:
        logger.error("error consuming token remain quota: %s", e)

    try:
        await store.cache_update_user_quota(meta.user_id)
    except Exception as e:
        logger.error("error update user quota cache: %s", e)

    if quota > 0:
        try:
            await store.record_consume_log(
                user_id=meta.user_id,
                channel_id=meta.channel_id,
                channel_name=meta.channel_name,
                prompt_tokens=0,
                completion_tokens=0,
                model_name=meta.actual_model_name,
                token_name=meta.token_name,
                quota=quota,
                content=CONSUME_LOG_CONTENT,
                token_id=meta.token_id,
                multiplier=plan.multiplier,
                user_quota=user_quota,
                elapsed_time=int(time()) - int(meta.start_time),
                is_stream=False,
            )
        except Exception as e:
            logger.error("error recording consume log: %s", e)

    try:
        await store.update_user_used_quota_and_request_count(meta.user_id, quota)
    except Exception as e:
        logger.error("error updating user used quota: %s", e)

    try:
        await store.update_channel_used_quota(meta.channel_id, quota)
    except Exception as e:
        logger.error("error updating channel used quota: %s", e)

    logger.info(
        "settled user=%s token=%s channel=%s model=%s quota=%s balance_before=%s",
        meta.user_id,
        meta.token_id,
        meta.channel_id,
        meta.actual_model_name,
        quota,
        user_quota,
    )
