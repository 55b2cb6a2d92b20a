"""
额度存储

- UserQuotaCache: 进程内的用户余额缓存（TTL 过期后回源数据库）
- SQLQuotaStore: 基于 SQLAlchemy AsyncSession 的额度读写，供准入检查与结算使用

写操作在 SQLite 上遇到 "database is locked" 时按指数退避重试，
重试耗尽后异常继续向上抛出，由调用方决定是否吞掉。
"""

import asyncio
from time import monotonic, time
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db import Channel as ChannelRow
from db import Log as LogRow
from db import Token as TokenRow
from db import User as UserRow

from .env import env_int
from .log_config import logger
from .models import Token

SQLITE_MAX_RETRIES = 3
SQLITE_RETRY_DELAY = 0.5

# 消费日志类型，与日志表中其它类型（充值/管理等）区分
LOG_TYPE_CONSUME = 2

T = TypeVar("T")


class QuotaStore(Protocol):
    async def cache_get_user_quota(self, user_id: int) -> int: ...

    async def cache_update_user_quota(self, user_id: int) -> None: ...

    async def get_token_by_id(self, token_id: int) -> Token: ...

    async def post_consume_token_quota(self, token_id: int, quota: int) -> None: ...

    async def record_consume_log(
        self,
        user_id: int,
        channel_id: int,
        channel_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        model_name: str,
        token_name: str,
        quota: int,
        content: str,
        token_id: int,
        multiplier: str,
        user_quota: int,
        elapsed_time: int,
        is_stream: bool,
    ) -> None: ...

    async def update_user_used_quota_and_request_count(self, user_id: int, quota: int) -> None: ...

    async def update_channel_used_quota(self, channel_id: int, quota: int) -> None: ...


class UserQuotaCache:
    """
    用户余额缓存：
    - get: 未过期时返回缓存值，否则返回 None
    - set: 写入并刷新过期时间
    - invalidate: 删除某个用户的缓存
    """

    def __init__(self, ttl: Optional[int] = None) -> None:
        self.ttl = ttl if ttl is not None else env_int("USER_QUOTA_CACHE_TTL", 60)
        # key: user_id -> value: (quota, 过期时间)
        self._entries: Dict[int, Tuple[int, float]] = {}

    def get(self, user_id: int) -> Optional[int]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        quota, expires_at = entry
        if monotonic() >= expires_at:
            del self._entries[user_id]
            return None
        return quota

    def set(self, user_id: int, quota: int) -> None:
        if self.ttl <= 0:
            return
        self._entries[user_id] = (quota, monotonic() + self.ttl)

    def invalidate(self, user_id: int) -> None:
        self._entries.pop(user_id, None)


def _is_lock_error(e: Exception) -> bool:
    error_str = str(e).lower()
    return "database is locked" in error_str or "busy" in error_str


class SQLQuotaStore:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        cache: Optional[UserQuotaCache] = None,
        max_concurrency: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache or UserQuotaCache()
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def _write(self, label: str, op: Callable[[AsyncSession], Awaitable[T]]) -> T:
        for attempt in range(SQLITE_MAX_RETRIES):
            try:
                async with self._semaphore:
                    async with self.session_factory() as session:
                        async with session.begin():
                            return await op(session)
            except Exception as e:
                if _is_lock_error(e) and attempt < SQLITE_MAX_RETRIES - 1:
                    delay = SQLITE_RETRY_DELAY * (2 ** attempt)
                    logger.warning(
                        "Database locked (%s), retrying in %ss (attempt %s/%s)",
                        label,
                        delay,
                        attempt + 1,
                        SQLITE_MAX_RETRIES,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise
        raise RuntimeError(f"{label}: retries exhausted")

    async def _load_user_quota(self, user_id: int) -> int:
        async with self.session_factory() as session:
            quota = await session.scalar(select(UserRow.quota).where(UserRow.id == user_id))
        if quota is None:
            raise LookupError(f"user {user_id} not found")
        return int(quota)

    async def cache_get_user_quota(self, user_id: int) -> int:
        quota = self.cache.get(user_id)
        if quota is not None:
            return quota
        quota = await self._load_user_quota(user_id)
        self.cache.set(user_id, quota)
        return quota

    async def cache_update_user_quota(self, user_id: int) -> None:
        """扣费后回源刷新缓存"""
        quota = await self._load_user_quota(user_id)
        self.cache.set(user_id, quota)

    async def get_token_by_id(self, token_id: int) -> Token:
        async with self.session_factory() as session:
            row = await session.get(TokenRow, token_id)
        if row is None:
            raise LookupError(f"token {token_id} not found")
        return Token(
            id=row.id,
            name=row.name or "",
            user_id=row.user_id,
            remain_quota=int(row.remain_quota or 0),
            unlimited_quota=bool(row.unlimited_quota),
            billing_enabled=bool(row.billing_enabled),
        )

    async def post_consume_token_quota(self, token_id: int, quota: int) -> None:
        """从令牌所属用户的余额中扣除 quota，令牌非无限额度时同时扣减令牌余额"""

        async def op(session: AsyncSession) -> None:
            token = await session.get(TokenRow, token_id)
            if token is None:
                raise LookupError(f"token {token_id} not found")
            await session.execute(
                update(UserRow).where(UserRow.id == token.user_id).values(quota=UserRow.quota - quota)
            )
            if not token.unlimited_quota:
                await session.execute(
                    update(TokenRow)
                    .where(TokenRow.id == token_id)
                    .values(
                        remain_quota=TokenRow.remain_quota - quota,
                        used_quota=TokenRow.used_quota + quota,
                    )
                )

        await self._write("post_consume_token_quota", op)

    async def record_consume_log(
        self,
        user_id: int,
        channel_id: int,
        channel_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        model_name: str,
        token_name: str,
        quota: int,
        content: str,
        token_id: int,
        multiplier: str,
        user_quota: int,
        elapsed_time: int,
        is_stream: bool,
    ) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(LogRow(
                user_id=user_id,
                created_at=int(time()),
                type=LOG_TYPE_CONSUME,
                content=content,
                token_name=token_name,
                model_name=model_name,
                quota=quota,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                channel_id=channel_id,
                channel_name=channel_name,
                token_id=token_id,
                user_quota=user_quota,
                elapsed_time=elapsed_time,
                is_stream=is_stream,
                multiplier=multiplier,
            ))

        await self._write("record_consume_log", op)

    async def update_user_used_quota_and_request_count(self, user_id: int, quota: int) -> None:
        async def op(session: AsyncSession) -> None:
            await session.execute(
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(
                    used_quota=UserRow.used_quota + quota,
                    request_count=UserRow.request_count + 1,
                )
            )

        await self._write("update_user_used_quota_and_request_count", op)

    async def update_channel_used_quota(self, channel_id: int, quota: int) -> None:
        async def op(session: AsyncSession) -> None:
            await session.execute(
                update(ChannelRow)
                .where(ChannelRow.id == channel_id)
                .values(used_quota=ChannelRow.used_quota + quota)
            )

        await self._write("update_channel_used_quota", op)
