"""
认证模块

- verify_api_key: 按令牌 key 查出令牌与所属用户，返回 AuthContext
- verify_admin_api_key: 管理接口使用的管理员密钥校验
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select

from db import Token as TokenRow
from db import User as UserRow

from core.log_config import logger

# 设置 auto_error=False 以便我们自己处理缺失的情况
security = HTTPBearer(auto_error=False)

TOKEN_STATUS_ENABLED = 1


@dataclass
class AuthContext:
    token_id: int
    token_name: str
    user_id: int
    group: str = "default"


async def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = None) -> Optional[str]:
    """
    从请求中提取 API token，支持两种方式：
    1. x-api-key 头部
    2. Authorization: Bearer <token>
    """
    if request.headers.get("x-api-key"):
        return request.headers.get("x-api-key")

    if credentials and credentials.credentials:
        return credentials.credentials

    auth_header = request.headers.get("Authorization")
    if auth_header:
        parts = auth_header.split(" ")
        if len(parts) > 1:
            return parts[1]

    return None


def _strip_key_prefix(token: str) -> str:
    # 兼容带 sk- 前缀的写法，库里只存前缀后的部分
    return token[3:] if token.startswith("sk-") else token


async def lookup_token(session_factory, token_key: str) -> Optional[AuthContext]:
    async with session_factory() as session:
        result = await session.execute(
            select(TokenRow, UserRow)
            .join(UserRow, UserRow.id == TokenRow.user_id)
            .where(TokenRow.key.in_([token_key, _strip_key_prefix(token_key)]))
        )
        row = result.first()

    if row is None:
        return None
    token, user = row
    if token.status != TOKEN_STATUS_ENABLED:
        return None
    return AuthContext(
        token_id=token.id,
        token_name=token.name or "",
        user_id=user.id,
        group=user.group or "default",
    )


async def verify_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    token = await _extract_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")

    auth = await lookup_token(request.app.state.session_factory, token)
    if auth is None:
        logger.warning("invalid api key: %s...", token[:7])
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return auth


async def verify_admin_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """管理员密钥来自 api.yaml 的 admin_key 或环境变量 ADMIN_KEY"""
    token = await _extract_token(request, credentials)
    if not token:
        raise HTTPException(status_code=403, detail="Invalid or missing credentials")

    admin_key = getattr(request.app.state, "admin_key", None)
    if not admin_key or token != admin_key:
        raise HTTPException(status_code=403, detail="Permission denied")
    return token
