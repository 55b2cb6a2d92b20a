import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def sign_hs256(header: Dict[str, Any], payload: Dict[str, Any], secret: str) -> str:
    header_b64 = _b64url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))

    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()

    return f"{header_b64}.{payload_b64}.{_b64url_encode(sig)}"


# 智谱 token 有效期（毫秒）
ZHIPU_TOKEN_TTL_MS = 24 * 3600 * 1000


@dataclass
class _CachedToken:
    token: str
    expires_at_ms: int


_ZHIPU_TOKENS: Dict[str, _CachedToken] = {}


def issue_zhipu_token(api_key: str) -> str:
    """
    智谱 BigModel 的鉴权 token。

    api_key 形如 "{id}.{secret}"，用 secret 对 {api_key, exp, timestamp}（毫秒）做 HS256 签名；
    不符合该格式时原样返回。同一 key 的 token 在过期前 5 分钟内复用。
    """
    parts = api_key.split(".")
    if len(parts) != 2:
        return api_key

    now_ms = int(time.time() * 1000)
    cached = _ZHIPU_TOKENS.get(api_key)
    if cached and cached.expires_at_ms - now_ms > 5 * 60 * 1000:
        return cached.token

    key_id, secret = parts
    expires_at_ms = now_ms + ZHIPU_TOKEN_TTL_MS
    token = sign_hs256(
        {"alg": "HS256", "sign_type": "SIGN"},
        {"api_key": key_id, "exp": expires_at_ms, "timestamp": now_ms},
        secret,
    )
    _ZHIPU_TOKENS[api_key] = _CachedToken(token=token, expires_at_ms=expires_at_ms)
    return token
