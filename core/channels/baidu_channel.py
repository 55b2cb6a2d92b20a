"""
百度千帆（文心）渠道适配器

- 渠道密钥为 "client_id|client_secret" 时先换取 access_token，并在过期前复用
- 文生图结果只有 base64，统一渲染为 OpenAI 的 b64_json
- 百度的业务错误以 200 + error_code 返回
"""

import asyncio
from dataclasses import dataclass
from time import time
from typing import Dict

from ..error_response import RelayError
from ..log_config import logger
from ..models import APIType, ImageGenerationResponse, ImageObject
from ..response import check_response, render_image_response

BAIDU_DEFAULT_BASE_URL = "https://aip.baidubce.com"

# 距离过期不足该秒数时重新获取 access_token
BAIDU_TOKEN_REFRESH_MARGIN = 3600

_BAIDU_OPTIONAL_FIELDS = ("negative_prompt", "steps", "sampler_index", "seed", "cfg_scale", "style")


@dataclass
class BaiduAccessToken:
    access_token: str
    expires_at: float


_token_cache: Dict[str, BaiduAccessToken] = {}
_token_lock = asyncio.Lock()


def convert_baidu_image_request(request):
    """OpenAI 格式 -> 千帆 text2image 请求体"""
    extras = request.model_extra or {}
    payload = {
        "prompt": request.prompt,
        "size": request.size,
        "n": request.n,
    }
    for field in _BAIDU_OPTIONAL_FIELDS:
        value = extras.get(field)
        if field == "style" and request.style:
            value = request.style
        if value is not None:
            payload[field] = value
    if request.user:
        payload["user_id"] = request.user
    return payload


async def get_baidu_access_token(client, base_url, api_key):
    """
    获取 access_token。

    api_key 不含 "|" 时视为已经是 access_token，直接返回。
    """
    if "|" not in api_key:
        return api_key

    cached = _token_cache.get(api_key)
    if cached and cached.expires_at - time() > BAIDU_TOKEN_REFRESH_MARGIN:
        return cached.access_token

    async with _token_lock:
        cached = _token_cache.get(api_key)
        if cached and cached.expires_at - time() > BAIDU_TOKEN_REFRESH_MARGIN:
            return cached.access_token

        client_id, client_secret = api_key.split("|", 1)
        response = await client.post(
            f"{base_url}/oauth/2.0/token",
            params={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        error = await check_response(response, "get_baidu_access_token")
        if error:
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise RelayError(f"invalid baidu access token response: {e}", "baidu_access_token_failed", 500) from e
        if not isinstance(data, dict):
            raise RelayError("invalid baidu access token response", "baidu_access_token_failed", 500)
        if data.get("error"):
            raise RelayError(
                data.get("error_description") or data["error"],
                "baidu_access_token_failed",
                401,
            )
        if not data.get("access_token"):
            raise RelayError("baidu access token missing in response", "baidu_access_token_failed", 500)

        token = BaiduAccessToken(
            access_token=data["access_token"],
            expires_at=time() + int(data.get("expires_in", 0)),
        )
        _token_cache[api_key] = token
        logger.info("baidu access token refreshed, expires in %ss", data.get("expires_in"))
        return token.access_token


async def get_baidu_image_request(client, meta):
    base_url = (meta.base_url or BAIDU_DEFAULT_BASE_URL).rstrip('/')
    access_token = await get_baidu_access_token(client, base_url, meta.api_key)
    url = f"{base_url}/rpc/2.0/ai_custom/v1/wenxinworkshop/text2image/{meta.actual_model_name}?access_token={access_token}"
    headers = {
        'Content-Type': 'application/json',
    }
    return url, headers


async def fetch_baidu_image_response(client, response, meta):
    error = await check_response(response, "fetch_baidu_image_response")
    if error:
        raise error

    data = response.json()
    if data.get("error_code"):
        raise RelayError(data.get("error_msg") or "baidu image error", data["error_code"], 400)

    image_response = ImageGenerationResponse(created=int(data.get("created") or time()))
    for item in sorted(data.get("data") or [], key=lambda x: x.get("index", 0)):
        image_response.data.append(ImageObject(b64_json=item.get("b64_image")))

    return render_image_response(image_response)


def register():
    """注册百度渠道到注册中心"""
    from .registry import register_channel

    register_channel(
        api_type=APIType.BAIDU,
        type_name="baidu",
        default_base_url=BAIDU_DEFAULT_BASE_URL,
        description="Baidu Qianfan text2image",
        request_adapter=get_baidu_image_request,
        convert_image_request=convert_baidu_image_request,
        response_adapter=fetch_baidu_image_response,
    )
