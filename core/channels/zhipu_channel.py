"""
智谱 BigModel 渠道适配器

CogView 的响应已经是 OpenAI 形状 ({created, data: [{url}]})，成功时直接透传。
"""

from ..jwt_utils import issue_zhipu_token
from ..models import APIType
from ..response import check_response, forward_response

ZHIPU_DEFAULT_BASE_URL = "https://open.bigmodel.cn"


def convert_zhipu_image_request(request):
    """OpenAI 格式 -> CogView 请求体（不支持 n，固定一张）"""
    payload = {
        "model": request.model,
        "prompt": request.prompt,
    }
    if request.size:
        payload["size"] = request.size
    if request.user:
        payload["user_id"] = request.user
    return payload


async def get_zhipu_image_request(client, meta):
    base_url = (meta.base_url or ZHIPU_DEFAULT_BASE_URL).rstrip('/')
    url = f"{base_url}/api/paas/v4/images/generations"
    headers = {
        'Content-Type': 'application/json',
        'Authorization': issue_zhipu_token(meta.api_key),
    }
    return url, headers


async def fetch_zhipu_image_response(client, response, meta):
    error = await check_response(response, "fetch_zhipu_image_response")
    if error:
        raise error
    return forward_response(response)


def register():
    """注册智谱渠道到注册中心"""
    from .registry import register_channel

    register_channel(
        api_type=APIType.ZHIPU,
        type_name="zhipu",
        default_base_url=ZHIPU_DEFAULT_BASE_URL,
        description="Zhipu BigModel CogView",
        request_adapter=get_zhipu_image_request,
        convert_image_request=convert_zhipu_image_request,
        response_adapter=fetch_zhipu_image_response,
    )
