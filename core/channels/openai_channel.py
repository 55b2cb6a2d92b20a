"""
GPT/OpenAI 渠道适配器

负责 OpenAI 兼容 API 以及 Azure OpenAI 的图像生成请求构建和响应透传。
两者共用 APIType.OPENAI，按渠道类型区分 URL 和鉴权头。
"""

import urllib.parse

from ..models import APIType, ChannelType
from ..response import check_response, forward_response

DEFAULT_AZURE_API_VERSION = "2025-01-01-preview"


def build_azure_image_endpoint(base_url, deployment_id, api_version=DEFAULT_AZURE_API_VERSION):
    """构建 Azure OpenAI 图像端点 URL"""
    base_url = base_url.rstrip('/')
    # Azure 部署名不允许包含 "."，例如 gpt-3.5 -> gpt-35
    deployment_id = deployment_id.replace(".", "")

    path = f"/openai/deployments/{deployment_id}/images/generations"
    final_url = urllib.parse.urljoin(base_url + "/", path.lstrip("/"))

    if "?api-version=" not in final_url:
        final_url = f"{final_url}?api-version={api_version or DEFAULT_AZURE_API_VERSION}"

    return final_url


def build_openai_image_endpoint(base_url):
    base_url = base_url.rstrip('/')
    if base_url.endswith("/v1"):
        return f"{base_url}/images/generations"
    return f"{base_url}/v1/images/generations"


async def get_openai_image_request(client, meta):
    """构建 OpenAI / Azure 图像请求的 url 和 headers"""
    headers = {
        'Content-Type': 'application/json',
    }
    base_url = meta.base_url or "https://api.openai.com"

    if meta.channel_type == ChannelType.AZURE:
        headers['api-key'] = f"{meta.api_key}"
        url = build_azure_image_endpoint(base_url, meta.actual_model_name, meta.api_version)
    else:
        headers['Authorization'] = f"Bearer {meta.api_key}"
        url = build_openai_image_endpoint(base_url)

    return url, headers


async def fetch_openai_image_response(client, response, meta):
    """上游 200 时原样透传响应体，否则抛出带上游错误码的 RelayError"""
    error = await check_response(response, "fetch_openai_image_response")
    if error:
        raise error
    return forward_response(response)


def register():
    """注册 OpenAI 渠道到注册中心"""
    from .registry import register_channel

    register_channel(
        api_type=APIType.OPENAI,
        type_name="openai",
        default_base_url="https://api.openai.com",
        description="OpenAI / Azure OpenAI Images API",
        request_adapter=get_openai_image_request,
        convert_image_request=None,
        response_adapter=fetch_openai_image_response,
    )
