"""
阿里 DashScope 渠道适配器

通义万相等文生图接口是异步任务：
1. 提交任务（X-DashScope-Async: enable），拿到 task_id
2. 轮询 /api/v1/tasks/{task_id} 直到 SUCCEEDED / FAILED
3. 把结果渲染为 OpenAI 图像响应，b64_json 格式时下载图片后编码
"""

import asyncio
import base64
from time import time

from ..error_response import RelayError
from ..log_config import logger
from ..models import APIType, ImageGenerationResponse, ImageObject
from ..response import check_response, render_image_response
from ..utils import safe_get

ALI_DEFAULT_BASE_URL = "https://dashscope.aliyuncs.com"

# 轮询间隔（秒）与最大轮询次数
ALI_TASK_POLL_INTERVAL = 2
ALI_TASK_MAX_STEPS = 20

# 透传给 parameters 的可选字段
_ALI_PARAMETER_FIELDS = ("style", "seed", "ref_strength", "ref_mode")


def convert_ali_image_request(request):
    """OpenAI 格式 -> DashScope 文生图请求体"""
    extras = request.model_extra or {}

    payload = {
        "model": request.model,
        "input": {
            "prompt": request.prompt,
        },
        "parameters": {
            "size": request.size.replace("x", "*"),
            "n": request.n,
        },
    }
    if extras.get("negative_prompt"):
        payload["input"]["negative_prompt"] = extras["negative_prompt"]
    if extras.get("ref_img"):
        payload["input"]["ref_img"] = extras["ref_img"]

    for field in _ALI_PARAMETER_FIELDS:
        value = extras.get(field)
        if field == "style" and request.style:
            value = request.style
        if value is not None:
            payload["parameters"][field] = value

    if request.response_format:
        payload["response_format"] = request.response_format

    return payload


def _auth_headers(meta):
    return {
        'Content-Type': 'application/json',
        'Authorization': f"Bearer {meta.api_key}",
    }


async def get_ali_image_request(client, meta):
    headers = _auth_headers(meta)
    headers['X-DashScope-Async'] = 'enable'
    base_url = (meta.base_url or ALI_DEFAULT_BASE_URL).rstrip('/')
    url = f"{base_url}/api/v1/services/aigc/text2image/image-synthesis"
    return url, headers


async def wait_ali_task(client, meta, task_id):
    """轮询异步任务直到结束，返回任务结果 JSON"""
    base_url = (meta.base_url or ALI_DEFAULT_BASE_URL).rstrip('/')
    url = f"{base_url}/api/v1/tasks/{task_id}"
    headers = _auth_headers(meta)

    for step in range(ALI_TASK_MAX_STEPS):
        response = await client.get(url, headers=headers)
        error = await check_response(response, "wait_ali_task")
        if error:
            raise error

        task = response.json()
        task_status = safe_get(task, "output", "task_status", default="")
        if task_status in ("SUCCEEDED", "FAILED", "UNKNOWN"):
            return task

        logger.debug("ali task %s status %s, step %s", task_id, task_status, step + 1)
        await asyncio.sleep(ALI_TASK_POLL_INTERVAL)

    raise RelayError(f"ali async task {task_id} wait timeout", "ali_async_task_timeout", 504)


async def _download_b64(client, url):
    response = await client.get(url)
    response.raise_for_status()
    return base64.b64encode(response.content).decode("ascii")


async def fetch_ali_image_response(client, response, meta):
    """提交结果 -> 轮询 -> OpenAI 图像响应"""
    error = await check_response(response, "fetch_ali_image_response")
    if error:
        raise error

    submit = response.json()
    if submit.get("code"):
        raise RelayError(submit.get("message") or "ali task submit failed", submit["code"], 400)

    task_id = safe_get(submit, "output", "task_id")
    if not task_id:
        raise RelayError("ali task id is missing", "ali_task_id_missing", 500)

    task = await wait_ali_task(client, meta, task_id)
    output = task.get("output") or {}
    if output.get("task_status") != "SUCCEEDED":
        raise RelayError(
            output.get("message") or f"ali task {task_id} {output.get('task_status')}",
            output.get("code") or "ali_async_task_failed",
            400,
        )

    image_response = ImageGenerationResponse(created=int(time()))
    for result in output.get("results") or []:
        image_url = result.get("url")
        if not image_url:
            logger.warning("ali task %s result skipped: %s", task_id, result.get("message"))
            continue
        if meta.response_format == "b64_json":
            image_response.data.append(ImageObject(b64_json=await _download_b64(client, image_url)))
        else:
            image_response.data.append(ImageObject(url=image_url))

    return render_image_response(image_response)


def register():
    """注册阿里渠道到注册中心"""
    from .registry import register_channel

    register_channel(
        api_type=APIType.ALI,
        type_name="ali",
        default_base_url=ALI_DEFAULT_BASE_URL,
        description="Alibaba DashScope text2image",
        request_adapter=get_ali_image_request,
        convert_image_request=convert_ali_image_request,
        response_adapter=fetch_ali_image_response,
    )
