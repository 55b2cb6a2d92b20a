"""
响应处理模块

负责：
- 把上游非 2xx 响应转换为 RelayError（尽量保留上游的 message/type/code）
- 原样透传上游响应体
- 把厂商私有结果渲染为 OpenAI 图像响应
"""

import json
from typing import Any, Optional

import httpx
from fastapi.responses import JSONResponse
from starlette.responses import Response

from .error_response import ERROR_TYPE_MAP, RelayError
from .log_config import logger
from .models import ImageGenerationResponse
from .utils import safe_get

# 透传时不应复制给客户端的逐跳头
_HOP_BY_HOP_HEADERS = {
    "connection",
    "content-length",
    "content-encoding",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
}


def _parse_json(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def relay_error_from_upstream(response: httpx.Response, error_log: str) -> RelayError:
    """
    解析上游错误体。

    兼容 OpenAI 风格 {"error": {...}}、阿里 {"code", "message"}、
    百度 {"error_code", "error_msg"} 三种格式，无法解析时使用原始文本。
    """
    raw = response.content
    data = _parse_json(raw)
    status_code = response.status_code if response.status_code >= 400 else 500

    message: Optional[str] = None
    code: Any = None
    error_type: Optional[str] = None

    if isinstance(data, dict):
        if isinstance(data.get("error"), dict):
            message = safe_get(data, "error", "message")
            code = safe_get(data, "error", "code")
            error_type = safe_get(data, "error", "type")
        elif data.get("error_code"):
            message = data.get("error_msg")
            code = data.get("error_code")
        elif data.get("code"):
            message = data.get("message")
            code = data.get("code")

    if not message:
        text = raw.decode("utf-8", errors="replace").strip()
        message = text or f"{error_log} HTTP Error {response.status_code}"

    if code is None:
        code = f"upstream_http_{response.status_code}"

    logger.warning("%s upstream error: status=%s code=%s message=%s", error_log, response.status_code, code, message)

    return RelayError(
        message=message,
        code=code,
        status_code=status_code,
        error_type=error_type or ERROR_TYPE_MAP.get(status_code, "upstream_error"),
    )


async def check_response(response: httpx.Response, error_log: str) -> Optional[RelayError]:
    """
    检查 HTTP 响应状态码，如果不是 2xx 则返回 RelayError，否则返回 None
    """
    if response is not None and not (200 <= response.status_code < 300):
        await response.aread()
        return relay_error_from_upstream(response, error_log)
    return None


def forward_response(response: httpx.Response) -> Response:
    """原样透传上游响应（状态码、响应体和内容类型）"""
    headers = {
        k: v for k, v in response.headers.items()
        if k.lower() not in _HOP_BY_HOP_HEADERS
    }
    return Response(
        content=response.content,
        status_code=response.status_code,
        headers=headers,
    )


def render_image_response(image_response: ImageGenerationResponse) -> JSONResponse:
    return JSONResponse(content=image_response.model_dump(exclude_none=True))
