"""
错误响应处理模块

提供标准化的 OpenAI 风格错误响应，以及中继流水线内部使用的 RelayError。

错误类型说明：
- invalid_request_error: 请求参数错误 (400, 413, 422)
- authentication_error: 认证失败 (401)
- permission_error/permission_denied_error: 权限不足 (403)
- not_found_error: 资源不存在 (404)
- rate_limit_error/rate_limit_exceeded: 请求频率限制 (429)
- api_error/internal_server_error: 服务器内部错误 (500+)
- service_unavailable_error: 服务不可用 (503)
"""

from typing import Any, Dict, Optional, Union

from fastapi.responses import JSONResponse


# OpenAI 标准错误类型映射
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_denied_error",
    404: "not_found_error",
    413: "invalid_request_error",
    422: "invalid_request_error",
    429: "rate_limit_exceeded",
    500: "internal_server_error",
    502: "api_error",
    503: "service_unavailable_error",
    504: "api_error",
}

# 网关自身产生的错误统一使用该类型，便于和上游透传的错误区分
RELAY_ERROR_TYPE = "image_relay_error"


def create_error_response(
    message: str,
    status_code: int = 500,
    error_type: Optional[str] = None,
    param: Optional[str] = None,
    code: Optional[Union[str, int]] = None
) -> JSONResponse:
    """
    创建标准 OpenAI 风格的错误响应

    参数:
        message: 错误信息描述
        status_code: HTTP 状态码
        error_type: 错误类型，如果为 None 则根据 status_code 自动推断
        param: 触发错误的参数名（可选）
        code: 错误代码（可选）

    示例响应格式:
    {
        "error": {
            "message": "user quota is not enough",
            "type": "image_relay_error",
            "code": "insufficient_user_quota"
        }
    }
    """
    if error_type is None:
        error_type = ERROR_TYPE_MAP.get(status_code, "api_error")

    error_content = {
        "message": message,
        "type": error_type,
    }

    # 只在有值时添加 param 和 code 字段
    if param is not None:
        error_content["param"] = param
    if code is not None:
        error_content["code"] = code

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content}
    )


def openai_error_response(message: str, status_code: int = 500) -> JSONResponse:
    """便捷方法：根据状态码推断错误类型"""
    return create_error_response(message=message, status_code=status_code)


class RelayError(Exception):
    """
    中继流水线中的结构化错误。

    每一步失败都抛出 RelayError，由路由层统一渲染为错误信封，
    code 为机器可读的错误码，status_code 为返回给客户端的 HTTP 状态码。
    """

    def __init__(
        self,
        message: str,
        code: Union[str, int],
        status_code: int,
        error_type: Optional[str] = RELAY_ERROR_TYPE,
        param: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.error_type = error_type
        self.param = param

    def to_dict(self) -> Dict[str, Any]:
        error_content: Dict[str, Any] = {
            "message": self.message,
            "type": self.error_type or ERROR_TYPE_MAP.get(self.status_code, "api_error"),
            "code": self.code,
        }
        if self.param is not None:
            error_content["param"] = self.param
        return {"error": error_content}

    def to_response(self) -> JSONResponse:
        return create_error_response(
            message=self.message,
            status_code=self.status_code,
            error_type=self.error_type,
            param=self.param,
            code=self.code,
        )

    def __repr__(self) -> str:
        return f"RelayError(code={self.code!r}, status_code={self.status_code}, message={self.message!r})"


def error_wrapper(err: Union[BaseException, str], code: str, status_code: int) -> RelayError:
    """把任意异常包装成 RelayError，保留原始错误信息"""
    message = str(err) if str(err) else type(err).__name__
    return RelayError(message=message, code=code, status_code=status_code)


def install_exception_handlers(app) -> None:
    """注册 RelayError / HTTPException 的统一错误信封渲染"""
    from fastapi import HTTPException, Request

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return exc.to_response()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return openai_error_response(message=str(exc.detail), status_code=exc.status_code)
