"""
路由共享依赖项

提供认证与处理器获取等共享功能
"""

from fastapi import HTTPException, Request

from core.auth import AuthContext, verify_admin_api_key, verify_api_key
from core.handler import ImageRelayHandler

__all__ = [
    "AuthContext",
    "get_image_handler",
    "get_pricing_store",
    "get_session_factory",
    "verify_admin_api_key",
    "verify_api_key",
]


def get_image_handler(request: Request) -> ImageRelayHandler:
    handler = getattr(request.app.state, "image_handler", None)
    if handler is None:
        raise HTTPException(status_code=503, detail="Image relay handler is not initialized")
    return handler


def get_pricing_store(request: Request):
    return request.app.state.pricing_store


def get_session_factory(request: Request):
    return request.app.state.session_factory
