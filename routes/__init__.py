"""
API 路由模块

"""

from fastapi import APIRouter

# 创建主路由器
api_router = APIRouter()

# 导入并注册子路由
from routes.images import router as images_router
from routes.admin import router as admin_router

api_router.include_router(images_router, tags=["Images"])
api_router.include_router(admin_router, tags=["Admin"])

__all__ = ["api_router"]
