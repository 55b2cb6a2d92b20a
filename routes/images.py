"""
Images 路由
"""

from fastapi import APIRouter, Depends, Request

from core.handler import ImageRelayHandler
from core.routing import build_relay_meta, peek_model_name, select_channel
from routes.deps import AuthContext, get_image_handler, get_session_factory, verify_api_key

router = APIRouter()


@router.post("/v1/images/generations")
@router.post("/v1/images/generations/", include_in_schema=False)
@router.post("/images/generations", include_in_schema=False)
async def images_generations(
    request: Request,
    auth: AuthContext = Depends(verify_api_key),
    handler: ImageRelayHandler = Depends(get_image_handler),
    session_factory=Depends(get_session_factory),
):
    """
    生成图像

    兼容 OpenAI Images API 格式
    """
    body = await request.body()
    channel = await select_channel(session_factory, auth.group, peek_model_name(body))
    meta = build_relay_meta(auth, channel)
    return await handler.relay(body, meta)
