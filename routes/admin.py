"""
Admin 管理路由
"""

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse

from core.channels import list_channels
from core.log_config import logger
from routes.deps import get_pricing_store, get_session_factory, verify_admin_api_key
from utils import normalize_options, save_options_to_db

router = APIRouter()


@router.get("/v1/api_config")
async def api_config(
    admin_key: str = Depends(verify_admin_api_key),
    pricing_store=Depends(get_pricing_store),
):
    """
    获取当前生效的选项与价格表
    """
    snapshot = pricing_store.snapshot()
    return JSONResponse(content={
        "options": dict(snapshot.options),
        "model_ratio": dict(snapshot.model_ratio),
        "model_ratio2": dict(snapshot.model_ratio2),
        "group_ratio": dict(snapshot.group_ratio),
        "quota_per_unit": snapshot.quota_per_unit,
        "channels": [channel.to_dict() for channel in list_channels()],
    })


@router.post("/v1/api_config/update")
async def api_config_update(
    admin_key: str = Depends(verify_admin_api_key),
    config: dict = Body(...),
    pricing_store=Depends(get_pricing_store),
    session_factory=Depends(get_session_factory),
):
    """
    更新选项：先写入选项表，成功后再发布新的价格快照
    """
    options = config.get("options")
    if not isinstance(options, dict) or not options:
        raise HTTPException(status_code=400, detail="No updatable sections provided. Allowed keys: options.")

    options = normalize_options(options)
    try:
        await save_options_to_db(session_factory, options)
    except Exception as e:
        # 不允许“假成功”：持久化失败直接返回非 200
        logger.error("persist options failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to persist options: {e}") from e

    snapshot = pricing_store.update_options(options)
    logger.info("options updated: %s", ", ".join(sorted(options)))

    return JSONResponse(content={
        "message": "API config updated",
        "updated": sorted(options),
        "billing_by_request_enabled": snapshot.billing_by_request_enabled,
        "model_ratio_enabled": snapshot.model_ratio_enabled,
    })
