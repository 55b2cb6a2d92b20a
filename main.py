import os
import tomllib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.log_config import logger
from routes import api_router
from core.env import env_bool
from core.client_manager import ClientManager
from core.error_response import install_exception_handlers
from core.handler import DEFAULT_TIMEOUT as HANDLER_DEFAULT_TIMEOUT, ImageRelayHandler
from core.pricing import PricingStore
from core.store import SQLQuotaStore, UserQuotaCache

from utils import load_config

import db

DEFAULT_TIMEOUT = int(os.getenv("TIMEOUT", HANDLER_DEFAULT_TIMEOUT))
# DEBUG 环境变量支持 true/false/1/0/yes/no
is_debug = env_bool("DEBUG", False)

# 从 pyproject.toml 读取版本号
try:
    with open('pyproject.toml', 'rb') as f:
        data = tomllib.load(f)
        VERSION = data['project']['version']
except (OSError, KeyError, tomllib.TOMLDecodeError):
    VERSION = 'unknown'
logger.info("VERSION: %s", VERSION)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db.async_session is None:
        raise RuntimeError("Database is disabled, image relay cannot start")

    try:
        await db.create_tables(db.db_engine)
    except Exception as e:
        logger.exception("Database init failed during startup: %s", e)
        raise

    app.state.session_factory = db.async_session

    config, snapshot = await load_config(db.async_session)
    app.state.config = config
    app.state.pricing_store = PricingStore(snapshot)
    app.state.admin_key = os.getenv("ADMIN_KEY") or config.get("admin_key")

    default_config = {
        "headers": {
            "User-Agent": "curl/7.68.0",
            "Accept": "*/*",
            "Accept-Encoding": "identity",
        },
        "http2": True,
        "verify": True,
        "follow_redirects": True
    }

    # 初始化客户端管理器（增加连接池以支持长时间请求）
    app.state.client_manager = ClientManager(pool_size=300, max_keepalive_connections=100)
    await app.state.client_manager.init(default_config)

    app.state.store = SQLQuotaStore(db.async_session, cache=UserQuotaCache())
    app.state.image_handler = ImageRelayHandler(
        client_manager=app.state.client_manager,
        store=app.state.store,
        pricing_store=app.state.pricing_store,
        default_timeout=DEFAULT_TIMEOUT,
    )

    yield

    await app.state.client_manager.close()
    await db.db_engine.dispose()


app = FastAPI(lifespan=lifespan, debug=is_debug, version=VERSION)
app.include_router(api_router)
install_exception_handlers(app)

# 配置 CORS 中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 允许所有来源
    allow_credentials=True,
    allow_methods=["*"],  # 允许所有 HTTP 方法
    allow_headers=["*"],  # 允许所有头部字段
)


if __name__ == '__main__':
    import uvicorn
    PORT = int(os.getenv("PORT", "8000"))
    RELOAD = env_bool("RELOAD", False)

    uvicorn_config = {
        "host": "0.0.0.0",
        "port": PORT,
        "ws": "none",
    }

    if RELOAD:
        uvicorn_config.update({
            "reload": True,
            "reload_dirs": ["./"],
            "reload_includes": ["*.py", "api.yaml"],
            "reload_excludes": ["./data"],
        })
        uvicorn.run("main:app", **uvicorn_config)
    else:
        uvicorn.run(app, **uvicorn_config)
