import os
import ssl as ssl_module
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import BigInteger, Boolean, Column, Integer, String, Text, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from core.env import env_bool
from core.log_config import logger

# Render / Railway 等平台通常提供 DATABASE_URL（多为 postgres://...），这里统一解析。
DATABASE_URL = (
    os.getenv("DATABASE_URL")
    or os.getenv("DB_URL")
    or os.getenv("SQLALCHEMY_DATABASE_URL")
)


def detect_db_type(database_url: Optional[str], explicit: Optional[str] = None) -> str:
    """DB_TYPE：显式优先；否则根据 DATABASE_URL 自动推断；默认 sqlite"""
    explicit = (explicit or "").strip().lower()
    if explicit:
        return explicit
    if not database_url:
        return "sqlite"
    url = database_url.strip().lower()
    if url.startswith(("postgres://", "postgresql://", "postgresql+")):
        return "postgres"
    if url.startswith(("mysql://", "mariadb://", "mysql+", "mariadb+")):
        return "mysql"
    return "sqlite"


DB_TYPE = detect_db_type(DATABASE_URL, os.getenv("DB_TYPE"))


def normalize_database_url(url: str, db_type: str) -> str:
    """将常见 DATABASE_URL 规范为 SQLAlchemy async URL。"""

    url = url.strip()
    db_type = (db_type or "").lower()

    if db_type == "postgres":
        if url.startswith("postgres://"):
            return "postgresql+asyncpg://" + url[len("postgres://"):]
        if url.startswith("postgresql://"):
            return "postgresql+asyncpg://" + url[len("postgresql://"):]
        return url

    if db_type == "sqlite":
        # 常见: sqlite:///./data/relay.db
        if url.startswith("sqlite://") and "+aiosqlite" not in url:
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url

    if db_type == "mysql":
        # 统一使用 asyncmy 异步驱动
        if url.startswith("mysql://"):
            return "mysql+asyncmy://" + url[len("mysql://"):]
        if url.startswith("mariadb://"):
            return "mariadb+asyncmy://" + url[len("mariadb://"):]
        if url.startswith("mysql+") and not url.startswith("mysql+asyncmy://"):
            return "mysql+asyncmy://" + url.split("://", 1)[1]
        return url

    return url


def extract_asyncpg_ssl_connect_args(db_url: str) -> tuple[str, dict]:
    """asyncpg 不接受 ?sslmode=...，这里把它从 URL 中摘出来转换成 ssl= 参数。

    返回： (clean_url, connect_args)
    """

    parts = urlsplit(db_url)
    qsl = parse_qsl(parts.query, keep_blank_values=True)

    sslmode = None
    sslrootcert = None
    kept: list[tuple[str, str]] = []

    for k, v in qsl:
        lk = k.lower()
        if lk == "sslmode":
            sslmode = v
        elif lk == "sslrootcert":
            sslrootcert = v
        else:
            kept.append((k, v))

    connect_args: dict = {}

    if sslmode:
        mode = str(sslmode).strip().lower()
        if mode in ("disable", "false", "0", "off"):
            connect_args["ssl"] = False
        else:
            ctx = ssl_module.create_default_context(cafile=sslrootcert) if sslrootcert else ssl_module.create_default_context()
            if mode == "require":
                # require：加密但不校验证书
                ctx.check_hostname = False
                ctx.verify_mode = ssl_module.CERT_NONE
            elif mode in ("verify-ca", "verify_ca"):
                ctx.check_hostname = False
                ctx.verify_mode = ssl_module.CERT_REQUIRED
            connect_args["ssl"] = ctx

    new_query = urlencode(kept, doseq=True)
    clean_url = urlunsplit((parts.scheme, parts.netloc, parts.path, new_query, parts.fragment))

    return clean_url, connect_args


# 定义数据库模型
Base = declarative_base()

_IS_MYSQL = DB_TYPE == "mysql"

# MySQL 方言要求 VARCHAR 必须指定长度；带索引的列使用 191 避免 utf8mb4 下索引过长
_VARCHAR = String(255) if _IS_MYSQL else String
_VARCHAR_INDEX = String(191) if _IS_MYSQL else String


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(_VARCHAR_INDEX, unique=True, index=True)
    group = Column(_VARCHAR, default="default")
    quota = Column(BigInteger, default=0)
    used_quota = Column(BigInteger, default=0)
    request_count = Column(Integer, default=0)


class Token(Base):
    __tablename__ = "tokens"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, index=True)
    key = Column(_VARCHAR_INDEX, unique=True, index=True)
    name = Column(_VARCHAR, default="")
    remain_quota = Column(BigInteger, default=0)
    used_quota = Column(BigInteger, default=0)
    unlimited_quota = Column(Boolean, default=False)
    # 令牌级按次计费开关，仅在全局按次计费与模型倍率同时开启时生效
    billing_enabled = Column(Boolean, default=False)
    status = Column(Integer, default=1)


class Channel(Base):
    __tablename__ = "channels"

    id = Column(Integer, primary_key=True)
    type = Column(Integer, default=1)
    name = Column(_VARCHAR, default="")
    key = Column(Text, default="")
    base_url = Column(_VARCHAR, default="")
    # Azure 的 api-version 等渠道附加参数
    other = Column(_VARCHAR, default="")
    # 逗号分隔
    models = Column(Text, default="")
    group = Column(_VARCHAR, default="default")
    model_mapping = Column(Text, default="")
    # 上游代理，支持 http(s):// 与 socks5://
    proxy = Column(_VARCHAR, default="")
    priority = Column(Integer, default=0)
    status = Column(Integer, default=1)
    used_quota = Column(BigInteger, default=0)


class Log(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, index=True)
    created_at = Column(BigInteger, index=True)
    type = Column(Integer, default=2)
    content = Column(Text, default="")
    token_name = Column(_VARCHAR, default="")
    model_name = Column(_VARCHAR_INDEX, default="", index=True)
    quota = Column(BigInteger, default=0)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    channel_id = Column(Integer, index=True)
    channel_name = Column(_VARCHAR, default="")
    token_id = Column(Integer, index=True, default=0)
    # 扣费前的用户余额
    user_quota = Column(BigInteger, default=0)
    elapsed_time = Column(BigInteger, default=0)
    is_stream = Column(Boolean, default=False)
    multiplier = Column(_VARCHAR, default="")


class Option(Base):
    __tablename__ = "options"

    key = Column(_VARCHAR_INDEX, primary_key=True)
    value = Column(Text, default="")


def create_engine_from_env() -> AsyncEngine:
    """
    1) 优先使用 DATABASE_URL（适合云平台）
    2) 否则 fallback 到 DB_TYPE/DB_* 环境变量
    """
    is_debug = env_bool("DEBUG", False)
    logger.info(f"Using {DB_TYPE} database.")

    if DB_TYPE == "postgres":
        connect_args = {}
        if DATABASE_URL:
            db_url = normalize_database_url(DATABASE_URL, DB_TYPE)
            db_url, connect_args = extract_asyncpg_ssl_connect_args(db_url)
        else:
            db_url = "postgresql+asyncpg://{}:{}@{}:{}/{}".format(
                os.getenv("DB_USER", "postgres"),
                os.getenv("DB_PASSWORD", "mysecretpassword"),
                os.getenv("DB_HOST", "localhost"),
                os.getenv("DB_PORT", "5432"),
                os.getenv("DB_NAME", "postgres"),
            )
        return create_async_engine(db_url, echo=is_debug, connect_args=connect_args)

    if DB_TYPE == "mysql":
        if DATABASE_URL:
            db_url = normalize_database_url(DATABASE_URL, DB_TYPE)
        else:
            db_url = "mysql+asyncmy://{}:{}@{}:{}/{}".format(
                os.getenv("DB_USER", "root"),
                os.getenv("DB_PASSWORD", ""),
                os.getenv("DB_HOST", "localhost"),
                os.getenv("DB_PORT", "3306"),
                os.getenv("DB_NAME", "relay"),
            )
        # 空闲连接容易被服务端断开，开启 pool_pre_ping
        return create_async_engine(db_url, echo=is_debug, pool_pre_ping=True)

    if DB_TYPE == "sqlite":
        if DATABASE_URL:
            db_url = normalize_database_url(DATABASE_URL, DB_TYPE)
        else:
            db_path = os.getenv("DB_PATH", "./data/relay.db")
            data_dir = os.path.dirname(db_path)
            if data_dir:
                os.makedirs(data_dir, exist_ok=True)
            db_url = "sqlite+aiosqlite:///" + db_path
        engine = create_async_engine(db_url, echo=is_debug)
        install_sqlite_pragmas(engine)
        return engine

    raise ValueError(f"Unsupported DB_TYPE: {DB_TYPE}. Please use 'sqlite', 'postgres' or 'mysql'.")


def install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma_on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA busy_timeout = 30000;")  # 30 seconds
            cursor.execute("PRAGMA synchronous = NORMAL;")
        finally:
            cursor.close()


def make_session_factory(engine: AsyncEngine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# DISABLE_DATABASE=true 时不创建引擎（仅用于本地调试配置加载）
DISABLE_DATABASE = env_bool("DISABLE_DATABASE", False)
db_engine: Optional[AsyncEngine] = None
async_session = None

if not DISABLE_DATABASE:
    db_engine = create_engine_from_env()
    async_session = make_session_factory(db_engine)

