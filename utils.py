import base64
import json
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from ruamel.yaml import YAML, YAMLError
from sqlalchemy import select

from db import Option
from core.log_config import logger
from core.pricing import PricingSnapshot, apply_image_overrides, apply_options

yaml = YAML()
yaml.preserve_quotes = True
yaml.indent(mapping=2, sequence=4, offset=2)

API_YAML_PATH = os.getenv("CONFIG_PATH", "./api.yaml")


def option_to_string(value: Any) -> str:
    """
    选项表统一以字符串保存：
    - dict/list（例如 yaml 里直接写的 ModelRatio 映射）序列化为 JSON
    - bool 写成 "true" / "false"
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if value is None:
        return ""
    return str(value)


def normalize_options(raw: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    if not raw:
        return {}
    return {str(k): option_to_string(_plain(v)) for k, v in raw.items()}


def _plain(obj):
    # ruamel 的 CommentedMap / CommentedSeq 转成普通容器，json.dumps 才能处理
    if isinstance(obj, Mapping):
        return {str(k): _plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_plain(item) for item in obj]
    return obj


def load_config_file(path: str = None) -> dict:
    """
    读取 api.yaml，也允许从环境变量直接注入：
    - CONFIG_YAML: 直接 YAML 文本
    - CONFIG_YAML_BASE64: base64 编码的 YAML 文本
    文件缺失或格式错误时返回空配置并记录日志。
    """
    path = path or API_YAML_PATH

    yaml_text = os.getenv("CONFIG_YAML")
    config_yaml_b64 = os.getenv("CONFIG_YAML_BASE64")
    if not yaml_text and config_yaml_b64:
        yaml_text = base64.b64decode(config_yaml_b64).decode("utf-8")

    try:
        if yaml_text:
            conf = yaml.load(yaml_text)
        else:
            with open(path, 'r', encoding='utf-8') as file:
                conf = yaml.load(file)
    except FileNotFoundError:
        logger.warning("'%s' not found, using default options.", path)
        return {}
    except YAMLError as e:
        logger.error("配置文件 '%s' 格式不正确。请检查 YAML 格式。%s", path, e)
        return {}

    if not conf:
        logger.error("配置文件 '%s' 为空。请检查文件内容。", path)
        return {}
    if not isinstance(conf, Mapping):
        logger.error("配置文件 '%s' 顶层必须是映射。", path)
        return {}
    return _plain(conf)


async def load_options_from_db(session_factory) -> Dict[str, str]:
    async with session_factory() as session:
        result = await session.execute(select(Option))
        return {row.key: row.value or "" for row in result.scalars().all()}


async def save_options_to_db(session_factory, options: Mapping[str, str]) -> None:
    async with session_factory() as session:
        async with session.begin():
            for key, value in options.items():
                await session.merge(Option(key=key, value=value))


def build_pricing_snapshot(config: Mapping[str, Any], db_options: Optional[Mapping[str, str]] = None) -> PricingSnapshot:
    """api.yaml 的 image 段覆盖默认能力表；选项先取文件，再用数据库选项覆盖"""
    snapshot = apply_image_overrides(PricingSnapshot(), config.get("image"))
    options = normalize_options(config.get("options"))
    options.update(db_options or {})
    return apply_options(snapshot, options)


async def load_config(session_factory=None, path: str = None) -> Tuple[dict, PricingSnapshot]:
    config = load_config_file(path)

    db_options: Dict[str, str] = {}
    if session_factory is not None:
        db_options = await load_options_from_db(session_factory)

    snapshot = build_pricing_snapshot(config, db_options)
    logger.info(
        "pricing loaded: %d model ratios, %d per-request ratios, %d group ratios",
        len(snapshot.model_ratio),
        len(snapshot.model_ratio2),
        len(snapshot.group_ratio),
    )
    return config, snapshot
