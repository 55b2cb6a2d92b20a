import os
from typing import Final, Optional

_TRUE_VALUES: Final[set[str]] = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES: Final[set[str]] = {"0", "false", "no", "n", "off"}

# 选项表中的布尔值沿用管理后台写入的格式（1/t/T/TRUE/true/True 等）
_OPTION_TRUE_VALUES: Final[set[str]] = {"1", "t", "T", "TRUE", "true", "True"}


def env_bool(name: str, default: bool = False) -> bool:
    """读取布尔类型环境变量。

    兼容常见写法：1/0, true/false, yes/no, on/off。
    """

    raw = os.getenv(name)
    if raw is None:
        return default

    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def option_bool(value: Optional[str]) -> bool:
    """解析选项表里的布尔开关。

    只接受严格写法，空值或无法识别的值一律视为 False。
    """
    if value is None:
        return False
    return value in _OPTION_TRUE_VALUES


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default
