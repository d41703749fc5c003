"""YAML 文件统一读写工具

清单 (wdm.yml)、锁文件 (wdm.lock) 和工具配置都经由这里读写。
统一 encoding="utf-8"、空文件保护、目录自动创建、原子写入。
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from wdm.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

# 清单和锁文件都很小，超过 10MB 视为异常输入
MAX_YAML_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str) -> None:
    """原子写入文件：先写同目录临时文件再 rename，中途崩溃不会留下半个文件"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, str(path))
    except Exception:
        # 只捕获普通异常，不拦截 KeyboardInterrupt/SystemExit
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def load_yaml(path: str | Path) -> dict[str, Any]:
    """安全读取 YAML 文件

    返回:
        dict: 解析后的字典。文件不存在或为空时返回空字典

    异常:
        ConfigError: 文件过大、YAML 语法错误或顶层不是映射
        OSError: 读取失败
    """
    p = Path(path)
    if not p.exists():
        return {}

    file_size = p.stat().st_size
    if file_size > MAX_YAML_SIZE:
        raise ConfigError(
            f"YAML 文件过大: {p} ({file_size} 字节), "
            f"超过限制 {MAX_YAML_SIZE} 字节"
        )

    try:
        with open(p, encoding="utf-8") as f:
            result = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("解析 YAML 文件失败: %s, 错误: %s", p, e)
        raise ConfigError(f"YAML 格式错误: {p}: {e}") from e

    if result is None:
        return {}
    if not isinstance(result, dict):
        # 清单被写成列表等结构时不能当作“空清单”处理，否则会卸载全部插件
        raise ConfigError(
            f"{p} 顶层必须是映射 (实际类型: {type(result).__name__})"
        )
    return result


def dump_yaml(data: Any) -> str:
    """序列化为 YAML 文本，保持键顺序，输出稳定可比对"""
    return yaml.dump(
        data, default_flow_style=False,
        allow_unicode=True, sort_keys=False,
    )


def save_yaml(path: str | Path, data: Any) -> None:
    """原子写入 YAML 文件"""
    p = Path(path)
    try:
        atomic_write(p, dump_yaml(data))
    except yaml.YAMLError as e:
        logger.error("序列化 YAML 数据失败: %s, 错误: %s", p, e)
        raise
    except OSError as e:
        logger.error("写入文件失败: %s, 错误: %s", p, e)
        raise
