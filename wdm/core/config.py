"""集中配置管理

工具自身的配置（缓存目录、远程 API 地址、并行度、重试策略）。
清单 wdm.yml 描述“装什么”，这里描述“怎么装”。
支持从 YAML 文件加载 + 环境变量覆盖 + 编程式覆盖。
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Mapping

from wdm.core.exceptions import ConfigError
from wdm.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "wdm.config.yml"
DEFAULT_API_BASE_URL = "https://api.github.com"

# 环境变量 -> 配置字段
_ENV_OVERRIDES = {
    "GITHUB_API_BASE_URL": "api_base_url",
    "WDM_CACHE_DIR": "cache_dir",
    "WDM_MAX_WORKERS": "max_workers",
}


@dataclass
class Config:
    """wdm 全局配置"""

    # 文件
    manifest: str = "wdm.yml"
    lockfile: str = "wdm.lock"
    cache_dir: str = ".wdm-cache"  # 相对路径以清单所在目录为基准

    # 远程
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout: int = 60  # 秒
    max_tag_pages: int = 10  # 标签列表最多翻页数，每页 100 个

    # 执行
    max_workers: int = 4

    # 重试
    max_retries: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.max_workers = self._int("max_workers", self.max_workers, minimum=1)
        self.max_retries = self._int("max_retries", self.max_retries, minimum=0)
        self.timeout = self._int("timeout", self.timeout, minimum=1)
        self.max_tag_pages = self._int("max_tag_pages", self.max_tag_pages, minimum=1)
        self.backoff_seconds = self._number("backoff_seconds", self.backoff_seconds)
        self.max_backoff_seconds = self._number("max_backoff_seconds", self.max_backoff_seconds)

    @staticmethod
    def _int(name: str, value: object, minimum: int) -> int:
        try:
            parsed = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            raise ConfigError(f"配置项 {name} 必须是整数: {value!r}") from e
        if parsed < minimum:
            raise ConfigError(f"配置项 {name} 不能小于 {minimum}: {parsed}")
        return parsed

    @staticmethod
    def _number(name: str, value: object) -> float:
        try:
            parsed = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            raise ConfigError(f"配置项 {name} 必须是数字: {value!r}") from e
        if parsed < 0:
            raise ConfigError(f"配置项 {name} 不能为负数: {parsed}")
        return parsed

    @classmethod
    def from_file(cls, path: str = DEFAULT_CONFIG_FILE) -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()} - {"extra"}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        return cfg

    def with_env(self, environ: Mapping[str, str] | None = None) -> Config:
        """返回叠加环境变量覆盖后的新配置"""
        environ = os.environ if environ is None else environ
        values = self.to_dict()
        for var, key in _ENV_OVERRIDES.items():
            if environ.get(var):
                values[key] = environ[var]
                logger.debug("环境变量覆盖配置: %s -> %s", var, key)
        return Config(**values)

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值叠加环境变量）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config().with_env()
    return _current


def init_config(path: str = DEFAULT_CONFIG_FILE) -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path).with_env()
    logger.info("配置已加载: %s", path)
    return _current


def reset_config() -> None:
    global _current  # noqa: PLW0603
    _current = None
