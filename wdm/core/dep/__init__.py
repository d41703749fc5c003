"""依赖流水线组件

- version.py:   约束解析与版本选择（纯函数）
- source.py:    GitHub 端点
- fetcher.py:   标签列表与归档下载、错误分类、重试
- cache.py:     内容寻址缓存
- integrity.py: SHA-256 校验
- installer.py: 安全解压与原子替换
"""

from wdm.core.dep.cache import ContentCache
from wdm.core.dep.fetcher import ArtifactFetcher, lookup_credential
from wdm.core.dep.installer import Installer
from wdm.core.dep.integrity import verify
from wdm.core.dep.source import GitHubSource
from wdm.core.dep.version import ParseResult, parse_constraint, resolve

__all__ = [
    "ArtifactFetcher",
    "ContentCache",
    "GitHubSource",
    "Installer",
    "ParseResult",
    "lookup_credential",
    "parse_constraint",
    "resolve",
    "verify",
]
