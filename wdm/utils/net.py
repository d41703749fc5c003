"""网络工具 - URL 安全校验与分页链接解析"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from wdm.core.exceptions import ConfigError

_ALLOWED_SCHEMES = frozenset(("http", "https"))

# <https://api.github.com/repositories/1/tags?page=2>; rel="next"
_LINK_RE = re.compile(r'<([^>]+)>\s*;\s*rel="?([^";]+)"?')


def validate_url_scheme(url: str, *, context: str = "") -> None:
    """校验 URL 仅使用 http/https，防止 file:// 等非预期协议访问

    Raises:
        ConfigError: URL scheme 不在白名单内或缺少主机名
    """
    parsed = urlparse(url)
    label = f" ({context})" if context else ""
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ConfigError(
            f"不允许的 URL 协议 '{parsed.scheme}'{label}，"
            f"仅支持 http/https: {url}"
        )
    if not parsed.netloc:
        raise ConfigError(f"URL 缺少主机名{label}: {url}")


def next_link(link_header: str | None) -> str | None:
    """从 HTTP Link 头中取出 rel="next" 对应的地址，没有下一页时返回 None"""
    if not link_header:
        return None
    for part in link_header.split(","):
        m = _LINK_RE.search(part)
        if m and "next" in m.group(2).split():
            return m.group(1)
    return None
