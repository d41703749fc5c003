"""远程仓库元数据来源 - GitHub REST API

约定:
  标签列表  GET {api_base}/repos/{owner}/{name}/tags?per_page=100  (按 Link 头翻页)
  源码归档  GET {api_base}/repos/{owner}/{name}/zipball/{reference}

只负责拼 URL 和解析响应，不发请求；请求、重试和错误分类在 fetcher 里。
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

from wdm import __version__
from wdm.core.config import DEFAULT_API_BASE_URL
from wdm.core.exceptions import FetchError
from wdm.utils.net import validate_url_scheme

USER_AGENT = f"wdm-cli/{__version__}"
ACCEPT = "application/vnd.github+json"
TAGS_PER_PAGE = 100
MAX_TAG_PAGES = 10


class GitHubSource:
    """GitHub（含 Enterprise，通过 api_base_url 指定）仓库端点"""

    def __init__(self, api_base_url: str = DEFAULT_API_BASE_URL) -> None:
        validate_url_scheme(api_base_url, context="api_base_url")
        self.api_base_url = api_base_url.rstrip("/")

    def _repo_url(self, repository: str) -> str:
        owner, name = repository.split("/", 1)
        return f"{self.api_base_url}/repos/{quote(owner, safe='')}/{quote(name, safe='')}"

    def tags_url(self, repository: str) -> str:
        return f"{self._repo_url(repository)}/tags?per_page={TAGS_PER_PAGE}"

    def archive_url(self, repository: str, reference: str) -> str:
        # 标签里可能有 /，整体编码
        return f"{self._repo_url(repository)}/zipball/{quote(reference, safe='')}"

    def headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": ACCEPT}
        if token:
            headers["Authorization"] = f"token {token}"
        return headers

    @staticmethod
    def parse_tags(payload: bytes) -> list[str]:
        """解析标签列表响应: [{"name": "v1.0.0", ...}, ...]"""
        try:
            data: Any = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise FetchError(f"标签列表不是合法 JSON: {e}") from e
        if not isinstance(data, list):
            raise FetchError("标签列表响应格式错误: 顶层不是数组")
        return [
            item["name"] for item in data
            if isinstance(item, dict) and isinstance(item.get("name"), str)
        ]
