"""制品拉取器

职责:
- 凭据查找（token_env 未设置时在任何网络请求之前失败）
- 标签列表拉取（按 Link 头翻页）
- 源码归档流式下载到调用方给出的文件对象
- HTTP 错误分类与可重试错误的指数退避重试
"""

from __future__ import annotations

import http.client
import logging
import time
import urllib.error
import urllib.request
from email.utils import parsedate_to_datetime
from typing import IO, Any, Callable, Iterator, Mapping, TypeVar

from wdm.core.dep.source import MAX_TAG_PAGES, GitHubSource
from wdm.core.exceptions import (
    ConfigError,
    ConnectionFailure,
    FetchError,
    MissingCredential,
    NotFound,
    RateLimited,
    Unauthorized,
)
from wdm.utils.net import next_link, validate_url_scheme

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CHUNK = 64 * 1024

# 凭据查找函数：变量名 -> 值或 None（默认 os.environ.get）
EnvLookup = Callable[[str], "str | None"]


def lookup_credential(token_env: str | None, env_lookup: EnvLookup) -> str | None:
    """按 token_env 取出凭据；未声明返回 None，声明了但未设置抛 MissingCredential"""
    if not token_env:
        return None
    token = env_lookup(token_env)
    if not token:
        raise MissingCredential(f"环境变量 {token_env} 未设置，无法访问私有仓库")
    return token


def _retry_after(headers: Mapping[str, str] | None) -> float | None:
    """解析 Retry-After（秒数或 HTTP 日期），以及 GitHub 的 X-RateLimit-Reset"""
    if not headers:
        return None
    value = headers.get("Retry-After")
    if value:
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            return max(0.0, parsedate_to_datetime(value).timestamp() - time.time())
        except (TypeError, ValueError):
            return None
    reset = headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None
    return None


class ArtifactFetcher:
    """远程仓库访问 - 标签列表与归档下载

    opener 只需提供 open(request, timeout=...)，默认 urllib 的 OpenerDirector，
    测试中可替换为假的远端。
    """

    def __init__(
        self,
        source: GitHubSource | None = None,
        opener: Any = None,
        timeout: int = 60,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        max_tag_pages: int = MAX_TAG_PAGES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source or GitHubSource()
        self._opener = opener or urllib.request.build_opener()
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.max_tag_pages = max(1, max_tag_pages)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    def list_tags(self, repository: str, token: str | None = None) -> list[str]:
        """列出仓库的全部标签名

        标签接口不按版本排序，只拿到部分页会选错版本，
        所以超过 max_tag_pages 页直接报错而不是截断。
        """
        url = self.source.tags_url(repository)
        tags: list[str] = []
        pages = 0
        while True:
            pages += 1
            body, headers = self._retrying(
                lambda u=url: self._get(u, token), f"获取标签 {repository}",
            )
            tags.extend(self.source.parse_tags(body))
            next_url = next_link(headers.get("Link") if headers else None)
            if not next_url:
                break
            if pages >= self.max_tag_pages:
                raise FetchError(
                    f"{repository} 标签超过 {self.max_tag_pages} 页，请调大配置项 max_tag_pages"
                )
            try:
                validate_url_scheme(next_url, context="Link")
            except ConfigError as e:
                raise FetchError(str(e)) from e
            url = next_url
        logger.debug("%s 共 %d 个标签 (%d 页)", repository, len(tags), pages)
        return tags

    def fetch(
        self, repository: str, reference: str, token: str | None, out: IO[bytes],
    ) -> int:
        """把 reference 对应的源码归档流式写入 out，返回字节数

        重试前会清空 out，保证写入的是一次完整的响应体。
        """
        url = self.source.archive_url(repository, reference)

        def attempt() -> int:
            out.seek(0)
            out.truncate()
            with self._open(url, token) as resp:
                expected = _content_length(resp)
                total = 0
                for chunk in _read_chunks(resp, url):
                    out.write(chunk)
                    total += len(chunk)
            if expected is not None and total != expected:
                raise ConnectionFailure(f"响应体被截断: {url} ({total}/{expected} 字节)")
            return total

        size = self._retrying(attempt, f"下载 {repository}@{reference}")
        logger.info("已下载 %s@%s (%d 字节)", repository, reference, size)
        return size

    # ------------------------------------------------------------------
    # 请求与错误分类
    # ------------------------------------------------------------------

    def _open(self, url: str, token: str | None) -> Any:
        req = urllib.request.Request(url, headers=self.source.headers(token))
        try:
            return self._opener.open(req, timeout=self.timeout)  # nosec B310
        except urllib.error.HTTPError as e:
            raise self._classify(e.code, e.headers, url) from e
        except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
            raise ConnectionFailure(f"连接失败: {url}: {e}") from e

    def _get(self, url: str, token: str | None) -> tuple[bytes, Any]:
        with self._open(url, token) as resp:
            body = b"".join(_read_chunks(resp, url))
            return body, resp.headers

    @staticmethod
    def _classify(status: int, headers: Mapping[str, str] | None, url: str) -> FetchError:
        retry_after = _retry_after(headers)
        if status == 401:
            return Unauthorized(f"凭据无效或缺失 (401): {url}", status)
        if status == 403:
            if headers is not None and headers.get("X-RateLimit-Remaining") == "0":
                return RateLimited(f"API 限流 (403): {url}", status, retry_after)
            return Unauthorized(f"无权访问 (403): {url}", status)
        if status == 404:
            return NotFound(f"仓库或引用不存在 (404): {url}", status)
        if status == 429:
            return RateLimited(f"API 限流 (429): {url}", status, retry_after)
        if status >= 500:
            return ConnectionFailure(f"服务端错误 ({status}): {url}", status, retry_after)
        return FetchError(f"请求失败 ({status}): {url}", status)

    # ------------------------------------------------------------------
    # 重试
    # ------------------------------------------------------------------

    def _delay(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            delay = retry_after
        else:
            delay = self.backoff_seconds * (2 ** (attempt - 1))
        return min(max(delay, 0.0), self.max_backoff_seconds)

    def _retrying(self, op: Callable[[], T], label: str) -> T:
        attempt = 0
        while True:
            try:
                return op()
            except FetchError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self._delay(attempt, getattr(e, "retry_after", None))
                logger.warning(
                    "%s 失败 (%s)，%.1f 秒后第 %d/%d 次重试",
                    label, e.code, delay, attempt, self.max_retries,
                )
                self._sleep(delay)


def _content_length(resp: Any) -> int | None:
    headers = getattr(resp, "headers", None)
    value = headers.get("Content-Length") if headers is not None else None
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _read_chunks(resp: Any, url: str) -> Iterator[bytes]:
    """逐块读取响应体；只有读网络时的错误归为连接失败，写本地文件的错误原样上抛"""
    while True:
        try:
            chunk = resp.read(_CHUNK)
        except (OSError, http.client.HTTPException) as e:
            raise ConnectionFailure(f"读取响应失败: {url}: {e}") from e
        if not chunk:
            return
        yield chunk
