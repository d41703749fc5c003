"""共享测试夹具：假的 GitHub 远端、归档构造、全局状态隔离"""

from __future__ import annotations

import io
import json
import tarfile
import zipfile
from email.message import Message
from typing import Any, Callable
from urllib.error import HTTPError
from urllib.parse import unquote, urlsplit

import pytest

from wdm.core.config import reset_config
from wdm.core.dep.fetcher import ArtifactFetcher
from wdm.core.dep.source import GitHubSource
from wdm.utils.logger import reset_logging

API_BASE = "https://api.github.test"


def build_zip(files: dict[str, str | bytes], top: str | None = "acme-foo-1a2b3c") -> bytes:
    """构造 zip 归档，默认像 GitHub zipball 一样包一层顶层目录；时间戳固定，输出可复现"""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            arcname = f"{top}/{name}" if top else name
            zf.writestr(zipfile.ZipInfo(arcname, date_time=(2024, 1, 1, 0, 0, 0)), content)
    return buf.getvalue()


def build_bad_name_zip() -> bytes:
    """文件名带 UTF-8 标志位但字节不是合法 UTF-8 的 zip"""
    data = build_zip({"\u00e9\u00e9.php": "<?php"})
    return data.replace("\u00e9\u00e9".encode(), b"\xff\xfe\xfd\xfc")


def build_tar(
    files: dict[str, str | bytes],
    top: str | None = None,
    symlinks: dict[str, str] | None = None,
) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{top}/{name}" if top else name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(f"{top}/{name}" if top else name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
    return buf.getvalue()


def http_error(url: str, status: int, headers: dict[str, str] | None = None) -> HTTPError:
    hdrs = Message()
    for k, v in (headers or {}).items():
        hdrs[k] = v
    return HTTPError(url, status, "error", hdrs, io.BytesIO(b""))


class FakeResponse:
    """模拟 urlopen 返回的响应对象"""

    def __init__(self, body: bytes, headers: dict[str, str] | None = None) -> None:
        self._body = io.BytesIO(body)
        self.headers = Message()
        for k, v in (headers or {}).items():
            self.headers[k] = v

    def read(self, n: int = -1) -> bytes:
        return self._body.read(n)

    def close(self) -> None:
        pass

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class FakeRemote:
    """按仓库和标签响应 tags / zipball 请求，记录每次请求

    remote.publish("acme/foo", "v1.0.0")            # 默认生成一个小插件归档
    remote.fail("zipball", 503, times=2)            # 接下来两次 zipball 请求返回 503
    """

    def __init__(self) -> None:
        self.repos: dict[str, dict[str, bytes]] = {}
        self.requests: list[Any] = []
        self._errors: dict[str, list[tuple[int, dict[str, str]]]] = {}

    def publish(self, repository: str, tag: str, archive: bytes | None = None) -> bytes:
        if archive is None:
            archive = build_zip({"plugin.php": f"<?php // {repository} {tag}\n"})
        self.repos.setdefault(repository, {})[tag] = archive
        return archive

    def fail(
        self, kind: str, status: int, headers: dict[str, str] | None = None, times: int = 1,
    ) -> None:
        self._errors.setdefault(kind, []).extend([(status, headers or {})] * times)

    def count(self, kind: str) -> int:
        return sum(1 for r in self.requests if f"/{kind}" in urlsplit(r.full_url).path)

    def open(self, req: Any, timeout: float | None = None) -> FakeResponse:
        self.requests.append(req)
        url = req.full_url
        parts = urlsplit(url).path.split("/")  # ['', 'repos', owner, name, kind, ref?]
        repository = f"{unquote(parts[2])}/{unquote(parts[3])}"
        kind = parts[4]

        queue = self._errors.get(kind)
        if queue:
            status, headers = queue.pop(0)
            raise http_error(url, status, headers)

        tags = self.repos.get(repository)
        if tags is None:
            raise http_error(url, 404)
        if kind == "tags":
            return FakeResponse(json.dumps([{"name": t} for t in tags]).encode())
        ref = unquote(parts[5])
        if ref not in tags:
            raise http_error(url, 404)
        body = tags[ref]
        return FakeResponse(body, {"Content-Length": str(len(body))})


@pytest.fixture(autouse=True)
def _isolate_global_state(monkeypatch: pytest.MonkeyPatch):
    for var in (
        "GITHUB_API_BASE_URL", "WDM_CACHE_DIR", "WDM_MAX_WORKERS",
        "WDM_LOG_LEVEL", "WDM_LOG_JSON",
    ):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()
    reset_logging()


@pytest.fixture()
def make_zip() -> Callable[..., bytes]:
    return build_zip


@pytest.fixture()
def bad_name_zip() -> bytes:
    return build_bad_name_zip()


@pytest.fixture()
def make_tar() -> Callable[..., bytes]:
    return build_tar


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def fetcher(remote: FakeRemote, sleeps: list[float]) -> ArtifactFetcher:
    return ArtifactFetcher(GitHubSource(API_BASE), opener=remote, sleep=sleeps.append)
