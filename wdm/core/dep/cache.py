"""内容寻址缓存

归档按 SHA-256 存放在 <root>/<hash[:2]>/<hash>，下载中的临时文件在 <root>/tmp/*.part。
条目写入后只读，永不覆盖：

  - 期望哈希已在缓存中 -> 直接返回，不发网络请求
  - 否则下载到临时文件，计算哈希后提交；提交时同名条目已存在且内容一致则丢弃自己的结果，
    内容不同视为哈希碰撞，抛 CacheCollision
  - 同一进程内按 key (仓库, 引用) 串行化，后来者复用先完成者的条目，不重复下载
"""

from __future__ import annotations

import contextlib
import filecmp
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import IO, Callable, Hashable

from wdm.core.dep.integrity import sha256_file
from wdm.core.exceptions import CacheCollision

logger = logging.getLogger(__name__)

# 把归档写入给定文件对象
FetchFn = Callable[[IO[bytes]], object]


class ContentCache:
    """多条流水线共享的归档缓存（目录在首次写入时才创建）"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._guard = threading.Lock()
        self._commit_lock = threading.Lock()
        self._key_locks: dict[Hashable, threading.Lock] = {}
        self._by_key: dict[Hashable, str] = {}

    def path_for(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def contains(self, digest: str | None) -> bool:
        return bool(digest) and self.path_for(digest).is_file()  # type: ignore[arg-type]

    def _lock_for(self, key: Hashable | None) -> contextlib.AbstractContextManager:
        if key is None:
            return contextlib.nullcontext()
        with self._guard:
            return self._key_locks.setdefault(key, threading.Lock())

    def get_or_fetch(
        self, expected_hash: str | None, fetch_fn: FetchFn, key: Hashable | None = None,
    ) -> Path:
        """返回缓存中的归档路径，必要时调用 fetch_fn 下载

        expected_hash 只用于查找，不做校验；校验由调用方负责。
        """
        with self._lock_for(key):
            if expected_hash and self.contains(expected_hash):
                logger.debug("缓存命中: %s", expected_hash)
                return self.path_for(expected_hash)
            if key is not None:
                digest = self._by_key.get(key)
                if digest and self.contains(digest):
                    logger.debug("复用同一引用的缓存条目: %s -> %s", key, digest)
                    return self.path_for(digest)

            path = self._download(fetch_fn)
            if key is not None:
                self._by_key[key] = path.name
            return path

    def _download(self, fetch_fn: FetchFn) -> Path:
        tmp_dir = self.root / "tmp"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(tmp_dir), suffix=".part")
        tmp_path = Path(tmp)
        try:
            with os.fdopen(fd, "w+b") as f:
                fetch_fn(f)
            return self._commit(tmp_path, sha256_file(tmp_path))
        finally:
            tmp_path.unlink(missing_ok=True)

    def _commit(self, tmp_path: Path, digest: str) -> Path:
        dest = self.path_for(digest)
        with self._commit_lock:
            if dest.exists():
                if filecmp.cmp(tmp_path, dest, shallow=False):
                    logger.debug("条目已存在，丢弃本次下载: %s", digest)
                    return dest
                raise CacheCollision(f"缓存条目 {digest} 已存在且内容不同")
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp_path, dest)
            os.chmod(dest, 0o444)
        logger.info("已缓存: %s", digest)
        return dest
