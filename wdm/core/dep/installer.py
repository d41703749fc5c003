"""插件安装器 / 解压器

安装流程:
  1. 在安装根目录下建隐藏的临时目录 .wdm-tmp-<name>-*，先校验归档里的全部条目
     （绝对路径、盘符、.. 越界、指向根外的链接、设备文件），任何一条不合格整体拒绝，
     一个字节都不写
  2. 解压到临时目录；GitHub 归档外面包了一层 <owner>-<repo>-<sha>/，只有一个顶层目录时剥掉
  3. 写入安装标记 .wdm-install.json（归档哈希 + 目录树摘要）
  4. 替换：旧目录改名为 .wdm-old-<name>-*，新目录改名到位，再删除旧目录

崩溃语义: 第 4 步两次改名之间崩溃时，托管目录不存在（不会新旧混杂），下次运行判定为缺失并重装；
残留的 .wdm-tmp-* / .wdm-old-* 在下次协调开始时由 sweep() 清理。
"""

from __future__ import annotations

import hashlib
import json
import logging
import lzma
import os
import re
import shutil
import tarfile
import tempfile
import uuid
import zipfile
import zlib
from pathlib import Path

from wdm.core.dep.integrity import sha256_file
from wdm.core.exceptions import (
    FilesystemDenied,
    InstallError,
    MalformedArchive,
    UnsafeArchiveEntry,
)

logger = logging.getLogger(__name__)

MARKER = ".wdm-install.json"
_SCRATCH_PREFIX = ".wdm-tmp-"
_BACKUP_PREFIX = ".wdm-old-"

_DRIVE_RE = re.compile(r"^[A-Za-z]:")

# 文件名声明 UTF-8 但字节非法时 zipfile 抛 UnicodeDecodeError (ValueError 子类)
_ZIP_ERRORS = (
    zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error,
    EOFError, NotImplementedError, RuntimeError, ValueError,
)
_TAR_ERRORS = (tarfile.TarError, zlib.error, lzma.LZMAError, EOFError)


def _within(base: Path, target: Path) -> bool:
    return target == base or base in target.parents


def _safe_target(base: Path, entry: str) -> Path:
    """计算条目在解压根下的落点，越界则抛 UnsafeArchiveEntry"""
    normalized = entry.replace("\\", "/")
    if (
        not normalized
        or normalized.startswith("/")
        or _DRIVE_RE.match(normalized)
        or ".." in normalized.split("/")
    ):
        raise UnsafeArchiveEntry(f"归档条目路径越界: {entry!r}", entry=entry)
    target = (base / normalized).resolve()
    if not _within(base, target):
        raise UnsafeArchiveEntry(f"归档条目路径越界: {entry!r}", entry=entry)
    return target


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def tree_digest(root: Path) -> str:
    """目录树摘要：按相对路径排序，对每个文件内容、链接目标和子目录取 SHA-256（不含安装标记）"""
    records: list[tuple[str, str, str]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames:
            p = base / name
            rel = p.relative_to(root).as_posix()
            if p.is_symlink():
                records.append((rel, "L", os.readlink(p)))
            else:
                records.append((rel, "D", ""))
        for name in filenames:
            p = base / name
            rel = p.relative_to(root).as_posix()
            if rel == MARKER:
                continue
            if p.is_symlink():
                records.append((rel, "L", os.readlink(p)))
            else:
                records.append((rel, "F", sha256_file(p)))
    h = hashlib.sha256()
    for rel, kind, value in sorted(records):
        h.update(f"{kind} {rel} {value}\n".encode("utf-8", "surrogateescape"))
    return h.hexdigest()


class Installer:
    """安装根目录下托管子目录的唯一写入者"""

    def __init__(self, target_root: str | Path) -> None:
        self.target_root = Path(target_root)

    def managed_path(self, name: str) -> Path:
        if not name or Path(name).name != name or name.startswith(".") or "\\" in name:
            raise InstallError(f"依赖名不能作为目录名: {name!r}")
        return self.target_root / name

    # ------------------------------------------------------------------
    # 安装 / 卸载
    # ------------------------------------------------------------------

    def install(self, name: str, archive: Path, content_hash: str) -> Path:
        """把已校验的归档安装到 <target_root>/<name>，返回安装路径"""
        dest = self.managed_path(name)
        if dest.exists() and not dest.is_dir():
            raise FilesystemDenied(f"目标路径已存在且不是目录: {dest}")
        try:
            self.target_root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f"{_SCRATCH_PREFIX}{name}-", dir=str(self.target_root)))
        except OSError as e:
            raise FilesystemDenied(f"无法在 {self.target_root} 创建临时目录: {e}") from e

        try:
            self._extract(Path(archive), scratch)
            payload = self._payload_root(scratch)
            marker = {"hash": content_hash, "tree": tree_digest(payload)}
            (payload / MARKER).write_text(json.dumps(marker, indent=2), encoding="utf-8")
            self._swap(payload, dest, name)
        except OSError as e:
            raise FilesystemDenied(f"安装 {name} 失败: {e}") from e
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info("已安装 %s -> %s", name, dest)
        return dest

    def uninstall(self, name: str) -> bool:
        """删除托管目录；目录不存在时是成功的空操作，返回 False"""
        dest = self.managed_path(name)
        if not dest.exists() and not dest.is_symlink():
            logger.debug("%s 未安装，跳过卸载", name)
            return False
        backup = self.target_root / f"{_BACKUP_PREFIX}{name}-{uuid.uuid4().hex[:8]}"
        try:
            # 先改名再删除，删到一半失败也不会留下半个托管目录
            os.rename(dest, backup)
            _remove(backup)
        except OSError as e:
            raise FilesystemDenied(f"卸载 {name} 失败: {e}") from e
        logger.info("已卸载 %s", name)
        return True

    def is_intact(self, name: str, content_hash: str) -> bool:
        """托管目录存在、标记中的哈希等于锁定哈希、目录树未被改动"""
        dest = self.managed_path(name)
        if dest.is_symlink() or not dest.is_dir():
            return False
        try:
            data = json.loads((dest / MARKER).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        if not isinstance(data, dict) or data.get("hash") != content_hash:
            return False
        try:
            return data.get("tree") == tree_digest(dest)
        except OSError:
            return False

    def sweep(self) -> int:
        """清理上次中断留下的临时目录和备份目录，返回清理数量"""
        if not self.target_root.is_dir():
            return 0
        count = 0
        for child in self.target_root.iterdir():
            if child.name.startswith((_SCRATCH_PREFIX, _BACKUP_PREFIX)):
                try:
                    _remove(child)
                except OSError as e:
                    logger.warning("清理残留目录失败: %s (%s)", child, e)
                    continue
                count += 1
        if count:
            logger.info("已清理 %d 个残留临时目录", count)
        return count

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    def _swap(self, payload: Path, dest: Path, name: str) -> None:
        backup: Path | None = None
        if dest.exists() or dest.is_symlink():
            backup = self.target_root / f"{_BACKUP_PREFIX}{name}-{uuid.uuid4().hex[:8]}"
            os.rename(dest, backup)
        try:
            os.rename(payload, dest)
        except OSError:
            if backup is not None:
                os.rename(backup, dest)
            raise
        if backup is not None:
            _remove(backup)

    @staticmethod
    def _payload_root(scratch: Path) -> Path:
        children = list(scratch.iterdir())
        if not children:
            raise MalformedArchive("归档为空")
        if len(children) == 1 and children[0].is_dir() and not children[0].is_symlink():
            return children[0]
        return scratch

    def _extract(self, archive: Path, scratch: Path) -> None:
        if zipfile.is_zipfile(archive):
            self._extract_zip(archive, scratch)
        elif tarfile.is_tarfile(archive):
            self._extract_tar(archive, scratch)
        else:
            raise MalformedArchive(f"不支持的归档格式: {archive.name}")

    @staticmethod
    def _extract_zip(archive: Path, scratch: Path) -> None:
        base = scratch.resolve()
        try:
            with zipfile.ZipFile(archive) as zf:
                # 先校验全部条目，再写任何文件
                targets = [(info, _safe_target(base, info.filename)) for info in zf.infolist()]
                for info, target in targets:
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
        except _ZIP_ERRORS as e:
            raise MalformedArchive(f"zip 归档损坏: {e}") from e

    @staticmethod
    def _extract_tar(archive: Path, scratch: Path) -> None:
        base = scratch.resolve()
        try:
            with tarfile.open(archive) as tf:
                for member in tf.getmembers():
                    target = _safe_target(base, member.name)
                    if member.isdev():
                        raise UnsafeArchiveEntry(f"归档包含设备文件: {member.name!r}", entry=member.name)
                    if member.issym():
                        link = member.linkname.replace("\\", "/")
                        if link.startswith("/") or _DRIVE_RE.match(link) or \
                                not _within(base, (target.parent / link).resolve()):
                            raise UnsafeArchiveEntry(
                                f"符号链接指向解压根之外: {member.name!r} -> {member.linkname!r}",
                                entry=member.name,
                            )
                    elif member.islnk():
                        _safe_target(base, member.linkname)
                tf.extractall(path=str(scratch), filter="data")  # noqa: S202
        except tarfile.FilterError as e:
            raise UnsafeArchiveEntry(f"归档条目被拒绝: {e}") from e
        except _TAR_ERRORS as e:
            raise MalformedArchive(f"tar 归档损坏: {e}") from e
