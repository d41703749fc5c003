"""依赖管理器

清单编辑 (init / add / remove) 和协调命令 (install / update / verify) 的统一入口，
负责把路径、配置和协作者组装成协调引擎，并持久化清单与锁文件。

用法:
    from wdm.core.dep_manager import DepManager

    dm = DepManager("wdm.yml")
    dm.add("foo", "^1.0", "acme/foo")
    report = dm.install()
    if not report.success:
        ...
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from wdm.core.config import Config, get_config
from wdm.core.dep.cache import ContentCache
from wdm.core.dep.fetcher import ArtifactFetcher, EnvLookup
from wdm.core.dep.installer import Installer
from wdm.core.dep.source import GitHubSource
from wdm.core.exceptions import ConfigError
from wdm.core.manifest import (
    load_lockfile,
    load_manifest,
    save_lockfile,
    save_manifest,
)
from wdm.core.models import DependencySpec, LockedDependency, Lockfile, Manifest, ReconcileReport
from wdm.core.reconcile import ReconcileEngine
from wdm.utils.yaml_io import save_yaml

logger = logging.getLogger(__name__)


class DepManager:
    """wdm 命令的业务层

    fetcher / env_lookup 可注入，测试时替换为假的远端和固定的凭据表。
    """

    def __init__(
        self,
        manifest_path: str | Path | None = None,
        lockfile_path: str | Path | None = None,
        config: Config | None = None,
        fetcher: ArtifactFetcher | None = None,
        env_lookup: EnvLookup | None = None,
    ) -> None:
        self.config = config or get_config()
        self.manifest_path = Path(manifest_path or self.config.manifest)
        base = self.manifest_path.parent
        self.lockfile_path = Path(lockfile_path) if lockfile_path else base / self.config.lockfile
        self.cache = ContentCache(base / self.config.cache_dir)
        self._fetcher = fetcher
        self._env_lookup = env_lookup or os.environ.get

    @property
    def fetcher(self) -> ArtifactFetcher:
        if self._fetcher is None:
            cfg = self.config
            self._fetcher = ArtifactFetcher(
                GitHubSource(cfg.api_base_url),
                timeout=cfg.timeout,
                max_retries=cfg.max_retries,
                backoff_seconds=cfg.backoff_seconds,
                max_backoff_seconds=cfg.max_backoff_seconds,
                max_tag_pages=cfg.max_tag_pages,
            )
        return self._fetcher

    def _engine(self, manifest: Manifest, max_workers: int | None = None) -> ReconcileEngine:
        return ReconcileEngine(
            installer=Installer(manifest.install_root),
            fetcher=self.fetcher,
            cache=self.cache,
            env_lookup=self._env_lookup,
            max_workers=max_workers or self.config.max_workers,
        )

    def load(self) -> tuple[Manifest, Lockfile]:
        return load_manifest(self.manifest_path), load_lockfile(self.lockfile_path)

    # ------------------------------------------------------------------
    # 清单编辑
    # ------------------------------------------------------------------

    def init(self, install_path: str = "") -> bool:
        """创建空清单，已存在时不覆盖，返回是否新建"""
        if self.manifest_path.exists():
            logger.info("清单已存在: %s", self.manifest_path)
            return False
        config = {"install_path": install_path} if install_path else {}
        save_yaml(self.manifest_path, {"config": config, "dependencies": []})
        logger.info("已创建清单: %s", self.manifest_path)
        return True

    def add(
        self, name: str, version: str, repository: str, token_env: str | None = None,
    ) -> DependencySpec:
        """添加依赖；同名依赖原位替换"""
        manifest = load_manifest(self.manifest_path)
        spec = DependencySpec(name=name, constraint=version, repository=repository, token_env=token_env)
        deps = list(manifest.dependencies)
        for i, dep in enumerate(deps):
            if dep.name == name:
                deps[i] = spec
                logger.info("已更新依赖: %s", name)
                break
        else:
            deps.append(spec)
            logger.info("已添加依赖: %s", name)
        manifest.dependencies = deps
        save_manifest(self.manifest_path, manifest)
        return spec

    def remove(self, name: str) -> bool:
        """从清单删除依赖并卸载、删除锁定条目；未知依赖为空操作"""
        manifest, lockfile = self.load()
        in_manifest = manifest.get(name) is not None
        in_lock = lockfile.get(name) is not None
        if not in_manifest and not in_lock:
            logger.info("依赖不存在，跳过: %s", name)
            return False

        if in_manifest:
            manifest.dependencies = [d for d in manifest.dependencies if d.name != name]
            save_manifest(self.manifest_path, manifest)
        Installer(manifest.install_root).uninstall(name)
        if in_lock:
            save_lockfile(
                self.lockfile_path,
                Lockfile([d for d in lockfile.dependencies if d.name != name]),
            )
        logger.info("已移除依赖: %s", name)
        return True

    # ------------------------------------------------------------------
    # 协调
    # ------------------------------------------------------------------

    def install(
        self, force: Iterable[str] | None = None, max_workers: int | None = None,
    ) -> ReconcileReport:
        """按清单协调安装目录，失败的依赖不写入锁文件，锁文件总会被重写"""
        manifest, lockfile = self.load()
        report = self._engine(manifest, max_workers).reconcile(manifest, lockfile, force)
        save_lockfile(self.lockfile_path, report.lockfile)
        return report

    def update(
        self, names: Iterable[str] | None = None, max_workers: int | None = None,
    ) -> ReconcileReport:
        """忽略锁定版本重新解析；不指定名字时更新全部依赖"""
        manifest = load_manifest(self.manifest_path)
        wanted = list(names or [])
        unknown = [n for n in wanted if manifest.get(n) is None]
        if unknown:
            raise ConfigError(f"清单中没有这些依赖: {', '.join(unknown)}")
        force = wanted or [d.name for d in manifest.dependencies]
        return self.install(force=force, max_workers=max_workers)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def list_locked(self) -> list[LockedDependency]:
        return list(load_lockfile(self.lockfile_path).dependencies)

    def verify(self) -> dict[str, bool]:
        """逐个检查锁定依赖的安装目录是否完好（不联网、不修复）"""
        manifest, lockfile = self.load()
        installer = Installer(manifest.install_root)
        results = {d.name: installer.is_intact(d.name, d.hash) for d in lockfile.dependencies}
        broken = [n for n, ok in results.items() if not ok]
        if broken:
            logger.warning("安装目录缺失或被改动: %s", ", ".join(broken))
        return results
