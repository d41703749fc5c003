"""协调引擎

对比清单（期望状态）、锁文件（记录状态）和安装目录（实际状态），为每个依赖选择动作:

  NEW        锁文件里没有       -> 完整流水线
  UNCHANGED  锁定版本仍满足约束且目录完好 -> 跳过，不发网络请求
  CHANGED    约束/仓库变化、被 update 强制、或目录缺失/被改动 -> 完整流水线
  REMOVED    锁文件有、清单没有 -> 卸载并删除条目

每个依赖的流水线 (解析 -> 下载 -> 校验 -> 安装) 彼此独立，在有界线程池中并行执行，
全部结束后才汇总生成新锁文件。单个依赖的失败收敛为该依赖的 FAILED 结果，不影响其他依赖。
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Iterable

from wdm.core.dep.cache import ContentCache
from wdm.core.dep.fetcher import ArtifactFetcher, EnvLookup, lookup_credential
from wdm.core.dep.installer import Installer
from wdm.core.dep.integrity import verify
from wdm.core.dep.version import parse_constraint, resolve
from wdm.core.exceptions import FilesystemDenied, InternalError, WdmError
from wdm.core.models import (
    Action,
    DependencyOutcome,
    DependencySpec,
    LockedDependency,
    Lockfile,
    Manifest,
    PipelineState,
    ReconcileReport,
    Resolution,
)
from wdm.utils.logger import dependency_logger

logger = logging.getLogger(__name__)


def _as_wdm_error(e: Exception) -> WdmError:
    """把流水线里的异常收敛为 WdmError，未归类的异常保留堆栈"""
    if isinstance(e, WdmError):
        return e
    if isinstance(e, OSError):
        return FilesystemDenied(str(e))
    logger.error("未预期的异常: %s", e, exc_info=e)
    error = InternalError(f"{type(e).__name__}: {e}")
    error.__cause__ = e
    return error


class ReconcileEngine:
    """协调引擎

    所有外部协作者都通过构造参数注入；凭据查找函数默认读进程环境变量。
    max_workers == 1 时顺序执行，便于调试。
    """

    def __init__(
        self,
        installer: Installer,
        fetcher: ArtifactFetcher,
        cache: ContentCache,
        env_lookup: EnvLookup = os.environ.get,
        max_workers: int = 4,
    ) -> None:
        self.installer = installer
        self.fetcher = fetcher
        self.cache = cache
        self._env_lookup = env_lookup
        self.max_workers = max(1, max_workers)

    # ------------------------------------------------------------------
    # 动作选择
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_holds(
        spec: DependencySpec, prior: LockedDependency | None, force: frozenset[str],
    ) -> bool:
        """锁定结果对当前声明是否仍然有效（不看磁盘）"""
        if prior is None or spec.name in force:
            return False
        if prior.repository != spec.repository:
            return False
        # 旧锁文件没有 constraint 字段时只看锁定版本是否仍满足约束
        if prior.constraint and prior.constraint != spec.constraint:
            return False
        parsed = parse_constraint(spec.constraint).constraint
        return parsed is not None and parsed.allows(prior.version, prior.reference)

    def _decide(
        self, spec: DependencySpec, prior: LockedDependency | None, force: frozenset[str],
    ) -> Action:
        if prior is None:
            return Action.NEW
        if not self._lock_holds(spec, prior, force):
            return Action.CHANGED
        if not self.installer.is_intact(spec.name, prior.hash):
            logger.info("[%s] 安装目录缺失或已被改动，将重新安装", spec.name)
            return Action.CHANGED
        return Action.UNCHANGED

    def plan(
        self, manifest: Manifest, lockfile: Lockfile, force: Iterable[str] = (),
    ) -> list[tuple[str, Action]]:
        """按清单顺序给出每个依赖的动作，REMOVED 排在最后"""
        forced = frozenset(force)
        actions = [
            (spec.name, self._decide(spec, lockfile.get(spec.name), forced))
            for spec in manifest.dependencies
        ]
        actions.extend(
            (locked.name, Action.REMOVED)
            for locked in lockfile.dependencies
            if manifest.get(locked.name) is None
        )
        return actions

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    def reconcile(
        self, manifest: Manifest, lockfile: Lockfile, force: Iterable[str] | None = None,
    ) -> ReconcileReport:
        """执行一次协调，返回逐依赖结果和新锁文件（不负责持久化）"""
        forced = frozenset(force or ())
        self.installer.sweep()
        plan = self.plan(manifest, lockfile, forced)
        logger.info(
            "协调计划: %s",
            ", ".join(f"{name}={action.value}" for name, action in plan) or "(空)",
        )

        def run(item: tuple[str, Action]) -> DependencyOutcome:
            name, action = item
            prior = lockfile.get(name)
            spec = manifest.get(name)
            if spec is None:
                if prior is None:
                    raise ValueError(f"计划中的依赖既不在清单也不在锁文件中: {name}")
                return self._run_removal(prior)
            if action == Action.UNCHANGED and prior is not None:
                return DependencyOutcome(
                    name, action, PipelineState.UNCHANGED,
                    locked=replace(prior, constraint=spec.constraint),
                )
            return self._run_pipeline(spec, action, prior, forced)

        outcomes = self._fan_out(run, plan)
        report = ReconcileReport(outcomes=outcomes, lockfile=self._build_lockfile(outcomes, lockfile))
        if report.failed:
            logger.warning(
                "协调汇总: %d 个依赖, %d 失败 (%s)",
                len(outcomes), len(report.failed),
                ", ".join(o.name for o in report.failed),
            )
        else:
            logger.info("协调完成: %d 个依赖", len(outcomes))
        return report

    def _fan_out(
        self,
        fn: Callable[[tuple[str, Action]], DependencyOutcome],
        plan: list[tuple[str, Action]],
    ) -> list[DependencyOutcome]:
        if self.max_workers == 1 or len(plan) <= 1:
            return [fn(item) for item in plan]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(plan))) as pool:
            futures = [pool.submit(fn, item) for item in plan]
            return [f.result() for f in futures]

    @staticmethod
    def _build_lockfile(outcomes: list[DependencyOutcome], prior: Lockfile) -> Lockfile:
        entries: list[LockedDependency] = []
        for o in outcomes:
            if o.action == Action.REMOVED:
                # 卸载失败时保留条目，目录仍归锁文件管理
                if o.failed:
                    kept = prior.get(o.name)
                    if kept is not None:
                        entries.append(kept)
                continue
            if not o.failed and o.locked is not None:
                entries.append(o.locked)
        return Lockfile(entries)

    def _run_pipeline(
        self,
        spec: DependencySpec,
        action: Action,
        prior: LockedDependency | None,
        force: frozenset[str],
    ) -> DependencyOutcome:
        log = dependency_logger(logger, spec.name)
        state = PipelineState.UNRESOLVED
        try:
            # 凭据检查在任何网络请求和文件写入之前
            token = lookup_credential(spec.token_env, self._env_lookup)

            state = PipelineState.RESOLVING
            # 约束语法错误在联网之前报出
            constraint = parse_constraint(spec.constraint).unwrap()
            if prior is not None and self._lock_holds(spec, prior, force):
                resolution = Resolution(prior.version, prior.reference)
                log.info("沿用锁定版本 %s (%s)", resolution.version, resolution.reference)
            else:
                tags = self.fetcher.list_tags(spec.repository, token)
                resolution = resolve(constraint, tags)
                log.info("%s 解析为 %s (%s)", spec.constraint, resolution.version, resolution.reference)

            state = PipelineState.FETCHING
            expected = None
            if (
                prior is not None
                and prior.repository == spec.repository
                and prior.reference == resolution.reference
            ):
                expected = prior.hash
            archive = self.cache.get_or_fetch(
                expected,
                lambda out: self.fetcher.fetch(spec.repository, resolution.reference, token, out),
                key=(spec.repository, resolution.reference),
            )

            state = PipelineState.VERIFYING
            digest = verify(archive, expected)

            state = PipelineState.INSTALLING
            self.installer.install(spec.name, archive, digest)
        except Exception as e:  # noqa: BLE001
            error = _as_wdm_error(e)
            log.error("%s 阶段失败: %s: %s", state.value, error.code, error)
            return DependencyOutcome(
                spec.name, action, PipelineState.FAILED, error=error, failed_at=state,
            )

        locked = LockedDependency(
            name=spec.name,
            version=resolution.version,
            repository=spec.repository,
            reference=resolution.reference,
            hash=digest,
            constraint=spec.constraint,
        )
        log.info("已安装 %s", resolution.version)
        return DependencyOutcome(spec.name, action, PipelineState.INSTALLED, locked=locked)

    def _run_removal(self, prior: LockedDependency) -> DependencyOutcome:
        log = dependency_logger(logger, prior.name)
        try:
            self.installer.uninstall(prior.name)
        except Exception as e:  # noqa: BLE001
            error = _as_wdm_error(e)
            log.error("卸载失败: %s: %s", error.code, error)
            return DependencyOutcome(
                prior.name, Action.REMOVED, PipelineState.FAILED,
                locked=prior, error=error, failed_at=PipelineState.INSTALLING,
            )
        log.info("已移除")
        return DependencyOutcome(prior.name, Action.REMOVED, PipelineState.REMOVED)
