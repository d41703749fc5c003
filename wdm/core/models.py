"""核心数据模型

清单条目 (DependencySpec)、锁文件条目 (LockedDependency) 以及协调引擎的
动作、状态和结果类型集中定义在这里。构造时做结构校验，非法值抛 ConfigError。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from wdm.core.exceptions import ConfigError, WdmError

_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_HASH_RE = re.compile(r"^[0-9a-f]{64}$")
# 插件目录名：不能含路径分隔符，不能以 . 开头（.wdm-* 留给安装器的临时目录）
_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


def _require_name(name: str) -> None:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ConfigError(f"依赖名非法: {name!r}")


def _require_repository(repository: str) -> None:
    if not isinstance(repository, str) or not _REPO_RE.match(repository):
        raise ConfigError(f"仓库必须是 owner/name 格式: {repository!r}")
    if ".." in repository.split("/"):
        raise ConfigError(f"仓库名非法: {repository!r}")


# =========================================================================
# 清单与锁文件
# =========================================================================


@dataclass(frozen=True)
class DependencySpec:
    """清单中的单个依赖声明"""

    name: str
    constraint: str
    repository: str
    token_env: str | None = None

    def __post_init__(self) -> None:
        _require_name(self.name)
        _require_repository(self.repository)
        if not isinstance(self.constraint, str) or not self.constraint.strip():
            raise ConfigError(f"依赖 '{self.name}' 未指定版本约束")
        if self.token_env is not None and not _ENV_NAME_RE.match(self.token_env):
            raise ConfigError(f"依赖 '{self.name}' 的 token_env 不是合法变量名: {self.token_env!r}")


@dataclass(frozen=True)
class LockedDependency:
    """锁文件中的单个条目，记录实际安装的版本、引用和归档哈希"""

    name: str
    version: str
    repository: str
    reference: str
    hash: str
    constraint: str = ""  # 产生该条目的约束文本，约束变化时强制重新解析

    def __post_init__(self) -> None:
        _require_name(self.name)
        _require_repository(self.repository)
        if not self.version or not self.reference:
            raise ConfigError(f"锁文件条目 '{self.name}' 缺少 version 或 reference")
        if not isinstance(self.hash, str) or not _HASH_RE.match(self.hash):
            raise ConfigError(f"锁文件条目 '{self.name}' 的 hash 不是 SHA-256 十六进制串")


@dataclass
class Manifest:
    """校验过的内存清单"""

    install_root: Path
    dependencies: list[DependencySpec] = field(default_factory=list)
    config: dict = field(default_factory=dict)  # 原样保留的 config 段

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for dep in self.dependencies:
            if dep.name in seen:
                raise ConfigError(f"清单中依赖名重复: {dep.name}")
            seen.add(dep.name)

    def get(self, name: str) -> DependencySpec | None:
        return next((d for d in self.dependencies if d.name == name), None)


@dataclass
class Lockfile:
    dependencies: list[LockedDependency] = field(default_factory=list)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for dep in self.dependencies:
            if dep.name in seen:
                raise ConfigError(f"锁文件中依赖名重复: {dep.name}")
            seen.add(dep.name)

    def get(self, name: str) -> LockedDependency | None:
        return next((d for d in self.dependencies if d.name == name), None)

    def names(self) -> list[str]:
        return [d.name for d in self.dependencies]


# =========================================================================
# 解析结果
# =========================================================================


@dataclass(frozen=True)
class Resolution:
    """版本解析结果：version 是版本文本，reference 是实际拉取的标签"""

    version: str
    reference: str


# =========================================================================
# 协调引擎
# =========================================================================


class Action(str, Enum):
    NEW = "new"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    REMOVED = "removed"


class PipelineState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    INSTALLING = "installing"
    INSTALLED = "installed"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass
class DependencyOutcome:
    """单个依赖本次运行的终态"""

    name: str
    action: Action
    state: PipelineState
    locked: LockedDependency | None = None
    error: WdmError | None = None
    failed_at: PipelineState | None = None  # 失败发生的阶段

    @property
    def failed(self) -> bool:
        return self.state == PipelineState.FAILED

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        return f"{self.error.code}: {self.error}"


@dataclass
class ReconcileReport:
    """一次协调运行的汇总"""

    outcomes: list[DependencyOutcome] = field(default_factory=list)
    lockfile: Lockfile = field(default_factory=Lockfile)

    @property
    def failed(self) -> list[DependencyOutcome]:
        return [o for o in self.outcomes if o.failed]

    @property
    def success(self) -> bool:
        return not self.failed

    def get(self, name: str) -> DependencyOutcome | None:
        return next((o for o in self.outcomes if o.name == name), None)
