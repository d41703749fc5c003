"""版本约束解析与版本选择

约束分三类:
  - exact:  精确标签，如 1.2.0、v1.2.0、nightly
  - latest: 最新稳定版（排除预发布）
  - range:  ^1.2 / ~1.2.3 / >=1.0, <2.0 / 1.* / ^1 || ^2 等范围表达式

标签按 MAJOR[.MINOR[.PATCH]][-PRE][+BUILD] 解析，排序与区间匹配借助
packaging.version.Version / packaging.specifiers.SpecifierSet。构建元数据不参与排序。
版本选择始终取满足约束的最高版本。

约束解析返回 ParseResult，不会抛异常；ParseResult.unwrap() 和 resolve() 才把解析失败转成
InvalidConstraintSyntax 交给调用方。整个模块不做任何 I/O。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from wdm.core.exceptions import InvalidConstraintSyntax, NoMatchingVersion
from wdm.core.models import Resolution

LATEST = "latest"

_WILDCARDS = ("*", "x", "X")

_TAG_RE = re.compile(
    r"^[vV]?(?P<core>\d+(?:\.\d+){0,2})"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+[0-9A-Za-z.-]+)?$"
)
_PARTIAL_RE = re.compile(r"^[vV]?\d+(?:\.\d+)?$")
_EXACT_RE = re.compile(r"^[A-Za-z0-9._+/-]+$")
_RANGE_HINT_RE = re.compile(r"[\^~<>=!*,|\s]|(?:^|\.)[xX](?:\.|$)")
_COMPARATOR_RE = re.compile(
    r"^(?P<op>\^|~>|~|>=|<=|==|!=|>|<|=)?"
    r"[vV]?(?P<major>\d+|[*xX])"
    r"(?:\.(?P<minor>\d+|[*xX]))?"
    r"(?:\.(?P<patch>\d+|[*xX]))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+[0-9A-Za-z.-]+)?$"
)
# ">= 1.2" -> ">=1.2"
_OP_GAP_RE = re.compile(r"(\^|~>|~|>=|<=|==|!=|>|<|=)\s+")


# =========================================================================
# 标签解析
# =========================================================================


def parse_version(tag: str) -> Version | None:
    """把标签解析为可比较的版本，无法解析时返回 None（不抛异常）"""
    if not isinstance(tag, str):
        return None
    m = _TAG_RE.match(tag.strip())
    if not m:
        return None
    pre = m.group("pre")
    text = m.group("core") + (f"-{pre}" if pre else "")
    try:
        version = Version(text)
    except InvalidVersion:
        return None
    # 1.0.0-1 在 packaging 里是 post-release，不是预发布，按不可解析处理
    if pre and not version.is_prerelease:
        return None
    return version


def version_text(tag: str) -> str:
    """标签对应的版本文本：v1.2.0 -> 1.2.0，非版本标签原样返回"""
    tag = tag.strip()
    if _TAG_RE.match(tag) and tag[:1] in ("v", "V"):
        return tag[1:]
    return tag


# =========================================================================
# 约束
# =========================================================================


@dataclass(frozen=True)
class Constraint:
    """已解析的版本约束"""

    text: str
    kind: str  # "exact" | "latest" | "range"
    alternatives: tuple[SpecifierSet, ...] = ()
    pinned: frozenset[Version] = field(default_factory=frozenset)  # 用 = 精确钉住的预发布版本

    def matches(self, version: Version) -> bool:
        """latest / range 约束下，一个已解析版本是否满足"""
        if self.kind == "latest":
            return not version.is_prerelease
        if self.kind != "range":
            return False
        if version.is_prerelease and version not in self.pinned:
            return False
        return any(spec.contains(version, prereleases=True) for spec in self.alternatives)

    def allows(self, version: str, reference: str = "") -> bool:
        """锁文件中已有的版本是否仍满足该约束（无需联网）"""
        if self.kind == "exact":
            if self.text in (version, reference):
                return True
            wanted = parse_version(self.text)
            return wanted is not None and wanted == parse_version(version)
        parsed = parse_version(version)
        return parsed is not None and self.matches(parsed)


@dataclass(frozen=True)
class ParseResult:
    """约束解析结果：成功时 constraint 非空，失败时 error 说明原因"""

    constraint: Constraint | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.constraint is not None

    def unwrap(self) -> Constraint:
        """取出约束，解析失败时抛 InvalidConstraintSyntax"""
        if self.constraint is None:
            raise InvalidConstraintSyntax(self.error)
        return self.constraint


def _classify(text: str) -> str | None:
    if text.lower() == LATEST:
        return "latest"
    # 完整版本号（含预发布）视为精确标签
    if _TAG_RE.match(text) and not _PARTIAL_RE.match(text):
        return "exact"
    if _PARTIAL_RE.match(text) or _RANGE_HINT_RE.search(text):
        return "range"
    if _EXACT_RE.match(text):
        return "exact"
    return None


def parse_constraint(text: str) -> ParseResult:
    """解析约束文本，永不抛异常"""
    if not isinstance(text, str) or not text.strip():
        return ParseResult(error="版本约束为空")
    text = text.strip()
    kind = _classify(text)
    if kind is None:
        return ParseResult(error=f"无法识别的版本约束: {text!r}")
    if kind != "range":
        return ParseResult(Constraint(text=text, kind=kind))

    alternatives: list[SpecifierSet] = []
    pinned: set[Version] = set()
    for alt in text.split("||"):
        alt = _OP_GAP_RE.sub(r"\1", alt.strip())
        tokens = [t for t in re.split(r"[,\s]+", alt) if t]
        if not tokens:
            return ParseResult(error=f"'||' 两侧不能为空: {text!r}")
        clauses: list[str] = []
        for token in tokens:
            m = _COMPARATOR_RE.match(token)
            if not m:
                return ParseResult(error=f"无法识别的比较项 {token!r}: {text!r}")
            try:
                clauses.extend(_expand(m, pinned))
            except ValueError as e:
                return ParseResult(error=f"{e}: {text!r}")
        try:
            alternatives.append(SpecifierSet(",".join(clauses)))
        except InvalidSpecifier as e:
            return ParseResult(error=f"范围表达式非法 ({e}): {text!r}")

    return ParseResult(Constraint(
        text=text, kind="range",
        alternatives=tuple(alternatives), pinned=frozenset(pinned),
    ))


def _fmt(major: int, minor: int, patch: int, pre: str | None = None) -> str:
    text = f"{major}.{minor}.{patch}" + (f"-{pre}" if pre else "")
    version = Version(text)
    if pre and not version.is_prerelease:
        raise ValueError(f"预发布标识无效: {pre!r}")
    return str(version)


def _expand(m: re.Match[str], pinned: set[Version]) -> list[str]:
    """把单个比较项展开为 PEP 440 specifier 子句

    语义与 cargo 一致：裸版本按 ^ 处理，部分版本按缺省位补齐。
    """
    op = m.group("op") or ""
    pre = m.group("pre")
    comps = [c for c in (m.group("major"), m.group("minor"), m.group("patch")) if c is not None]

    fixed: list[int] = []
    for c in comps:
        if c in _WILDCARDS:
            break
        fixed.append(int(c))
    wild = len(fixed) < len(comps)
    if wild and any(c not in _WILDCARDS for c in comps[len(fixed):]):
        raise ValueError("通配符之后不能再出现数字")
    if wild and op not in ("", "=", "=="):
        raise ValueError(f"通配符不能与 {op} 一起使用")
    if pre and len(fixed) < 3:
        raise ValueError("预发布版本必须写完整的 major.minor.patch")

    if not op:
        op = "=" if wild else "^"
    if op == "==":
        op = "="

    n = len(fixed)
    major, minor, patch = (fixed + [0, 0, 0])[:3]
    if n == 0:
        return []  # "*" 匹配任意版本
    lower = _fmt(major, minor, patch, pre)

    if op == "^":
        if major > 0 or n == 1:
            upper = _fmt(major + 1, 0, 0)
        elif minor > 0 or n == 2:
            upper = _fmt(0, minor + 1, 0)
        else:
            upper = _fmt(0, 0, patch + 1)
        return [f">={lower}", f"<{upper}"]
    if op in ("~", "~>"):
        upper = _fmt(major + 1, 0, 0) if n == 1 else _fmt(major, minor + 1, 0)
        return [f">={lower}", f"<{upper}"]
    if op == "=":
        if n == 3:
            if pre:
                pinned.add(Version(lower))
            return [f"=={lower}"]
        upper = _fmt(major + 1, 0, 0) if n == 1 else _fmt(major, minor + 1, 0)
        return [f">={lower}", f"<{upper}"]
    if op == ">":
        if n == 3:
            return [f">{lower}"]
        return [f">={_fmt(major + 1, 0, 0) if n == 1 else _fmt(major, minor + 1, 0)}"]
    if op == ">=":
        return [f">={lower}"]
    if op == "<":
        return [f"<{lower}"]
    if op == "<=":
        if n == 3:
            return [f"<={lower}"]
        return [f"<{_fmt(major + 1, 0, 0) if n == 1 else _fmt(major, minor + 1, 0)}"]
    if op == "!=":
        if n != 3:
            raise ValueError("!= 需要完整的 major.minor.patch")
        return [f"!={lower}"]
    raise ValueError(f"不支持的比较运算符: {op}")


# =========================================================================
# 版本选择
# =========================================================================


def resolve(constraint: str | Constraint, available_tags: Iterable[str]) -> Resolution:
    """从可用标签中为约束选出唯一版本

    constraint 可以是约束文本，也可以是已解析的 Constraint。

    Raises:
        InvalidConstraintSyntax: 约束文本无法解析
        NoMatchingVersion: 没有满足约束的标签
    """
    if isinstance(constraint, Constraint):
        parsed = constraint
    else:
        parsed = parse_constraint(constraint).unwrap()

    tags = list(dict.fromkeys(t.strip() for t in available_tags if isinstance(t, str) and t.strip()))

    if parsed.kind == "exact":
        return _resolve_exact(parsed, tags)

    candidates: list[tuple[Version, str]] = []
    for tag in tags:
        version = parse_version(tag)
        if version is not None and parsed.matches(version):
            candidates.append((version, tag))
    if not candidates:
        label = "稳定版本" if parsed.kind == "latest" else f"满足 {parsed.text} 的版本"
        raise NoMatchingVersion(f"没有找到{label}，可用标签 {len(tags)} 个")

    # 最高版本胜出；同一版本的多个标签按标签文本取最大，保证结果确定
    _, tag = max(candidates, key=lambda item: (item[0], item[1]))
    return Resolution(version=version_text(tag), reference=tag)


def _resolve_exact(constraint: Constraint, tags: list[str]) -> Resolution:
    if constraint.text in tags:
        return Resolution(version=constraint.text, reference=constraint.text)
    wanted = parse_version(constraint.text)
    if wanted is not None:
        same = sorted(tag for tag in tags if parse_version(tag) == wanted)
        if same:
            return Resolution(version=constraint.text, reference=same[-1])
    raise NoMatchingVersion(f"标签中不存在版本 {constraint.text}")
