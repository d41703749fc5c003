"""CLI - 安装、更新与查询命令"""

from __future__ import annotations

import click

from wdm.cli import _dm, _fail
from wdm.core.exceptions import WdmError
from wdm.core.models import Action, DependencyOutcome, PipelineState, ReconcileReport


def register(group: click.Group) -> None:
    group.add_command(install)
    group.add_command(update)
    group.add_command(list_deps)
    group.add_command(verify)


_LABELS = {
    PipelineState.INSTALLED: "installed",
    PipelineState.UNCHANGED: "unchanged",
    PipelineState.REMOVED: "removed",
    PipelineState.FAILED: "failed",
}


def _line(o: DependencyOutcome) -> str:
    label = _LABELS.get(o.state, o.state.value)
    if o.failed:
        stage = f" @{o.failed_at.value}" if o.failed_at else ""
        return f"  {o.name:24s} {label:10s} {o.reason}{stage}"
    if o.locked is not None:
        extra = f" ({o.action.value})" if o.action in (Action.NEW, Action.CHANGED) else ""
        return f"  {o.name:24s} {label:10s} {o.locked.version} [{o.locked.reference}]{extra}"
    return f"  {o.name:24s} {label}"


def _report(report: ReconcileReport) -> None:
    if not report.outcomes:
        click.echo("清单中没有依赖。")
        return
    for o in report.outcomes:
        click.echo(_line(o))
    if report.failed:
        click.echo(f"{len(report.failed)}/{len(report.outcomes)} 个依赖失败", err=True)
        raise SystemExit(1)


@click.command()
@click.option("--parallel", "-p", default=None, type=click.IntRange(min=1), help="并行流水线数")
@click.pass_context
def install(ctx: click.Context, parallel: int | None) -> None:
    """按清单安装，已是最新的依赖跳过"""
    try:
        report = _dm(ctx).install(max_workers=parallel)
    except WdmError as e:
        raise _fail(e) from e
    _report(report)


@click.command()
@click.argument("names", nargs=-1)
@click.option("--parallel", "-p", default=None, type=click.IntRange(min=1), help="并行流水线数")
@click.pass_context
def update(ctx: click.Context, names: tuple[str, ...], parallel: int | None) -> None:
    """忽略锁定版本重新解析（不指定名字时更新全部）"""
    try:
        report = _dm(ctx).update(list(names), max_workers=parallel)
    except WdmError as e:
        raise _fail(e) from e
    _report(report)


@click.command(name="list")
@click.pass_context
def list_deps(ctx: click.Context) -> None:
    """列出锁文件中的依赖"""
    try:
        locked = _dm(ctx).list_locked()
    except WdmError as e:
        raise _fail(e) from e
    if not locked:
        click.echo("锁文件中没有依赖。")
        return
    for d in locked:
        click.echo(f"  {d.name:24s} {d.version:12s} {d.repository} [{d.reference}] {d.hash[:12]}")


@click.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """检查已安装插件是否与锁文件一致（不联网、不修复）"""
    try:
        results = _dm(ctx).verify()
    except WdmError as e:
        raise _fail(e) from e
    if not results:
        click.echo("锁文件中没有依赖。")
        return
    for name, ok in results.items():
        click.echo(f"  {name:24s} {'ok' if ok else 'modified'}")
    if not all(results.values()):
        raise SystemExit(1)
