"""CLI - 清单编辑命令"""

from __future__ import annotations

import click

from wdm.cli import _dm, _fail
from wdm.core.exceptions import WdmError


def register(group: click.Group) -> None:
    group.add_command(init)
    group.add_command(add)
    group.add_command(remove)


@click.command()
@click.option("--install-path", default="", help="插件安装根目录（写入 config.install_path）")
@click.pass_context
def init(ctx: click.Context, install_path: str) -> None:
    """创建空的 wdm.yml"""
    dm = _dm(ctx)
    try:
        created = dm.init(install_path=install_path)
    except (WdmError, OSError) as e:
        raise click.ClickException(f"创建清单失败: {e}") from e
    if created:
        click.echo(f"已创建 {dm.manifest_path}")
    else:
        click.echo(f"{dm.manifest_path} 已存在，未修改")


@click.command()
@click.argument("name")
@click.option("--version", "-v", "version", required=True, help="版本约束: 精确版本 / latest / 范围")
@click.option("--repo", "-r", required=True, help="GitHub 仓库 owner/name")
@click.option("--token-env", default=None, help="保存访问令牌的环境变量名（私有仓库）")
@click.pass_context
def add(ctx: click.Context, name: str, version: str, repo: str, token_env: str | None) -> None:
    """添加或替换依赖（不会自动安装，随后执行 wdm install）"""
    try:
        spec = _dm(ctx).add(name, version, repo, token_env=token_env)
    except WdmError as e:
        raise _fail(e) from e
    click.echo(f"已添加 {spec.name} {spec.constraint} ({spec.repository})")


@click.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str) -> None:
    """从清单移除依赖并卸载"""
    try:
        removed = _dm(ctx).remove(name)
    except WdmError as e:
        raise _fail(e) from e
    if removed:
        click.echo(f"已移除 {name}")
    else:
        click.echo(f"{name} 不在清单中，无需移除")
