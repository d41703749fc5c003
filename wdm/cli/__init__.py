"""wdm 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

from __future__ import annotations

import os

import click

from wdm import __version__
from wdm.core.config import DEFAULT_CONFIG_FILE, init_config
from wdm.core.dep_manager import DepManager
from wdm.core.exceptions import WdmError
from wdm.utils.logger import setup_logging


def _dm(ctx: click.Context) -> DepManager:
    """按全局选项构造依赖管理器"""
    obj = ctx.find_root().obj
    return DepManager(manifest_path=obj["manifest"], lockfile_path=obj["lockfile"], config=obj["config"])


def _fail(e: WdmError) -> click.ClickException:
    return click.ClickException(f"{e.code}: {e}")


@click.group()
@click.version_option(version=__version__)
@click.option("--manifest", "-m", default=None, help="清单路径（默认 wdm.yml）")
@click.option("--lockfile", "-l", default=None, help="锁文件路径（默认与清单同目录的 wdm.lock）")
@click.option("--config", "config_path", default=DEFAULT_CONFIG_FILE, show_default=True, help="工具配置文件")
@click.pass_context
def main(ctx: click.Context, manifest: str | None, lockfile: str | None, config_path: str) -> None:
    """wdm - 去中心化的 WordPress 插件依赖管理器"""
    setup_logging(
        level=os.getenv("WDM_LOG_LEVEL", "WARNING"),
        json_output=os.getenv("WDM_LOG_JSON", "") == "1",
    )
    try:
        cfg = init_config(config_path)
    except WdmError as e:
        raise _fail(e) from e
    ctx.obj = {"manifest": manifest or cfg.manifest, "lockfile": lockfile, "config": cfg}


# 注册各领域子命令
from wdm.cli.cmd_manifest import register as _reg_manifest  # noqa: E402
from wdm.cli.cmd_deps import register as _reg_deps  # noqa: E402

_reg_manifest(main)
_reg_deps(main)
