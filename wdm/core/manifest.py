"""清单 (wdm.yml) 与锁文件 (wdm.lock) 读写

清单格式:
    config:
      wordpress_path: /var/www/html     # 可选，插件装到 <wordpress_path>/wp-content/plugins
      install_path: ./plugins           # 可选，优先于 wordpress_path
    dependencies:
      - name: foo
        version: ^1.0
        repo: acme/foo                  # 也接受 repository
        token_env: FOO_TOKEN            # 可选

锁文件格式:
    dependencies:
      - {name, version, repo, reference, hash, constraint}

相对路径以清单所在目录为基准。结构非法时抛 ConfigError。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from wdm.core.exceptions import ConfigError
from wdm.core.models import DependencySpec, LockedDependency, Lockfile, Manifest
from wdm.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)

PLUGINS_SUBDIR = Path("wp-content") / "plugins"


def install_root_for(config: dict[str, Any], base_dir: Path) -> Path:
    """install_path > wordpress_path/wp-content/plugins > 清单目录"""
    install_path = config.get("install_path")
    if install_path:
        return (base_dir / str(install_path)).resolve()
    wordpress_path = config.get("wordpress_path")
    if wordpress_path:
        return (base_dir / str(wordpress_path) / PLUGINS_SUBDIR).resolve()
    return base_dir.resolve()


def _entries(data: dict[str, Any], path: Path) -> list[dict[str, Any]]:
    raw = data.get("dependencies") or []
    if not isinstance(raw, list):
        raise ConfigError(f"{path}: dependencies 必须是列表")
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"{path}: dependencies[{i}] 必须是映射")
    return raw


def _repo(item: dict[str, Any]) -> Any:
    return item.get("repo", item.get("repository"))


def _text(value: Any, where: str) -> Any:
    # 未加引号的 1.10 会被 YAML 读成浮点数 1.1，信息已丢失，只能要求加引号
    if isinstance(value, float):
        raise ConfigError(f"{where}: 版本 {value!r} 被解析成了浮点数，请加引号，如 version: \"1.10\"")
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


# =========================================================================
# 清单
# =========================================================================


def load_manifest(path: str | Path) -> Manifest:
    """读取并校验清单，文件不存在抛 ConfigError"""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"清单文件不存在: {p}（先执行 wdm init）")
    data = load_yaml(p)
    config = data.get("config") or {}
    if not isinstance(config, dict):
        raise ConfigError(f"{p}: config 必须是映射")

    deps = []
    for i, item in enumerate(_entries(data, p)):
        deps.append(DependencySpec(
            name=item.get("name"),
            constraint=_text(item.get("version"), f"{p}: dependencies[{i}]"),
            repository=_repo(item),
            token_env=item.get("token_env") or None,
        ))
    manifest = Manifest(
        install_root=install_root_for(config, p.parent),
        dependencies=deps,
        config=dict(config),
    )
    logger.debug("已加载清单 %s: %d 个依赖", p, len(deps))
    return manifest


def manifest_to_dict(manifest: Manifest) -> dict[str, Any]:
    deps = []
    for d in manifest.dependencies:
        item: dict[str, Any] = {"name": d.name, "version": d.constraint, "repo": d.repository}
        if d.token_env:
            item["token_env"] = d.token_env
        deps.append(item)
    return {"config": dict(manifest.config), "dependencies": deps}


def save_manifest(path: str | Path, manifest: Manifest) -> None:
    save_yaml(path, manifest_to_dict(manifest))


# =========================================================================
# 锁文件
# =========================================================================


def load_lockfile(path: str | Path) -> Lockfile:
    """读取锁文件，不存在时返回空锁文件"""
    p = Path(path)
    data = load_yaml(p)
    entries = []
    for i, item in enumerate(_entries(data, p)):
        where = f"{p}: dependencies[{i}]"
        entries.append(LockedDependency(
            name=item.get("name"),
            version=_text(item.get("version"), where),
            repository=_repo(item),
            reference=_text(item.get("reference"), where),
            hash=item.get("hash"),
            constraint=_text(item.get("constraint"), where) or "",
        ))
    return Lockfile(entries)


def lockfile_to_dict(lockfile: Lockfile) -> dict[str, Any]:
    return {"dependencies": [
        {
            "name": d.name,
            "version": d.version,
            "repo": d.repository,
            "reference": d.reference,
            "hash": d.hash,
            "constraint": d.constraint,
        }
        for d in lockfile.dependencies
    ]}


def save_lockfile(path: str | Path, lockfile: Lockfile) -> None:
    save_yaml(path, lockfile_to_dict(lockfile))
    logger.debug("已写入锁文件 %s: %d 个条目", path, len(lockfile.dependencies))
