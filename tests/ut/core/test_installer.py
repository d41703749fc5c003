"""安装器测试：安全解压、原子替换、完整性标记"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path

import pytest

from wdm.core.dep import installer as installer_mod
from wdm.core.dep.installer import MARKER, Installer, tree_digest
from wdm.core.exceptions import (
    FilesystemDenied,
    InstallError,
    MalformedArchive,
    UnsafeArchiveEntry,
)


def _archive(tmp_path: Path, data: bytes, name: str = "a.zip") -> tuple[Path, str]:
    p = tmp_path / name
    p.write_bytes(data)
    return p, hashlib.sha256(data).hexdigest()


def _leftovers(root: Path) -> list[str]:
    return [p.name for p in root.iterdir() if p.name.startswith(".wdm-")]


class TestInstall:
    def test_strips_single_top_level_dir(self, tmp_path: Path, make_zip) -> None:
        archive, digest = _archive(tmp_path, make_zip({"foo.php": "<?php", "inc/a.php": "a"}))
        inst = Installer(tmp_path / "plugins")
        dest = inst.install("foo", archive, digest)

        assert dest == tmp_path / "plugins" / "foo"
        assert (dest / "foo.php").read_text() == "<?php"
        assert (dest / "inc" / "a.php").read_text() == "a"
        marker = json.loads((dest / MARKER).read_text())
        assert marker["hash"] == digest
        assert inst.is_intact("foo", digest)
        assert _leftovers(tmp_path / "plugins") == []

    def test_keeps_layout_without_single_top_dir(self, tmp_path: Path, make_zip) -> None:
        archive, digest = _archive(tmp_path, make_zip({"a.php": "a", "b.php": "b"}, top=None))
        dest = Installer(tmp_path / "plugins").install("foo", archive, digest)
        assert sorted(p.name for p in dest.iterdir()) == [MARKER, "a.php", "b.php"]

    def test_tar_archive(self, tmp_path: Path, make_tar) -> None:
        archive, digest = _archive(tmp_path, make_tar({"foo.php": "<?php"}, top="foo-1.0"), "a.tar.gz")
        dest = Installer(tmp_path / "plugins").install("foo", archive, digest)
        assert (dest / "foo.php").read_text() == "<?php"

    def test_replaces_previous_contents(self, tmp_path: Path, make_zip) -> None:
        inst = Installer(tmp_path / "plugins")
        old, old_hash = _archive(tmp_path, make_zip({"old.php": "1"}), "old.zip")
        new, new_hash = _archive(tmp_path, make_zip({"new.php": "2"}), "new.zip")
        inst.install("foo", old, old_hash)
        dest = inst.install("foo", new, new_hash)
        assert not (dest / "old.php").exists()
        assert (dest / "new.php").read_text() == "2"
        assert inst.is_intact("foo", new_hash)
        assert not inst.is_intact("foo", old_hash)

    def test_rename_failure_restores_previous(
        self, tmp_path: Path, make_zip, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        inst = Installer(tmp_path / "plugins")
        old, old_hash = _archive(tmp_path, make_zip({"old.php": "1"}), "old.zip")
        new, new_hash = _archive(tmp_path, make_zip({"new.php": "2"}), "new.zip")
        inst.install("foo", old, old_hash)

        real_rename = os.rename
        calls: list[str] = []

        def flaky_rename(src, dst) -> None:
            calls.append(str(src))
            if len(calls) == 2:  # 第二次改名：新目录移入
                raise PermissionError("denied")
            real_rename(src, dst)

        monkeypatch.setattr(installer_mod.os, "rename", flaky_rename)
        with pytest.raises(FilesystemDenied):
            inst.install("foo", new, new_hash)
        monkeypatch.undo()

        assert (tmp_path / "plugins" / "foo" / "old.php").read_text() == "1"
        assert inst.is_intact("foo", old_hash)
        assert _leftovers(tmp_path / "plugins") == []


class TestUnsafeArchives:
    @pytest.mark.parametrize("entry", ["../evil.php", "/abs/evil.php", "C:/evil.php", "ok/../../evil.php"])
    def test_rejects_escaping_zip_entries(self, tmp_path: Path, make_zip, entry: str) -> None:
        archive, digest = _archive(tmp_path, make_zip({"good.php": "ok", entry: "pwned"}, top=None))
        root = tmp_path / "site" / "plugins"
        with pytest.raises(UnsafeArchiveEntry) as ei:
            Installer(root).install("foo", archive, digest)
        assert ei.value.entry == entry
        assert not (tmp_path / "site" / "evil.php").exists()
        assert not (root / "evil.php").exists()
        assert not (root / "foo").exists()
        assert _leftovers(root) == []

    def test_existing_install_untouched_on_reject(self, tmp_path: Path, make_zip) -> None:
        inst = Installer(tmp_path / "plugins")
        good, good_hash = _archive(tmp_path, make_zip({"a.php": "a"}), "good.zip")
        bad, bad_hash = _archive(tmp_path, make_zip({"../x.php": "x"}, top=None), "bad.zip")
        inst.install("foo", good, good_hash)
        with pytest.raises(UnsafeArchiveEntry):
            inst.install("foo", bad, bad_hash)
        assert inst.is_intact("foo", good_hash)

    def test_rejects_escaping_symlink(self, tmp_path: Path, make_tar) -> None:
        data = make_tar({"foo.php": "x"}, top="foo", symlinks={"link": "../../../etc/passwd"})
        archive, digest = _archive(tmp_path, data, "a.tar.gz")
        with pytest.raises(UnsafeArchiveEntry):
            Installer(tmp_path / "plugins").install("foo", archive, digest)
        assert not (tmp_path / "plugins" / "foo").exists()

    def test_malformed_archive(self, tmp_path: Path) -> None:
        archive, digest = _archive(tmp_path, b"definitely not an archive", "a.bin")
        with pytest.raises(MalformedArchive):
            Installer(tmp_path / "plugins").install("foo", archive, digest)

    def test_undecodable_entry_name(self, tmp_path: Path, bad_name_zip: bytes) -> None:
        archive, digest = _archive(tmp_path, bad_name_zip)
        root = tmp_path / "plugins"
        with pytest.raises(MalformedArchive):
            Installer(root).install("foo", archive, digest)
        assert not (root / "foo").exists()
        assert _leftovers(root) == []

    def test_empty_archive(self, tmp_path: Path, make_zip) -> None:
        archive, digest = _archive(tmp_path, make_zip({}))
        with pytest.raises(MalformedArchive):
            Installer(tmp_path / "plugins").install("foo", archive, digest)

    @pytest.mark.parametrize("name", ["../foo", ".hidden", "a/b", ""])
    def test_rejects_bad_names(self, tmp_path: Path, name: str) -> None:
        with pytest.raises(InstallError):
            Installer(tmp_path).managed_path(name)

    def test_target_is_a_file(self, tmp_path: Path, make_zip) -> None:
        (tmp_path / "foo").write_text("not a dir")
        archive, digest = _archive(tmp_path, make_zip({"a.php": "a"}))
        with pytest.raises(FilesystemDenied):
            Installer(tmp_path).install("foo", archive, digest)


class TestIntegrityMarker:
    @pytest.fixture()
    def installed(self, tmp_path: Path, make_zip) -> tuple[Installer, str]:
        archive, digest = _archive(tmp_path, make_zip({"a.php": "a", "b/c.php": "c"}))
        inst = Installer(tmp_path / "plugins")
        inst.install("foo", archive, digest)
        return inst, digest

    def test_detects_modified_file(self, installed) -> None:
        inst, digest = installed
        (inst.managed_path("foo") / "a.php").write_text("tampered")
        assert not inst.is_intact("foo", digest)

    def test_detects_added_file(self, installed) -> None:
        inst, digest = installed
        (inst.managed_path("foo") / "backdoor.php").write_text("x")
        assert not inst.is_intact("foo", digest)

    def test_detects_missing_marker(self, installed) -> None:
        inst, digest = installed
        (inst.managed_path("foo") / MARKER).unlink()
        assert not inst.is_intact("foo", digest)

    def test_missing_directory(self, installed) -> None:
        inst, digest = installed
        assert not inst.is_intact("bar", digest)

    def test_tree_digest_ignores_marker(self, installed) -> None:
        inst, _ = installed
        dest = inst.managed_path("foo")
        before = tree_digest(dest)
        (dest / MARKER).write_text("{}")
        assert tree_digest(dest) == before


class TestUninstallAndSweep:
    def test_uninstall_is_idempotent(self, tmp_path: Path, make_zip) -> None:
        archive, digest = _archive(tmp_path, make_zip({"a.php": "a"}))
        inst = Installer(tmp_path / "plugins")
        inst.install("foo", archive, digest)
        assert inst.uninstall("foo") is True
        assert not (tmp_path / "plugins" / "foo").exists()
        assert inst.uninstall("foo") is False
        assert _leftovers(tmp_path / "plugins") == []

    def test_sweep_only_removes_scratch_dirs(self, tmp_path: Path) -> None:
        for name in (".wdm-tmp-foo-1", ".wdm-old-bar-2", ".wdm-cache", "keep"):
            (tmp_path / name).mkdir()
        assert Installer(tmp_path).sweep() == 2
        assert sorted(p.name for p in tmp_path.iterdir()) == [".wdm-cache", "keep"]

    def test_sweep_missing_root(self, tmp_path: Path) -> None:
        assert Installer(tmp_path / "nope").sweep() == 0
