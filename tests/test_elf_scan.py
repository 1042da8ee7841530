import os
import subprocess

import pytest

from deb2nix.elf_scan import RawDependency, check_elf_header, patchelf_needed, scan_tree
from deb2nix.errors import Deb2NixError, ElfInspectionError

from .helpers import FakeInspector, write_elf, write_text


def _build_tree(root, order):
    files = {
        "opt/app/app": lambda p: write_elf(p),
        "opt/app/libhelper.so.1": lambda p: write_elf(p),
        "usr/bin/tool": lambda p: write_elf(p, elf_class=1),
        "usr/share/doc/readme.so": lambda p: write_text(p, "not an elf\n"),
    }
    for rel in order:
        files[rel](os.path.join(root, rel))


NEEDED = {
    "app": ["libgtk-3.so.0", "libhelper.so.1", "libc.so.6"],
    "libhelper.so.1": ["libc.so.6", "libz.so.1"],
    "tool": ["libz.so.1", "libgtk-3.so.0", "ld-linux-x86-64.so.2"],
}


def test_distinct_needed_names_are_reported_once(tmp_path):
    root = str(tmp_path)
    _build_tree(root, ["opt/app/app", "opt/app/libhelper.so.1", "usr/bin/tool", "usr/share/doc/readme.so"])

    result = scan_tree(root, inspector=FakeInspector(NEEDED), workers=2)

    names = [d.name for d in result.dependencies]
    assert names == ["libgtk-3.so.0", "libhelper.so.1", "libc.so.6", "libz.so.1", "ld-linux-x86-64.so.2"]
    assert len(names) == len(set(names))
    assert result.dependencies[0] == RawDependency("libgtk-3.so.0", os.path.join("opt", "app", "app"))
    assert result.binaries == (
        os.path.join("opt", "app", "app"),
        os.path.join("opt", "app", "libhelper.so.1"),
        os.path.join("usr", "bin", "tool"),
    )
    assert result.failures == ()


def test_result_does_not_depend_on_creation_order(tmp_path):
    first = str(tmp_path / "a")
    second = str(tmp_path / "b")
    _build_tree(first, ["opt/app/app", "opt/app/libhelper.so.1", "usr/bin/tool", "usr/share/doc/readme.so"])
    _build_tree(second, ["usr/share/doc/readme.so", "usr/bin/tool", "opt/app/libhelper.so.1", "opt/app/app"])

    a = scan_tree(first, inspector=FakeInspector(NEEDED), workers=4)
    b = scan_tree(second, inspector=FakeInspector(NEEDED), workers=1)
    assert a.dependencies == b.dependencies


def test_files_are_detected_by_header_not_extension(tmp_path):
    root = str(tmp_path)
    write_elf(os.path.join(root, "opt/app/noext"))
    write_text(os.path.join(root, "usr/lib/libfake.so.1"), "GROUP ( libreal.so.1 )\n")
    inspector = FakeInspector({"noext": ["libfoo.so.1"], "libfake.so.1": ["libbar.so.1"]})

    result = scan_tree(root, inspector=inspector)

    assert [d.name for d in result.dependencies] == ["libfoo.so.1"]
    assert [os.path.basename(p) for p in inspector.calls] == ["noext"]


def test_truncated_elf_is_skipped_not_fatal(tmp_path):
    root = str(tmp_path)
    write_elf(os.path.join(root, "bin/broken"), size=20)
    write_elf(os.path.join(root, "bin/good"))
    inspector = FakeInspector({"broken": ["libnever.so.1"], "good": ["libfoo.so.1"]})

    result = scan_tree(root, inspector=inspector)

    assert [d.name for d in result.dependencies] == ["libfoo.so.1"]
    assert len(result.failures) == 1
    assert result.failures[0].path == os.path.join("bin", "broken")
    assert "truncated" in result.failures[0].reason


def test_inspector_failure_is_recorded_with_relative_path(tmp_path):
    root = str(tmp_path)
    write_elf(os.path.join(root, "bin/corrupt"))
    write_elf(os.path.join(root, "bin/fine"))

    def inspector(path):
        if path.endswith("corrupt"):
            raise ElfInspectionError(path, "patchelf failed: not an ELF executable")
        return ["libfoo.so.1"]

    result = scan_tree(root, inspector=inspector)

    assert [d.name for d in result.dependencies] == ["libfoo.so.1"]
    assert [f.path for f in result.failures] == [os.path.join("bin", "corrupt")]


def test_split_external_removes_bundled_and_loader(tmp_path):
    root = str(tmp_path)
    _build_tree(root, ["opt/app/app", "opt/app/libhelper.so.1", "usr/bin/tool", "usr/share/doc/readme.so"])
    result = scan_tree(root, inspector=FakeInspector(NEEDED))

    external, provided = result.split_external()

    assert [d.name for d in external] == ["libgtk-3.so.0", "libc.so.6", "libz.so.1"]
    assert [d.name for d in provided] == ["libhelper.so.1", "ld-linux-x86-64.so.2"]


def test_symlinks_count_as_bundled_but_are_not_scanned(tmp_path):
    root = str(tmp_path)
    real = write_elf(os.path.join(root, "opt/app/lib/libcore.so.1.2.3"))
    os.symlink(os.path.basename(real), os.path.join(root, "opt/app/lib/libcore.so.1"))
    write_elf(os.path.join(root, "opt/app/app"))
    inspector = FakeInspector({"app": ["libcore.so.1"], "libcore.so.1.2.3": []})

    result = scan_tree(root, inspector=inspector)

    assert "libcore.so.1" in result.bundled
    assert sorted(os.path.basename(p) for p in inspector.calls) == ["app", "libcore.so.1.2.3"]
    external, provided = result.split_external()
    assert external == []
    assert [d.name for d in provided] == ["libcore.so.1"]


def test_check_elf_header(tmp_path):
    assert check_elf_header(write_elf(str(tmp_path / "a64"))) is True
    assert check_elf_header(write_elf(str(tmp_path / "a32"), elf_class=1)) is True
    assert check_elf_header(write_text(str(tmp_path / "txt"), "#!/bin/sh\n")) is False
    with pytest.raises(ElfInspectionError, match="truncated ELF identification"):
        check_elf_header(write_elf(str(tmp_path / "short"), size=8))
    with pytest.raises(ElfInspectionError, match="truncated ELF header"):
        check_elf_header(write_elf(str(tmp_path / "half"), size=40))
    with pytest.raises(ElfInspectionError, match="unknown ELF class"):
        check_elf_header(write_elf(str(tmp_path / "weird"), elf_class=7))


def test_patchelf_needed_parses_output(monkeypatch):
    def fake_run(argv, **kwargs):
        assert argv[:2] == ["patchelf", "--print-needed"]
        return subprocess.CompletedProcess(argv, 0, "libfoo.so.1\n\nlibc.so.6\n", "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert patchelf_needed("/x/app") == ["libfoo.so.1", "libc.so.6"]


def test_patchelf_static_binary_needs_nothing(monkeypatch):
    def fake_run(argv, **kwargs):
        return subprocess.CompletedProcess(
            argv, 1, "", "patchelf: cannot find section '.dynamic'. The input file is most likely statically linked\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    assert patchelf_needed("/x/static") == []


def test_patchelf_failure_is_per_file(monkeypatch):
    def fake_run(argv, **kwargs):
        return subprocess.CompletedProcess(argv, 1, "", "patchelf: not an ELF executable\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    with pytest.raises(ElfInspectionError, match="not an ELF executable"):
        patchelf_needed("/x/bad")


def test_missing_tree_is_fatal(tmp_path):
    with pytest.raises(Deb2NixError):
        scan_tree(str(tmp_path / "missing"), inspector=FakeInspector({}))
