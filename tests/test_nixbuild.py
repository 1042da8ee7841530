import subprocess

import pytest

from deb2nix.errors import BuildError
from deb2nix.nixbuild import run_nix_build


class FakeNixBuild:
    def __init__(self, status=0):
        self.status = status
        self.calls = []

    def __call__(self, argv, cwd=None, check=False):
        self.calls.append((list(argv), cwd))
        return subprocess.CompletedProcess(argv, self.status)


def _which(name):
    return f"/nix/bin/{name}"


def test_local_expression_is_built_in_place(tmp_path, capsys):
    out = tmp_path / "default.nix"
    out.write_text("{ pkgs ? import <nixpkgs> {} }: null\n")
    (tmp_path / "hello.deb").write_bytes(b"!<arch>\n")
    runner = FakeNixBuild()

    assert run_nix_build(str(out), source_file="hello.deb", runner=runner, which=_which)

    assert runner.calls == [(["/nix/bin/nix-build", "--no-out-link", "./default.nix"], str(tmp_path))]
    output = capsys.readouterr().out
    assert "nix-build succeeded" in output
    assert "Warning" not in output


def test_upstream_expression_goes_through_callpackage(tmp_path):
    out = tmp_path / "package.nix"
    out.write_text("{ lib, stdenv }: null\n")
    runner = FakeNixBuild()

    assert run_nix_build(str(out), upstream=True, runner=runner, which=_which)

    argv, _cwd = runner.calls[0]
    assert argv == ["/nix/bin/nix-build", "--no-out-link", "-E",
                    "(import <nixpkgs> {}).callPackage ./package.nix {}"]


def test_failed_build_is_reported(tmp_path, capsys):
    out = tmp_path / "default.nix"
    out.write_text("null\n")

    assert not run_nix_build(str(out), runner=FakeNixBuild(status=100), which=_which)
    assert "nix-build failed (exit status 100)" in capsys.readouterr().out


def test_missing_source_next_to_expression_warns(tmp_path, capsys):
    out = tmp_path / "default.nix"
    out.write_text("null\n")

    run_nix_build(str(out), source_file="hello.deb", runner=FakeNixBuild(), which=_which)
    assert "Warning: hello.deb is not next to" in capsys.readouterr().out


def test_nix_build_not_installed(tmp_path):
    runner = FakeNixBuild()
    with pytest.raises(BuildError, match="not available") as excinfo:
        run_nix_build(str(tmp_path / "default.nix"), runner=runner, which=lambda name: None)
    assert excinfo.value.component == "nix-build"
    assert runner.calls == []
