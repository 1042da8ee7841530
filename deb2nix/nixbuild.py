"""
Optional test build of the generated expression (`--build`).

A local expression is built as is. An upstream expression is a function of
its inputs, so it is built through `callPackage` from <nixpkgs>. The build
runs in the directory of the expression, where a local `src = ./<file>`
is looked up.
"""

import os
import shutil
import subprocess
from typing import Callable, List, Optional

from .errors import BuildError

NIX_BUILD = "nix-build"


def nix_build_command(nix_build: str, expression_path: str, upstream: bool = False) -> List[str]:
    name = os.path.basename(expression_path)
    if upstream:
        return [nix_build, "--no-out-link", "-E", f"(import <nixpkgs> {{}}).callPackage ./{name} {{}}"]
    return [nix_build, "--no-out-link", f"./{name}"]


def run_nix_build(
    expression_path: str,
    upstream: bool = False,
    source_file: Optional[str] = None,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> bool:
    """
    Build `expression_path` with nix-build and report the outcome.

    Returns True on success, False when nix-build ran and failed. Raises
    BuildError when nix-build is not available. `source_file` is the file
    name a local expression refers to with `src = ./...`; a warning is
    printed when it is not next to the expression.
    """
    nix_build = which(NIX_BUILD)
    if not nix_build:
        raise BuildError(f"{NIX_BUILD} is not available; install Nix or drop --build.")

    directory = os.path.dirname(os.path.abspath(expression_path))
    if source_file and not os.path.isfile(os.path.join(directory, source_file)):
        print(f"Warning: {source_file} is not next to {expression_path}; "
              f"the build will not find its source.")

    argv = nix_build_command(nix_build, expression_path, upstream=upstream)
    print(f"Info: running {' '.join(argv)} in {directory}")
    res = runner(argv, cwd=directory, check=False)
    if res.returncode != 0:
        print(f"Warning: nix-build failed (exit status {res.returncode}).")
        return False
    print("Info: nix-build succeeded.")
    return True
