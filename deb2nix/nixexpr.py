"""
Render the resolved manifest into a Nix expression.

Two flavours, as in the original tool:

  local     `{ pkgs ? import <nixpkgs> {} }:` header, every reference
            spelled `pkgs.<attr>`; meant for `nix-build` next to the file.
  upstream  a callPackage-style function whose arguments are the top-level
            attributes used, suitable for pkgs/by-name in nixpkgs.

Unresolved sonames are written as comments inside buildInputs so the gap
is visible in the file itself, not just in the terminal output.
"""

import os
from typing import List, Sequence, Tuple

from .aggregate import ResolutionManifest
from .debpkg import PackageMeta
from .fetch import PackageSource

TEMPLATE_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "package.nix.in")

# Always linked against; autoPatchelfHook needs them even if no binary says so.
IMPLICIT_REFS = ("pkgs.glibc", "pkgs.gcc.cc.lib")
# Loaded with dlopen() by GPU-using apps, so they never show up in NEEDED.
RUNTIME_LIBRARY_PATH = ("libglvnd", "mesa", "libdrm", "vulkan-loader", "libxkbcommon")
NATIVE_BUILD_INPUTS = ("autoPatchelfHook", "dpkg", "makeWrapper")
UPSTREAM_FIXED_ARGS = ("lib", "stdenv", "fetchurl")


def nix_string(text: str) -> str:
    """Escape text for use inside a double-quoted Nix string."""
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("${", "\\${")


def _attr(ref: str) -> str:
    return ref[len("pkgs."):] if ref.startswith("pkgs.") else ref


def plan_build_inputs(manifest: ResolutionManifest) -> List[str]:
    """
    Final, sorted list of pkgs.* references for buildInputs.

    Qt5 and Qt6 cannot both be wrapped into one application; when both
    show up the Qt5 references are dropped, since a binary linking Qt6
    normally only drags Qt5 in through a bundled plugin.
    """
    refs = set(manifest.target_refs()) | set(IMPLICIT_REFS)
    has_qt6 = any(r.startswith("pkgs.qt6.") for r in refs)
    qt5 = sorted(r for r in refs if r.startswith("pkgs.qt5."))
    if has_qt6 and qt5:
        print(f"Warning: both Qt5 and Qt6 dependencies detected; dropping {', '.join(qt5)} to avoid conflicts.")
        refs -= set(qt5)
    return sorted(refs)


def upstream_arguments(refs: Sequence[str]) -> List[str]:
    """Function arguments for upstream mode: fixed inputs, then top-level attrs used."""
    used = {_attr(r).split(".")[0] for r in refs}
    used.update(NATIVE_BUILD_INPUTS)
    used.update(RUNTIME_LIBRARY_PATH)
    used.difference_update(UPSTREAM_FIXED_ARGS)
    return list(UPSTREAM_FIXED_ARGS) + sorted(used)


def _src_block(source: PackageSource, fetchurl: str) -> str:
    if source.url is None:
        return f"./{source.file_name}"
    return (
        f"{fetchurl} {{\n"
        f"    url = \"{nix_string(source.url)}\";\n"
        f"    hash = \"{source.sri_hash}\";\n"
        f"  }}"
    )


def _unresolved_lines(manifest: ResolutionManifest) -> List[str]:
    if not manifest.unresolved:
        return []
    lines = ["    # Unresolved libraries, add the providing packages by hand:"]
    lines.extend(f"    #   {e.raw_name}" for e in manifest.unresolved)
    return lines


def render_expression(
    meta: PackageMeta,
    source: PackageSource,
    manifest: ResolutionManifest,
    upstream: bool = False,
    template_path: str = TEMPLATE_PATH,
) -> str:
    refs = plan_build_inputs(manifest)

    if upstream:
        header = "{\n" + "".join(f"  {a},\n" for a in upstream_arguments(refs)) + "}:"
        mk_derivation = "stdenv.mkDerivation"
        fetchurl = "fetchurl"
        prefix = ""
        library_path = "lib.makeLibraryPath [ " + " ".join(RUNTIME_LIBRARY_PATH) + " ]"
    else:
        header = "{ pkgs ? import <nixpkgs> {} }:"
        mk_derivation = "pkgs.stdenv.mkDerivation"
        fetchurl = "pkgs.fetchurl"
        prefix = "pkgs."
        library_path = ("pkgs.lib.makeLibraryPath [ "
                        + " ".join(f"pkgs.{p}" for p in RUNTIME_LIBRARY_PATH) + " ]")

    native = "\n".join(f"    {prefix}{p}" for p in NATIVE_BUILD_INPUTS)
    build_inputs = "\n".join([f"    {prefix}{_attr(r)}" for r in refs] + _unresolved_lines(manifest))
    homepage = f"    homepage = \"{nix_string(meta.homepage)}\";\n" if meta.homepage else ""
    platforms = " ".join(f"\"{p}\"" for p in meta.platforms)

    with open(template_path, 'r', encoding='utf-8') as f:
        template = f.read()

    substitutions: Tuple[Tuple[str, str], ...] = (
        ("@header@", header),
        ("@mkDerivation@", mk_derivation),
        ("@pname@", nix_string(meta.name)),
        ("@version@", nix_string(meta.version)),
        ("@src@", _src_block(source, fetchurl)),
        ("@nativeBuildInputs@", native),
        ("@buildInputs@", build_inputs),
        ("@libraryPath@", library_path),
        ("@description@", nix_string(meta.description)),
        ("@homepage@", homepage),
        ("@platforms@", platforms),
    )
    for placeholder, value in substitutions:
        template = template.replace(placeholder, value)
    return template
