"""
Reading the .deb itself: control metadata and unpacking the data tree.

Metadata comes from the control member via python-debian's DebFile. The
filesystem tree is unpacked by `dpkg-deb -x`, exactly as dpkg would lay it
out, so the scanner sees the real paths and symlinks.
"""

import subprocess
from typing import List, Optional

from debian.debfile import DebFile
from debian.debian_support import Version

from .errors import PackageReadError, UnpackError

DPKG_DEB = "dpkg-deb"
AR_MAGIC = b"!<arch>\n"

# Debian architecture -> Nix system double
DEB_ARCH_TO_NIX = {
    "amd64": "x86_64-linux",
    "arm64": "aarch64-linux",
    "i386": "i686-linux",
    "armhf": "armv7l-linux",
    "riscv64": "riscv64-linux",
}


class PackageMeta:
    """
    The handful of control fields the expression needs.

    `version` is the upstream part of the Debian version (no epoch, no
    Debian revision), which is what nixpkgs expects in `version = ...`.
    `debian_version` keeps the original string for reporting.
    """
    __slots__ = ("name", "version", "debian_version", "architecture", "platforms",
                 "description", "homepage")

    def __init__(
        self,
        name: str,
        version: str,
        debian_version: str,
        architecture: str,
        platforms: List[str],
        description: str,
        homepage: Optional[str],
    ):
        self.name = name
        self.version = version
        self.debian_version = debian_version
        self.architecture = architecture
        self.platforms = platforms
        self.description = description
        self.homepage = homepage


def nix_platforms(deb_arch: str) -> List[str]:
    if deb_arch == "all":
        return sorted(set(DEB_ARCH_TO_NIX.values()))
    if deb_arch in DEB_ARCH_TO_NIX:
        return [DEB_ARCH_TO_NIX[deb_arch]]
    print(f"Warning: unknown Debian architecture {deb_arch!r}; using '{deb_arch}-linux' as platform.")
    return [f"{deb_arch}-linux"]


def check_deb_magic(path: str) -> None:
    try:
        with open(path, 'rb') as f:
            magic = f.read(len(AR_MAGIC))
    except OSError as e:
        raise PackageReadError(f"Cannot read {path!r}: {e}")
    if magic != AR_MAGIC:
        raise PackageReadError(
            f"{path!r} is not a Debian package (missing '!<arch>' ar header). "
            f"Only .deb input is supported."
        )


def read_metadata(path: str) -> PackageMeta:
    """
    Read Package / Version / Architecture / Description / Homepage.

    Package, Version and Architecture are mandatory in every binary
    package; if one is missing the file is not something we can describe
    correctly, so we stop.
    """
    check_deb_magic(path)
    try:
        control = DebFile(path).debcontrol()
    except Exception as e:
        raise PackageReadError(f"Error reading control data of {path!r}: {e}")

    name = control.get("Package", "").strip()
    debian_version = control.get("Version", "").strip()
    arch = control.get("Architecture", "").strip()
    if not (name and debian_version and arch):
        raise PackageReadError(
            f"Control data of {path!r} lacks one of the mandatory fields "
            f"Package/Version/Architecture. Fields present: {sorted(control.keys())}"
        )

    # Description: first line is the synopsis, the rest is the long text.
    description = control.get("Description", "").strip().splitlines()
    synopsis = description[0].strip() if description else f"Automatically packaged {name}"

    return PackageMeta(
        name=name.lower(),
        version=Version(debian_version).upstream_version,
        debian_version=debian_version,
        architecture=arch,
        platforms=nix_platforms(arch),
        description=synopsis,
        homepage=control.get("Homepage", "").strip() or None,
    )


def unpack(path: str, dest_dir: str) -> None:
    """Unpack the data tree of `path` into dest_dir with `dpkg-deb -x`."""
    try:
        res = subprocess.run(
            [DPKG_DEB, "-x", path, dest_dir],
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        raise UnpackError(f"{DPKG_DEB} is not installed.")
    if res.returncode != 0:
        raise UnpackError(
            f"{DPKG_DEB} -x failed for {path!r} (exit status {res.returncode}): "
            f"{(res.stderr or '').strip()}"
        )
