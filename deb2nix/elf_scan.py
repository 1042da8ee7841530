"""
Binary scanner: find ELF files in an unpacked package and collect DT_NEEDED.

ELF files are recognised by their header, never by extension; plenty of
Debian packages ship executables under /opt with no suffix at all, and
".so" files that are really linker scripts or plain text.

The list of needed sonames for each binary comes from `patchelf
--print-needed`, which we treat as ground truth. A single broken binary is
reported and skipped; it never stops the scan of the rest of the package.
"""

import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, NamedTuple, Optional, Tuple

from .errors import Deb2NixError, ElfInspectionError

PATCHELF = "patchelf"

ELF_MAGIC = b"\x7fELF"
EI_NIDENT = 16
EI_CLASS = 4
# Full ELF header size by EI_CLASS (1 = 32-bit, 2 = 64-bit).
_ELF_HEADER_SIZE = {1: 52, 2: 64}

# Names the dynamic loader answers for itself; never an external package.
_LOADER_PREFIXES = ("ld-linux", "ld64.so", "ld-musl", "ld.so")

Inspector = Callable[[str], List[str]]


class RawDependency(NamedTuple):
    name: str
    source_binary: str


class ScanResult:
    """
    Outcome of scanning one extracted tree.

      - dependencies: one RawDependency per distinct needed name, in
        discovery order (sorted walk, then each binary's NEEDED order)
      - binaries: ELF files that were inspected successfully (relative paths)
      - bundled: basenames of shared objects shipped inside the package
      - failures: ElfInspectionError for every file we had to skip
    """
    __slots__ = ("dependencies", "binaries", "bundled", "failures")

    def __init__(
        self,
        dependencies: List[RawDependency],
        binaries: List[str],
        bundled: List[str],
        failures: List[ElfInspectionError],
    ):
        self.dependencies: Tuple[RawDependency, ...] = tuple(dependencies)
        self.binaries: Tuple[str, ...] = tuple(binaries)
        self.bundled: Tuple[str, ...] = tuple(sorted(set(bundled)))
        self.failures: Tuple[ElfInspectionError, ...] = tuple(failures)

    def split_external(self) -> Tuple[List[RawDependency], List[RawDependency]]:
        """
        Split dependencies into (external, provided_by_package).

        A needed name is provided by the package itself if a file with that
        basename is shipped in the tree, or if it is the dynamic loader.
        Only the external ones need a nixpkgs reference.
        """
        shipped = set(self.bundled)
        external: List[RawDependency] = []
        internal: List[RawDependency] = []
        for dep in self.dependencies:
            if dep.name in shipped or dep.name.startswith(_LOADER_PREFIXES):
                internal.append(dep)
            else:
                external.append(dep)
        return external, internal


##############################################################################
# Per-file inspection
##############################################################################

def check_elf_header(path: str, display_path: Optional[str] = None) -> bool:
    """
    Return True if `path` is an ELF file with a complete header, False if it
    is not ELF at all. Raise ElfInspectionError if it starts with the ELF
    magic but the header is truncated or has an unknown class.
    """
    shown = display_path or path
    try:
        with open(path, 'rb') as f:
            header = f.read(64)
    except OSError as e:
        raise ElfInspectionError(shown, f"cannot read file: {e}")

    if not header.startswith(ELF_MAGIC):
        return False
    if len(header) < EI_NIDENT:
        raise ElfInspectionError(shown, f"truncated ELF identification ({len(header)} bytes)")
    elf_class = header[EI_CLASS]
    needed_size = _ELF_HEADER_SIZE.get(elf_class)
    if needed_size is None:
        raise ElfInspectionError(shown, f"unknown ELF class {elf_class}")
    if len(header) < needed_size:
        raise ElfInspectionError(
            shown, f"truncated ELF header ({len(header)} of {needed_size} bytes)"
        )
    return True


def patchelf_needed(path: str) -> List[str]:
    """Return the DT_NEEDED entries of `path`, in order, using patchelf."""
    try:
        res = subprocess.run(
            [PATCHELF, "--print-needed", path],
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        raise Deb2NixError(
            f"{PATCHELF} is not installed; it is required to read ELF dependencies.",
            component="binary-scanner",
        )
    if res.returncode != 0:
        stderr = (res.stderr or "").strip()
        # Static executables have no dynamic section and need nothing.
        if "statically linked" in stderr:
            return []
        reason = stderr.splitlines()[-1] if stderr else f"exit status {res.returncode}"
        raise ElfInspectionError(path, f"{PATCHELF} failed: {reason}")
    return [line.strip() for line in res.stdout.splitlines() if line.strip()]


def _inspect_one(path: str, rel: str, inspector: Inspector):
    """Returns (is_elf, needed_names, error)."""
    try:
        if not check_elf_header(path, rel):
            return False, [], None
        return True, inspector(path), None
    except ElfInspectionError as e:
        # Report the path relative to the tree, not the temp directory.
        return True, [], ElfInspectionError(rel, e.reason)


##############################################################################
# Tree walk
##############################################################################

def _walk_sorted(root: str) -> Tuple[List[str], List[str]]:
    """
    Return (regular_files, shared_object_basenames) under root.

    Directories and file names are sorted so discovery order does not
    depend on the filesystem. Symlinks are never followed, but their names
    count as bundled sonames (libfoo.so.1 -> libfoo.so.1.2.3 is the usual
    layout, and the binary asks for the link name).
    """
    files: List[str] = []
    shared: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            if ".so" in name:
                shared.append(name)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            files.append(full)
    return files, shared


def scan_tree(root: str, inspector: Optional[Inspector] = None, workers: Optional[int] = None) -> ScanResult:
    """
    Scan every regular file under `root` and collect needed sonames.

    Inspection runs on a bounded thread pool; Executor.map hands results
    back in submission order, so the result does not depend on which
    binary finished first.
    """
    if not os.path.isdir(root):
        raise Deb2NixError(f"Extracted tree {root!r} does not exist or is not a directory.",
                           component="binary-scanner")

    inspector = inspector or patchelf_needed
    files, shared = _walk_sorted(root)
    rels = [os.path.relpath(p, root) for p in files]

    max_workers = workers or os.cpu_count() or 1
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        results = list(pool.map(lambda pr: _inspect_one(pr[0], pr[1], inspector), zip(files, rels)))

    dependencies: List[RawDependency] = []
    seen = set()
    binaries: List[str] = []
    failures: List[ElfInspectionError] = []
    for rel, (is_elf, needed, error) in zip(rels, results):
        if error is not None:
            print(f"Warning: skipping {rel}: {error.reason}")
            failures.append(error)
            continue
        if not is_elf:
            continue
        binaries.append(rel)
        for name in needed:
            if name not in seen:
                seen.add(name)
                dependencies.append(RawDependency(name=name, source_binary=rel))

    print(f"Info: scanned {len(binaries)} ELF file(s), found {len(dependencies)} distinct needed libraries"
          + (f", skipped {len(failures)} unreadable file(s)." if failures else "."))
    return ScanResult(dependencies, binaries, shared, failures)
