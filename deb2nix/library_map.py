"""
Static soname -> nixpkgs attribute table.

First resolution layer. Loaded exactly once per run from
deb2nix/data/libraries.map; a broken map file stops the program.
"""

import os
import re
from typing import List, NamedTuple, Optional, Tuple

from .errors import LibraryMapError
from .stanzas import parse_stanzas

DEFAULT_MAP_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "libraries.map")

_TARGET_RE = re.compile(r"^pkgs(\.[A-Za-z_][A-Za-z0-9_'+-]*)+$")
_VERSION_TAIL_RE = re.compile(r"^\d+(\.\d+)*$")


class LibraryMapEntry(NamedTuple):
    pattern: str
    target_ref: str


def _matches_ignoring_version(pattern: str, raw_name: str) -> bool:
    """
    True if raw_name is `pattern` followed only by dotted version numbers.

        libfoo.so    vs libfoo.so.2      -> True
        libfoo.so    vs libfoo.so.2.4.1  -> True
        libfoo.so    vs libfoo.so.2a     -> False
        libfoo.so    vs libfoo-bar.so.2  -> False
    """
    if not raw_name.startswith(pattern + "."):
        return False
    return bool(_VERSION_TAIL_RE.match(raw_name[len(pattern) + 1:]))


class StaticLibraryMap:
    """
    Ordered, read-only list of LibraryMapEntry.

    lookup() rules, in order:
      1. exact soname match (first entry in file order wins)
      2. match ignoring trailing version numbers, so an entry registered for
         "libfoo.so" answers for "libfoo.so.2" and "libfoo.so.3" alike
      3. None

    Entries are kept in a tuple and scanned front to back. We never iterate
    a dict or set here, so the winner is the same on every run.
    """

    source = "static"

    def __init__(self, entries: List[LibraryMapEntry]):
        self._entries: Tuple[LibraryMapEntry, ...] = tuple(entries)

    @property
    def entries(self) -> Tuple[LibraryMapEntry, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, raw_name: str) -> Optional[str]:
        for entry in self._entries:
            if entry.pattern == raw_name:
                return entry.target_ref
        for entry in self._entries:
            if _matches_ignoring_version(entry.pattern, raw_name):
                return entry.target_ref
        return None

    def resolve_ref(self, raw_name: str) -> Optional[str]:
        return self.lookup(raw_name)


def load_library_map(path: str = DEFAULT_MAP_PATH) -> StaticLibraryMap:
    """
    Parse a libraries.map file into a StaticLibraryMap.

    Schema: one stanza per mapping with exactly two fields,

        Pattern: libgtk-3.so
        Target: pkgs.gtk3

    Anything else (unknown fields, missing fields, multi-line values,
    a Target that is not a pkgs.* attribute path, repeated patterns, an
    empty file) raises LibraryMapError.
    """
    stanzas = parse_stanzas(path, error_cls=LibraryMapError)
    if not stanzas:
        raise LibraryMapError(
            f"Static library map {path!r} contains no entries. "
            f"Refusing to continue with an empty map."
        )

    entries: List[LibraryMapEntry] = []
    seen_patterns = {}
    for lineno, stanza in stanzas:
        keys = set(stanza.keys())
        if keys != {"Pattern", "Target"}:
            raise LibraryMapError(
                f"{path}:{lineno}: each entry needs exactly the fields Pattern and Target, "
                f"got {sorted(keys)!r}"
            )
        pattern = stanza["Pattern"]
        target = stanza["Target"]
        if not pattern or "\n" in pattern or " " in pattern:
            raise LibraryMapError(f"{path}:{lineno}: invalid Pattern value {pattern!r}")
        if not _TARGET_RE.match(target):
            raise LibraryMapError(
                f"{path}:{lineno}: Target {target!r} is not a nixpkgs attribute path "
                f"of the form 'pkgs.<attr>[.<attr>...]'"
            )
        if pattern in seen_patterns:
            raise LibraryMapError(
                f"{path}:{lineno}: Pattern {pattern!r} already defined at line {seen_patterns[pattern]}"
            )
        seen_patterns[pattern] = lineno
        entries.append(LibraryMapEntry(pattern=pattern, target_ref=target))

    return StaticLibraryMap(entries)
