"""
Fallback resolution through the nix-index file-ownership database.

When the static map has nothing for a soname we ask `nix-locate` which
top-level nixpkgs attribute ships a file with that name. Debian and nixpkgs
do not agree on spelling (libfoo-1.so vs libfoo_1.so, versioned vs
unversioned names, missing "lib" prefixes), so we query a handful of variants
and score every hit by string similarity against the name the binary asked
for. Only a hit scoring above the configured confidence is accepted. Anything
else leaves the dependency unresolved, which the user sees in the report.

All per-run state (query cache, timeouts, "index missing" flag) lives on a
ResolverContext that the caller constructs and passes in.
"""

import difflib
import os
import re
import subprocess
import threading
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from .settings import ResolverSettings

NIX_LOCATE = "nix-locate"

# (file_path, attribute path as printed by nix-locate)
IndexHit = Tuple[str, str]
IndexQuery = Callable[[str, float], List[IndexHit]]

_SONAME_RE = re.compile(r"^(?P<stem>.+?\.so)(?P<version>(?:\.\d+)*)$")


class IndexRecord(NamedTuple):
    file_path: str
    owning_package_ref: str
    match_confidence: float


class IndexUnavailable(RuntimeError):
    """nix-locate is missing or its database has not been built."""


##############################################################################
# Talking to nix-locate
##############################################################################

def parse_nix_locate_output(stdout: str) -> List[IndexHit]:
    """
    Parse default (non --minimal) nix-locate output:

        gtk3.out        7,345,680 r /nix/store/...-gtk+3-3.24.41/lib/libgtk-3.so.0.2409.32
        (zoom-us.out)     123,456 s /nix/store/...-zoom/lib/libfoo.so

    Attributes in parentheses are only reachable indirectly and are skipped.
    Lines that do not have the four expected columns are ignored; nix-locate
    prints nothing else on stdout, so such lines can only be noise.
    """
    hits: List[IndexHit] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split(None, 3)
        if len(parts) != 4:
            continue
        attr, _size, _kind, path = parts
        if attr.startswith("("):
            continue
        hits.append((path.strip(), attr))
    return hits


def nix_locate_query(name: str, timeout: float) -> List[IndexHit]:
    """
    Ask nix-locate which top-level packages contain a file called exactly `name`.

    Raises subprocess.TimeoutExpired when the query exceeds `timeout` and
    IndexUnavailable when nix-locate cannot run or has no database.
    """
    try:
        res = subprocess.run(
            [NIX_LOCATE, "--top-level", "--whole-name", name],
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise IndexUnavailable(f"{NIX_LOCATE} is not installed")
    if res.returncode != 0:
        detail = (res.stderr or "").strip().splitlines()
        raise IndexUnavailable(
            f"{NIX_LOCATE} exited with status {res.returncode}"
            + (f": {detail[-1]}" if detail else "")
            + " (has the index been built with `nix-index`?)"
        )
    return parse_nix_locate_output(res.stdout)


##############################################################################
# Per-run context
##############################################################################

class ResolverContext:
    """
    Everything the indexed resolver remembers during one run.

    Built once in main() and handed to the resolver and the aggregator.
    Tests build their own with a fake `query`.
    """

    def __init__(self, settings: ResolverSettings, query: IndexQuery = nix_locate_query):
        self.settings = settings
        self.query = query
        self.cache: Dict[str, List[IndexHit]] = {}
        self.timed_out: List[str] = []
        self.index_unavailable: Optional[str] = None
        self._lock = threading.Lock()

    def lookup(self, name: str) -> List[IndexHit]:
        with self._lock:
            if self.index_unavailable is not None:
                return []
            if name in self.cache:
                return self.cache[name]

        try:
            hits = self.query(name, self.settings.query_timeout)
        except subprocess.TimeoutExpired:
            print(f"Warning: index query for '{name}' timed out after "
                  f"{self.settings.query_timeout:g}s; treating it as a miss.")
            with self._lock:
                # A timed-out name stays a miss for the rest of the run.
                self.cache[name] = []
                if name not in self.timed_out:
                    self.timed_out.append(name)
            return []
        except IndexUnavailable as e:
            with self._lock:
                if self.index_unavailable is None:
                    self.index_unavailable = str(e)
                    print(f"Warning: file-ownership index unavailable: {e}. "
                          f"Dependencies missing from the static map will stay unresolved.")
            return []

        with self._lock:
            self.cache[name] = hits
        return hits


##############################################################################
# Name variants and scoring
##############################################################################

def _swap_separators(name: str) -> List[str]:
    out = []
    if "-" in name:
        out.append(name.replace("-", "_"))
    if "_" in name:
        out.append(name.replace("_", "-"))
    return out


def _toggle_lib_prefix(name: str) -> str:
    if name.startswith("lib") and len(name) > 3:
        return name[3:]
    return "lib" + name


def query_variants(raw_name: str, settings: ResolverSettings) -> List[str]:
    """
    Spellings to ask the index for, most specific first.

    For "libfoo-bar.so.2.4.1" with every variant enabled:
        libfoo-bar.so.2.4.1, libfoo-bar.so, libfoo-bar.so.2,
        libfoo_bar.so.2.4.1, libfoo_bar.so, libfoo_bar.so.2,
        foo-bar.so.2.4.1, ...
    """
    names = [raw_name]

    m = _SONAME_RE.match(raw_name)
    if m and m.group("version"):
        stem = m.group("stem")
        if settings.variant_unversioned:
            names.append(stem)
        if settings.variant_major_version:
            components = m.group("version").lstrip(".").split(".")
            if len(components) > 1:
                names.append(f"{stem}.{components[0]}")

    if settings.variant_separators:
        names = names + [v for n in names for v in _swap_separators(n)]

    if settings.variant_lib_prefix:
        names = names + [_toggle_lib_prefix(n) for n in names]

    seen = set()
    ordered = []
    for n in names:
        if n not in seen:
            seen.add(n)
            ordered.append(n)
    return ordered


def similarity(raw_name: str, file_path: str) -> float:
    return difflib.SequenceMatcher(None, raw_name, os.path.basename(file_path)).ratio()


def normalize_attr(attr: str, settings: ResolverSettings) -> str:
    """Strip a multiple-output suffix: "xorg.libX11.out" -> "xorg.libX11"."""
    parts = attr.split(".")
    if len(parts) > 1 and parts[-1] in settings.output_suffixes:
        parts = parts[:-1]
    return ".".join(parts)


##############################################################################
# Resolver
##############################################################################

class IndexedResolver:
    source = "indexed"

    def __init__(self, context: ResolverContext):
        self.context = context

    def _candidates(self, raw_name: str, query_name: str) -> List[IndexRecord]:
        settings = self.context.settings
        hits = sorted(set(self.context.lookup(query_name)), key=lambda h: (h[1], h[0]))
        records: List[IndexRecord] = []
        for file_path, attr in hits:
            clean = normalize_attr(attr, settings)
            if not clean or any(clean.startswith(p) for p in settings.exclude_attr_prefixes):
                continue
            if len(records) >= settings.max_candidates:
                break
            records.append(IndexRecord(
                file_path=file_path,
                owning_package_ref=f"pkgs.{clean}",
                match_confidence=similarity(raw_name, file_path),
            ))
        return records

    def resolve(self, raw_name: str) -> Optional[IndexRecord]:
        """
        Return the best IndexRecord for `raw_name`, or None.

        Variants are queried in order and querying stops as soon as a hit
        whose basename equals `raw_name` exactly shows up. Among everything
        collected, the highest confidence wins; ties go to the
        alphabetically first attribute, then path, so the pick is the same
        on every run. A winner that does not exceed the threshold is
        reported and rejected.
        """
        settings = self.context.settings
        candidates: List[IndexRecord] = []
        for query_name in query_variants(raw_name, settings):
            found = self._candidates(raw_name, query_name)
            candidates.extend(found)
            if any(c.match_confidence >= 1.0 for c in found):
                break

        if not candidates:
            return None

        candidates.sort(key=lambda c: (-c.match_confidence, c.owning_package_ref, c.file_path))
        best = candidates[0]
        if best.match_confidence <= settings.min_confidence:
            print(f"Warning: best index match for '{raw_name}' is {best.owning_package_ref} "
                  f"({os.path.basename(best.file_path)}, confidence {best.match_confidence:.2f}) "
                  f"which does not exceed the threshold {settings.min_confidence:.2f}; leaving it unresolved.")
            return None

        print(f"Info: '{raw_name}' found via nix-locate in {best.owning_package_ref} "
              f"({best.file_path}, confidence {best.match_confidence:.2f})")
        return best

    def resolve_ref(self, raw_name: str) -> Optional[str]:
        record = self.resolve(raw_name)
        return record.owning_package_ref if record else None
