"""
Combine scanner output with the resolution strategies into a manifest.

Resolution is an ordered chain of strategies. A strategy is any object with

    source: str                         label recorded on the result
    resolve_ref(name) -> Optional[str]  a "pkgs.<attr>" reference or None

The default chain is [StaticLibraryMap, IndexedResolver]. Appending another
strategy (say, one that consults Debian's own Depends: field) does not touch
the existing ones.
"""

import json
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

from .elf_scan import RawDependency

UNRESOLVED = "unresolved"


class ResolvedDependency(NamedTuple):
    raw_name: str
    target_ref: Optional[str]
    resolution_source: str


class ResolutionManifest:
    """
    Immutable result of one aggregation.

    `entries` follows the scanner's discovery order exactly. `unresolved`
    is the subset that no strategy could answer for; it is always shown to
    the user and never dropped.
    """
    __slots__ = ("_entries", "_unresolved")

    def __init__(self, entries: Iterable[ResolvedDependency]):
        self._entries: Tuple[ResolvedDependency, ...] = tuple(entries)
        self._unresolved: Tuple[ResolvedDependency, ...] = tuple(
            e for e in self._entries if e.resolution_source == UNRESOLVED
        )

    @property
    def entries(self) -> Tuple[ResolvedDependency, ...]:
        return self._entries

    @property
    def unresolved(self) -> Tuple[ResolvedDependency, ...]:
        return self._unresolved

    @property
    def resolved(self) -> Tuple[ResolvedDependency, ...]:
        return tuple(e for e in self._entries if e.resolution_source != UNRESOLVED)

    def target_refs(self) -> List[str]:
        """Distinct resolved references, sorted, for the expression generator."""
        return sorted({e.target_ref for e in self._entries if e.target_ref})

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other) -> bool:
        return isinstance(other, ResolutionManifest) and self._entries == other._entries

    def __hash__(self) -> int:
        return hash(self._entries)

    def to_json(self) -> str:
        payload = {
            "dependencies": [
                {
                    "raw_name": e.raw_name,
                    "target_ref": e.target_ref,
                    "resolution_source": e.resolution_source,
                }
                for e in self._entries
            ],
            "unresolved": [e.raw_name for e in self._unresolved],
        }
        return json.dumps(payload, indent=2) + "\n"


def resolve_chain(
    raw_deps: Sequence[RawDependency],
    strategies: Sequence[object],
    workers: Optional[int] = None,
) -> ResolutionManifest:
    """
    Run every dependency through `strategies` in order; first answer wins.

    Each strategy only sees the names earlier strategies could not answer.
    Within one strategy the lookups are independent, so they run on a
    bounded pool; pool.map returns answers in submission order and we put
    them back by index, never by completion order.
    """
    names = [d.name for d in raw_deps]
    results: List[Optional[ResolvedDependency]] = [None] * len(names)
    pending = list(range(len(names)))

    max_workers = workers or os.cpu_count() or 1
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        for strategy in strategies:
            if not pending:
                break
            refs = list(pool.map(lambda i: strategy.resolve_ref(names[i]), pending))
            still_pending = []
            for i, ref in zip(pending, refs):
                if ref:
                    results[i] = ResolvedDependency(names[i], ref, strategy.source)
                else:
                    still_pending.append(i)
            pending = still_pending

    for i in pending:
        results[i] = ResolvedDependency(names[i], None, UNRESOLVED)

    return ResolutionManifest(results)


def aggregate(raw_deps, static_map, indexed_resolver, workers: Optional[int] = None) -> ResolutionManifest:
    """Static map first, nix-locate second, everything else unresolved."""
    return resolve_chain(raw_deps, [static_map, indexed_resolver], workers=workers)
