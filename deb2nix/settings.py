"""
Resolver tuning.

The confidence threshold and the naming heuristics are product decisions that
get tuned against real packages, so they live in data/resolver.conf instead of
the code. Individual values can also be overridden from the command line.
"""

import os
from typing import Dict, List, Optional

from .errors import ResolverConfigError
from .stanzas import parse_stanzas

DEFAULT_SETTINGS_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data", "resolver.conf")

_BOOL_WORDS = {"yes": True, "true": True, "1": True, "no": False, "false": False, "0": False}

_FIELDS = (
    "Min-Confidence",
    "Query-Timeout",
    "Max-Candidates",
    "Variant-Unversioned",
    "Variant-Major-Version",
    "Variant-Separators",
    "Variant-Lib-Prefix",
    "Exclude-Attr-Prefixes",
    "Output-Suffixes",
)


class ResolverSettings:
    __slots__ = (
        "min_confidence", "query_timeout", "max_candidates",
        "variant_unversioned", "variant_major_version",
        "variant_separators", "variant_lib_prefix",
        "exclude_attr_prefixes", "output_suffixes",
    )

    def __init__(
        self,
        min_confidence: float = 0.8,
        query_timeout: float = 20.0,
        max_candidates: int = 50,
        variant_unversioned: bool = True,
        variant_major_version: bool = True,
        variant_separators: bool = True,
        variant_lib_prefix: bool = True,
        exclude_attr_prefixes: Optional[List[str]] = None,
        output_suffixes: Optional[List[str]] = None,
    ):
        if not 0.0 < min_confidence < 1.0:
            raise ResolverConfigError(
                f"Min-Confidence must be in (0, 1), got {min_confidence!r}; "
                f"a match is accepted only when its score exceeds it"
            )
        if query_timeout <= 0:
            raise ResolverConfigError(f"Query-Timeout must be positive, got {query_timeout!r}")
        if max_candidates < 1:
            raise ResolverConfigError(f"Max-Candidates must be at least 1, got {max_candidates!r}")
        self.min_confidence = float(min_confidence)
        self.query_timeout = float(query_timeout)
        self.max_candidates = int(max_candidates)
        self.variant_unversioned = variant_unversioned
        self.variant_major_version = variant_major_version
        self.variant_separators = variant_separators
        self.variant_lib_prefix = variant_lib_prefix
        self.exclude_attr_prefixes = list(exclude_attr_prefixes or [])
        self.output_suffixes = list(output_suffixes if output_suffixes is not None else ["out", "lib", "bin", "dev"])


def _parse_bool(path: str, field: str, value: str) -> bool:
    try:
        return _BOOL_WORDS[value.strip().lower()]
    except KeyError:
        raise ResolverConfigError(f"{path}: {field} must be yes or no, got {value!r}")


def _parse_number(path: str, field: str, value: str, kind):
    try:
        return kind(value)
    except ValueError:
        raise ResolverConfigError(f"{path}: {field} must be a number, got {value!r}")


def load_resolver_settings(
    path: str = DEFAULT_SETTINGS_PATH,
    overrides: Optional[Dict[str, object]] = None,
) -> ResolverSettings:
    """
    Build ResolverSettings from a single-stanza resolver.conf.

    Unknown fields are rejected so a typo ("Min-Confidance") cannot silently
    leave the default in place. `overrides` maps ResolverSettings attribute
    names to values and wins over the file; None values are ignored so the
    CLI can pass its parsed args straight through.
    """
    stanzas = parse_stanzas(path, error_cls=ResolverConfigError)
    if len(stanzas) != 1:
        raise ResolverConfigError(
            f"{path}: expected exactly one stanza of resolver settings, found {len(stanzas)}"
        )
    _lineno, stanza = stanzas[0]
    unknown = [k for k in stanza if k not in _FIELDS]
    if unknown:
        raise ResolverConfigError(f"{path}: unknown resolver setting(s) {unknown!r}")

    kwargs: Dict[str, object] = {}
    if "Min-Confidence" in stanza:
        kwargs["min_confidence"] = _parse_number(path, "Min-Confidence", stanza["Min-Confidence"], float)
    if "Query-Timeout" in stanza:
        kwargs["query_timeout"] = _parse_number(path, "Query-Timeout", stanza["Query-Timeout"], float)
    if "Max-Candidates" in stanza:
        kwargs["max_candidates"] = _parse_number(path, "Max-Candidates", stanza["Max-Candidates"], int)
    for field, attr in (
        ("Variant-Unversioned", "variant_unversioned"),
        ("Variant-Major-Version", "variant_major_version"),
        ("Variant-Separators", "variant_separators"),
        ("Variant-Lib-Prefix", "variant_lib_prefix"),
    ):
        if field in stanza:
            kwargs[attr] = _parse_bool(path, field, stanza[field])
    if "Exclude-Attr-Prefixes" in stanza:
        kwargs["exclude_attr_prefixes"] = stanza["Exclude-Attr-Prefixes"].split()
    if "Output-Suffixes" in stanza:
        kwargs["output_suffixes"] = stanza["Output-Suffixes"].split()

    for attr, value in (overrides or {}).items():
        if attr not in ResolverSettings.__slots__:
            raise ResolverConfigError(f"Unknown resolver setting override {attr!r}")
        if value is not None:
            kwargs[attr] = value

    return ResolverSettings(**kwargs)
