"""
Strict reader for the RFC822-style data files shipped with deb2nix.

Both data files (libraries.map and resolver.conf) use the same layout as a
Debian Packages index: "Key: Value" fields, stanzas separated by blank lines,
continuation lines starting with a space or tab. On top of that we allow
full-line '#' comments (starting in column 0) so the curated map can be
annotated.

A line we do not understand is an error, never skipped.
"""

from typing import Dict, List, Tuple, Type

from .errors import Deb2NixError

Stanza = Dict[str, str]


def parse_stanzas(path: str, error_cls: Type[Deb2NixError] = Deb2NixError) -> List[Tuple[int, Stanza]]:
    """
    Read `path` and return a list of (first_line_number, stanza) tuples.

    Field order inside a stanza is preserved (dicts keep insertion order) and
    stanza order follows the file, which is what gives the static map its
    priority ordering.

    Raises `error_cls` on:
      - a missing or unreadable file
      - a continuation line with no field before it
      - a line without a colon
      - an empty field name
      - the same field twice in one stanza
    """
    stanzas: List[Tuple[int, Stanza]] = []
    current: Stanza = {}
    current_start = 0
    last_key = None

    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except OSError as e:
        raise error_cls(f"Cannot read data file {path!r}: {e}")
    except UnicodeDecodeError as e:
        raise error_cls(f"Data file {path!r} is not valid UTF-8: {e}")

    for lineno, raw_line in enumerate(lines, start=1):
        line = raw_line.rstrip('\n').rstrip('\r')

        if line.strip() == "":
            # End of stanza
            if current:
                stanzas.append((current_start, current))
                current = {}
                last_key = None
            continue

        # Comments start in column 0; an indented "#" is continuation text.
        if line.startswith("#"):
            continue

        if line.startswith(" ") or line.startswith("\t"):
            # Continuation of previous field
            if last_key is None:
                raise error_cls(
                    f"{path}:{lineno}: continuation line without a field to continue: {line!r}"
                )
            current[last_key] += "\n" + line.strip()
            continue

        if ":" not in line:
            raise error_cls(
                f"{path}:{lineno}: expected 'Field: value', got a line without colon: {line!r}"
            )
        key, val = line.split(":", 1)
        key = key.strip()
        if not key:
            raise error_cls(f"{path}:{lineno}: empty field name in line {line!r}")
        if key in current:
            raise error_cls(
                f"{path}:{lineno}: field {key!r} appears twice in the stanza starting at line {current_start}"
            )
        if not current:
            current_start = lineno
        current[key] = val.strip()
        last_key = key

    # flush last stanza if file didn't end with blank line
    if current:
        stanzas.append((current_start, current))

    return stanzas
