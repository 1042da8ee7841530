"""
Command line entry point.

    deb2nix https://example.org/pool/main/f/foo/foo_1.2-1_amd64.deb
    deb2nix ./foo_1.2-1_amd64.deb --upstream -o package.nix

Pipeline:
  1. make sure dpkg-deb, patchelf and nix-locate exist (or re-run under nix-shell)
  2. load the static library map and resolver settings
  3. fetch and hash the .deb, read its control data, unpack it
  4. scan the tree for ELF files and their NEEDED entries
  5. resolve every external soname: static map, then nix-locate
  6. report, and write the Nix expression
  7. with --build, test it with nix-build
"""

import argparse
import os
import shutil
import sys
import tempfile
from typing import Dict, List, Optional, Sequence

from . import __version__
from .aggregate import ResolutionManifest, aggregate
from .debpkg import read_metadata, unpack
from .elf_scan import RawDependency, ScanResult, scan_tree
from .errors import Deb2NixError
from .escalation import EscalationController
from .fetch import obtain_package
from .index_resolver import IndexedResolver, ResolverContext
from .library_map import DEFAULT_MAP_PATH, load_library_map
from .nixbuild import run_nix_build
from .nixexpr import render_expression
from .settings import DEFAULT_SETTINGS_PATH, load_resolver_settings

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_UNRESOLVED = 2
EXIT_BUILD_FAILED = 3


def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {n}")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deb2nix",
        description="Convert a Debian package into a Nix expression, resolving its "
                    "shared-library dependencies to nixpkgs attributes.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument('package', help='URL (http/https) or local path of the .deb to convert.')
    parser.add_argument(
        '-o', '--output',
        default='default.nix',
        help='Where to write the Nix expression (default: ./default.nix).',
    )
    parser.add_argument(
        '--upstream',
        action='store_true',
        help='Emit a callPackage-style expression for nixpkgs instead of a standalone\n'
             'default.nix using <nixpkgs>.',
    )
    parser.add_argument(
        '--build',
        action='store_true',
        help='Test the written expression with nix-build (exit status 3 if the\n'
             'build fails). Upstream expressions are built through callPackage.',
    )
    parser.add_argument('--manifest-json', help='Also write the resolution manifest as JSON to this path.')
    parser.add_argument(
        '--strict',
        action='store_true',
        help='Exit with status 2 if any library stays unresolved.\n'
             'The expression is still written, with the gaps marked.',
    )
    parser.add_argument(
        '--library-map',
        default=DEFAULT_MAP_PATH,
        help='Static soname -> nixpkgs map (default: the bundled libraries.map).',
    )
    parser.add_argument(
        '--resolver-config',
        default=DEFAULT_SETTINGS_PATH,
        help='nix-locate resolver tuning file (default: the bundled resolver.conf).',
    )
    parser.add_argument(
        '--min-confidence',
        type=float,
        help='Override Min-Confidence: a nix-locate match is accepted only when its\n'
             'similarity score exceeds this value (0 < value < 1).\n'
             'Lower values resolve more and guess more.',
    )
    parser.add_argument('--query-timeout', type=float, help='Override Query-Timeout: seconds per nix-locate query.')
    parser.add_argument('--workers', type=_positive_int, help='Worker threads for scanning and index queries (default: CPU count).')
    parser.add_argument('--workdir', help='Directory for the download and the unpacked tree (kept afterwards).')
    parser.add_argument('--keep-workdir', action='store_true', help='Do not delete the temporary work directory.')
    parser.add_argument(
        '--no-escalate',
        action='store_true',
        help='Fail instead of re-running under nix-shell when dpkg-deb, patchelf or\n'
             'nix-locate are missing.',
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def print_report(
    scan: ScanResult,
    provided: Sequence[RawDependency],
    external: Sequence[RawDependency],
    manifest: ResolutionManifest,
    context: ResolverContext,
) -> None:
    """Summarise the run. The unresolved list is always printed, even when empty."""
    needed_by: Dict[str, str] = {d.name: d.source_binary for d in external}

    print("\nResolved libraries:")
    if not manifest.resolved:
        print("  (none)")
    for entry in manifest.resolved:
        print(f"  {entry.raw_name} -> {entry.target_ref} [{entry.resolution_source}]")

    if provided:
        print("\nProvided by the package itself:")
        for dep in provided:
            print(f"  {dep.name}")

    print(f"\nUnresolved libraries ({len(manifest.unresolved)}):")
    if not manifest.unresolved:
        print("  (none)")
    for entry in manifest.unresolved:
        print(f"  {entry.raw_name} (needed by {needed_by.get(entry.raw_name, '?')})")

    if scan.failures:
        print(f"\nBinaries that could not be inspected ({len(scan.failures)}):")
        for failure in scan.failures:
            print(f"  {failure.path}: {failure.reason}")

    if context.timed_out:
        print(f"\nIndex queries that timed out: {', '.join(sorted(context.timed_out))}")
    if context.index_unavailable:
        print(f"\nFile-ownership index was unavailable: {context.index_unavailable}")


def run(args: argparse.Namespace) -> int:
    static_map = load_library_map(args.library_map)
    settings = load_resolver_settings(
        args.resolver_config,
        overrides={"min_confidence": args.min_confidence, "query_timeout": args.query_timeout},
    )
    context = ResolverContext(settings)
    print(f"Info: loaded {len(static_map)} static library mappings; "
          f"index match threshold {settings.min_confidence:.2f}.")

    own_workdir = args.workdir is None
    workdir = tempfile.mkdtemp(prefix="deb2nix-") if own_workdir else args.workdir
    os.makedirs(workdir, exist_ok=True)
    try:
        source = obtain_package(args.package, workdir)
        meta = read_metadata(source.local_path)
        print(f"Info: {meta.name} {meta.debian_version} ({meta.architecture})")

        tree = os.path.join(workdir, "root")
        os.makedirs(tree, exist_ok=True)
        unpack(source.local_path, tree)

        scan = scan_tree(tree, workers=args.workers)
        external, provided = scan.split_external()
        manifest = aggregate(external, static_map, IndexedResolver(context), workers=args.workers)

        print_report(scan, provided, external, manifest, context)

        expression = render_expression(meta, source, manifest, upstream=args.upstream)
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(expression)
        print(f"\nWrote {args.output}")
        if source.url is None:
            print(f"Info: the expression refers to ./{source.file_name}; keep it next to {args.output}.")

        if args.manifest_json:
            with open(args.manifest_json, 'w', encoding='utf-8') as f:
                f.write(manifest.to_json())
            print(f"Wrote {args.manifest_json}")
    finally:
        if own_workdir and not args.keep_workdir:
            shutil.rmtree(workdir, ignore_errors=True)
        elif own_workdir:
            print(f"Info: work directory kept at {workdir}")

    if args.build:
        local_src = source.file_name if source.url is None else None
        if not run_nix_build(args.output, upstream=args.upstream, source_file=local_src):
            return EXIT_BUILD_FAILED

    if args.strict and manifest.unresolved:
        return EXIT_UNRESOLVED
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    args = build_parser().parse_args(argv)
    try:
        controller = EscalationController(argv, allow_escalation=not args.no_escalate)
        child_status = controller.ensure_tools()
        if child_status is not None:
            return child_status
        return run(args)
    except Deb2NixError as e:
        print(f"\nCRITICAL ERROR [{e.component}]: {e}", file=sys.stderr)
        return EXIT_FATAL
    except OSError as e:
        print(f"\nCRITICAL ERROR [io]: {e}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
