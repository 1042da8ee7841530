"""
Exception hierarchy for deb2nix.

Everything derives from RuntimeError so callers that only care about
"something went wrong" can keep catching RuntimeError. Each error carries
the name of the component that raised it, because the CLI reports fatal
errors as "CRITICAL ERROR [component]: message" and users need to know
which stage to look at.
"""

from typing import List, Optional


class Deb2NixError(RuntimeError):
    component = "deb2nix"

    def __init__(self, message: str, component: Optional[str] = None):
        super().__init__(message)
        if component:
            self.component = component


##############################################################################
# Fatal / startup errors
##############################################################################

class LibraryMapError(Deb2NixError):
    """The bundled (or user supplied) static library map could not be loaded."""
    component = "static-library-map"


class ResolverConfigError(Deb2NixError):
    """The resolver tuning file or a CLI override is invalid."""
    component = "indexed-resolver"


class EscalationError(Deb2NixError):
    """
    Required tools are missing and could not be provisioned.

    `missing_tools` lists the exact tool names (e.g. "patchelf") so the
    diagnostic can say precisely what is absent.
    """
    component = "escalation"

    def __init__(self, message: str, missing_tools: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_tools = list(missing_tools or [])


class EscalationLoopError(EscalationError):
    """We were asked to escalate while already running inside an escalated context."""


class FetchError(Deb2NixError):
    component = "fetch"


class PackageReadError(Deb2NixError):
    component = "package"


class UnpackError(Deb2NixError):
    component = "unpack"


##############################################################################
# Recoverable / per-item errors
##############################################################################

class ElfInspectionError(Deb2NixError):
    """
    One binary could not be inspected (truncated header, patchelf refused it, ...).

    The scanner records these and keeps going. They are never fatal.
    """
    component = "binary-scanner"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot inspect {path!r}: {reason}")
        self.path = path
        self.reason = reason


class BuildError(Deb2NixError):
    """The generated expression could not be handed to nix-build at all."""
    component = "nix-build"
