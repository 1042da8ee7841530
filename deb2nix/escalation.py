"""
Make sure the external tools exist, re-running ourselves under nix-shell if not.

State machine:

    CHECKING -> READY                      all tools on PATH, carry on in-process
    CHECKING -> ESCALATING -> READY_IN_CONTEXT
                                           tools provisioned, the whole command
                                           ran again inside nix-shell; its exit
                                           status is ours
    CHECKING -> ESCALATING -> FAILED       nix-shell missing or could not build
                                           the tools
    CHECKING -> FAILED                     tools missing while already inside an
                                           escalated context (loop guard), or
                                           escalation disabled

The re-run is a one-way hand-off, not a recursive call: once it returns the
outer process only forwards the exit status. The child sees
DEB2NIX_ESCALATED=1 in its environment; if it still cannot find the tools it
stops instead of spawning yet another nix-shell.
"""

import os
import shlex
import shutil
import subprocess
import sys
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import EscalationError, EscalationLoopError

SENTINEL_ENV = "DEB2NIX_ESCALATED"
PROVISIONER = "nix-shell"

# (executable we need, nixpkgs attribute that provides it)
REQUIRED_TOOLS: Tuple[Tuple[str, str], ...] = (
    ("dpkg-deb", "dpkg"),
    ("patchelf", "patchelf"),
    ("nix-locate", "nix-index"),
)

CHECKING = "CHECKING"
READY = "READY"
ESCALATING = "ESCALATING"
READY_IN_CONTEXT = "READY_IN_CONTEXT"
FAILED = "FAILED"


class EscalationController:
    """
    One-shot gate run at the very start of main().

    `which` and `runner` default to shutil.which and subprocess.run; tests
    swap them out. `argv` is the argument list to hand to the re-run
    (sys.argv[1:] in practice).
    """

    def __init__(
        self,
        argv: Sequence[str],
        tools: Sequence[Tuple[str, str]] = REQUIRED_TOOLS,
        environ: Optional[Mapping[str, str]] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        python: str = sys.executable,
        allow_escalation: bool = True,
    ):
        self.argv = list(argv)
        self.tools = list(tools)
        self.environ: Dict[str, str] = dict(os.environ if environ is None else environ)
        self.which = which
        self.runner = runner
        self.python = python
        self.allow_escalation = allow_escalation

        self.state = CHECKING
        self.history: List[str] = [CHECKING]
        self.escalations = 0

    def _enter(self, state: str) -> None:
        self.state = state
        self.history.append(state)

    def _describe(self, missing: Sequence[str]) -> str:
        provided_by = dict(self.tools)
        return ", ".join(f"{tool} (nixpkgs: {provided_by[tool]})" for tool in missing)

    @property
    def in_escalated_context(self) -> bool:
        return bool(self.environ.get(SENTINEL_ENV))

    def missing_tools(self) -> List[str]:
        return [tool for tool, _pkg in self.tools if not self.which(tool)]

    def ensure_tools(self) -> Optional[int]:
        """
        Run the gate.

        Returns None when the tools are here and the caller should continue
        in this process (READY). Returns the child's exit status when the
        work was done by a re-run inside nix-shell (READY_IN_CONTEXT); the
        caller must exit with it and do nothing else. Raises EscalationError
        or EscalationLoopError on FAILED.
        """
        if self.state != CHECKING:
            raise EscalationLoopError(
                f"Escalation controller was run twice (current state {self.state}). "
                f"Escalation happens at most once per run."
            )

        missing = self.missing_tools()
        if not missing:
            self._enter(READY)
            return None

        if self.in_escalated_context:
            self._enter(FAILED)
            raise EscalationLoopError(
                f"Still missing {self._describe(missing)} although this process is already "
                f"running inside an escalated {PROVISIONER} context ({SENTINEL_ENV} is set). "
                f"Refusing to escalate again.",
                missing_tools=missing,
            )

        if not self.allow_escalation:
            self._enter(FAILED)
            raise EscalationError(
                f"Required tools not found on PATH: {self._describe(missing)}. "
                f"Install them or drop --no-escalate to let deb2nix fetch them through {PROVISIONER}.",
                missing_tools=missing,
            )

        self._enter(ESCALATING)
        return self._escalate(missing)

    def _escalate(self, missing: List[str]) -> int:
        if self.escalations:
            self._enter(FAILED)
            raise EscalationLoopError("Refusing to escalate a second time in the same run.",
                                      missing_tools=missing)
        self.escalations += 1

        provided_by = dict(self.tools)
        packages = [provided_by[tool] for tool in missing]

        shell = self.which(PROVISIONER)
        if not shell:
            self._enter(FAILED)
            raise EscalationError(
                f"Cannot provision {self._describe(missing)}: {PROVISIONER} is not available. "
                f"Install Nix, or install the listed tools yourself.",
                missing_tools=missing,
            )

        print(f"Info: missing {', '.join(missing)}; provisioning {' '.join(packages)} with {PROVISIONER}...")
        provision = self.runner([shell, "-p", *packages, "--run", "true"], check=False)
        if provision.returncode != 0:
            self._enter(FAILED)
            raise EscalationError(
                f"{PROVISIONER} could not provision {self._describe(missing)} "
                f"(exit status {provision.returncode}). Check that <nixpkgs> is on NIX_PATH "
                f"and the binary cache is reachable.",
                missing_tools=missing,
            )

        env = dict(self.environ)
        env[SENTINEL_ENV] = "1"
        command = " ".join(shlex.quote(a) for a in [self.python, "-m", "deb2nix", *self.argv])
        print(f"Info: re-running inside {PROVISIONER}: {command}")
        child = self.runner([shell, "-p", *packages, "--run", command], env=env, check=False)

        self._enter(READY_IN_CONTEXT)
        return child.returncode
