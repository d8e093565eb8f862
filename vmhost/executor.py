"""Privileged command execution for vmhost."""

from __future__ import annotations

import shlex
import subprocess
from typing import Optional, Sequence

from vmhost.exceptions import CommandFailed
from vmhost.utils import log


class CommandExecutor:
    """Runs external commands synchronously and turns failures into ``CommandFailed``.

    Components never call ``subprocess`` themselves; they receive an executor
    so tests can substitute a recording fake.
    """

    def run(self, cmd: Sequence[str], stdin: Optional[str] = None) -> str:
        """Run ``cmd`` to completion, optionally feeding ``stdin``; return stdout."""
        argv = [str(arg) for arg in cmd]
        log("DEBUG", f"Running: {shlex.join(argv)}")
        try:
            result = subprocess.run(
                argv,
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandFailed(argv, 127, str(exc)) from exc
        if result.returncode != 0:
            raise CommandFailed(argv, result.returncode, result.stderr)
        return result.stdout
