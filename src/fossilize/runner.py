"""Narrow capability for running external tools."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from fossilize.errors import CommandError

logger = logging.getLogger(__name__)

# Shell convention for "command not found".
COMMAND_NOT_FOUND = 127


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


class CommandRunner(Protocol):
    def run(self, name: str, args: Sequence[str]) -> CommandResult:
        """Run ``name`` with ``args`` to completion and capture its output."""


@dataclass(slots=True)
class SubprocessRunner:
    """Runs tools as child processes of the current interpreter."""

    cwd: str | None = None

    def run(self, name: str, args: Sequence[str]) -> CommandResult:
        try:
            completed = subprocess.run(
                [name, *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(stdout="", stderr=str(exc), exit_code=COMMAND_NOT_FOUND)
        return CommandResult(
            stdout=completed.stdout,
            stderr=completed.stderr,
            exit_code=completed.returncode,
        )


def run_checked(
    runner: CommandRunner,
    name: str,
    *args: str,
    secrets: Sequence[str] = (),
) -> str:
    """Run a tool, relay its output, and raise ``CommandError`` on failure.

    Arguments listed in ``secrets`` are masked wherever the command line is
    logged or attached to an error.
    """
    argv = [str(arg) for arg in args]
    command = shlex.join([name, *("****" if arg in secrets else arg for arg in argv)])
    result = runner.run(name, argv)
    if result.exit_code != 0:
        logger.error("Failed to run `%s`", command)
        if result.stdout:
            logger.error("%s", result.stdout.rstrip())
        if result.stderr:
            logger.error("%s", result.stderr.rstrip())
        raise CommandError(
            f"`{name}` exited with status {result.exit_code}.",
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            hint="See the captured output above for details.",
            context={
                "command": command,
                "returncode": str(result.exit_code),
                "stderr": result.stderr[:2000] if result.stderr else "",
            },
        )
    if result.stdout.strip():
        logger.info("%s", result.stdout.rstrip())
    else:
        logger.info("> %s", command)
    return result.stdout


__all__ = [
    "COMMAND_NOT_FOUND",
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "run_checked",
]
