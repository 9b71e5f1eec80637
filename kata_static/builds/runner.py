"""External builder execution.

This module handles:
- Composing the environment passed to a component's static builder
- Executing the builder with subprocess
- Sending builder output to the session log (silent mode) or the terminal
- Installing produced binaries into the InstallTree

The builders themselves are opaque scripts: given DESTDIR and PREFIX they
either populate DESTDIR or leave an archive/binaries in their working
directory for the install steps to pick up.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

# Mode of installed component binaries
INSTALL_MODE = 0o744


class BuilderFailure(Exception):
    """Raised when an external builder fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "builder_failed",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class BuilderInvocation:
    """How to run a component's external builder.

    Attributes:
        command: Command and arguments.
        cwd: Working directory of the builder.
        env: Variables added to the inherited environment.
    """

    command: list[str]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)

    @property
    def command_line(self) -> str:
        """Shell-quoted command line, for logs."""
        return shlex.join(self.command)


@dataclass
class BuilderResult:
    """Result of a successful builder execution."""

    command: str
    exit_code: int
    started_at: datetime
    finished_at: datetime

    @property
    def duration(self) -> float:
        """Wall-clock duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()


def compose_builder_env(
    destdir: Path,
    prefix: str,
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Compose the environment overrides for a builder.

    Args:
        destdir: InstallTree root.
        prefix: Install prefix inside the tree.
        extra: Per-target variables.

    Returns:
        Environment overrides (DESTDIR and PREFIX always set).
    """
    env = {"DESTDIR": str(destdir), "PREFIX": prefix}
    if extra:
        env.update(extra)
    return env


def run_builder(
    invocation: BuilderInvocation,
    output: TextIO | None = None,
    timeout: int | None = None,
) -> BuilderResult:
    """Execute an external builder.

    Args:
        invocation: Command, working directory and environment.
        output: Stream receiving stdout/stderr (None inherits the terminal).
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        BuilderResult with execution details.

    Raises:
        BuilderFailure: If the builder cannot start, times out or exits
                        non-zero.
    """
    invocation.cwd.mkdir(parents=True, exist_ok=True)
    cmd_str = invocation.command_line

    logger.info("Executing builder: %s", cmd_str)
    logger.info("Working directory: %s", invocation.cwd)
    for key in sorted(invocation.env):
        logger.debug("  %s=%s", key, invocation.env[key])

    started_at = datetime.now(timezone.utc)

    if output is not None:
        output.write(f"# Command: {cmd_str}\n")
        output.write(f"# Started: {started_at.isoformat()}\n")
        output.write(f"# CWD: {invocation.cwd}\n")
        output.flush()

    env = dict(os.environ)
    env.update(invocation.env)

    try:
        result = subprocess.run(
            invocation.command,
            cwd=invocation.cwd,
            stdout=output,
            stderr=subprocess.STDOUT if output is not None else None,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        message = f"Builder timed out after {timeout} seconds: {cmd_str}"
        logger.error(message)
        raise BuilderFailure(message, exit_code=-1, code="builder_timeout") from e
    except OSError as e:
        message = f"Failed to execute builder {cmd_str}: {e}"
        logger.error(message)
        raise BuilderFailure(message, code="execution_error") from e

    finished_at = datetime.now(timezone.utc)

    if output is not None:
        output.write(f"\n# Finished: {finished_at.isoformat()}\n")
        output.write(f"# Exit code: {result.returncode}\n")
        output.flush()

    if result.returncode != 0:
        message = f"Builder failed with exit code {result.returncode}: {cmd_str}"
        logger.error(message)
        raise BuilderFailure(message, exit_code=result.returncode)

    builder_result = BuilderResult(
        command=cmd_str,
        exit_code=result.returncode,
        started_at=started_at,
        finished_at=finished_at,
    )
    logger.info("Builder finished in %.1fs", builder_result.duration)
    return builder_result


def install_file(src: Path, dest: Path, mode: int = INSTALL_MODE) -> Path:
    """Install a produced binary into the InstallTree.

    Args:
        src: File left behind by the builder.
        dest: Destination path (parents are created).
        mode: Permission bits of the installed file.

    Returns:
        The destination path.

    Raises:
        BuilderFailure: If the builder did not produce ``src``.
    """
    if not src.is_file():
        raise BuilderFailure(
            f"Builder did not produce {src}",
            code="missing_output",
        )
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dest)
    dest.chmod(mode)
    logger.info("Installed %s -> %s", src.name, dest)
    return dest


def command_for_script(script: Path, args: Sequence[str] = ()) -> list[str]:
    """Return the command running a builder script with arguments."""
    return [str(script), *args]


__all__ = [
    "INSTALL_MODE",
    "BuilderFailure",
    "BuilderInvocation",
    "BuilderResult",
    "command_for_script",
    "compose_builder_env",
    "install_file",
    "run_builder",
]
