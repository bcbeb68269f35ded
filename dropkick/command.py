"""
Subprocess helpers

Run external tools (kpartx, mount, qemu-img, nix, mke2fs, ...) with logging,
optional sudo escalation, and exit status checking.
"""

import logging
import os
import shlex
import subprocess
from typing import Dict, List, Mapping, Optional, Sequence, Union

from dropkick.settings import Settings

logger = logging.getLogger(__name__)

StrPath = Union[str, "os.PathLike[str]"]


class CommandError(RuntimeError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        message = f"{shlex.join(self.argv)} exited with status {returncode}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


def sudo_enabled() -> bool:
    """Whether privileged commands should be prefixed with sudo (see DROPKICK_NO_SUDO)."""
    return Settings.from_env().use_sudo


def with_sudo(argv: Sequence[StrPath], env: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Wrap a command line so it runs through sudo.

    sudo resets the environment by default, so explicitly requested
    variables are passed through ``env VAR=value`` on the far side of the
    escalation. The working directory is inherited from the caller.

    Args:
        argv: Command and arguments
        env: Extra environment variables the command needs

    Returns:
        New argument vector starting with ``sudo``
    """
    wrapped = ["sudo"]
    if env:
        wrapped.append("env")
        wrapped.extend(f"{key}={value}" for key, value in env.items())
    wrapped.extend(os.fspath(arg) for arg in argv)
    return wrapped


def run(
    argv: Sequence[StrPath],
    *,
    cwd: Optional[StrPath] = None,
    env: Optional[Mapping[str, str]] = None,
    capture: bool = False,
    sudo: bool = False,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external command.

    Args:
        argv: Command and arguments
        cwd: Working directory for the command
        env: Extra environment variables (merged over the current environment)
        capture: Capture stdout/stderr as text instead of inheriting them
        sudo: Run the command with elevated privileges
        check: Raise CommandError on a non-zero exit status

    Returns:
        The completed process
    """
    argv = [os.fspath(arg) for arg in argv]

    if sudo and sudo_enabled():
        logger.info(f"running with sudo: {shlex.join(argv)}")
        argv = with_sudo(argv, env)
    else:
        logger.info(f"running: {shlex.join(argv)}")

    process_env: Optional[Dict[str, str]] = None
    if env:
        process_env = dict(os.environ)
        process_env.update(env)

    result = subprocess.run(
        argv,
        cwd=cwd,
        env=process_env,
        capture_output=capture,
        text=capture,
    )

    if check and result.returncode != 0:
        stderr = result.stderr if capture else ""
        logger.error(f"Command failed with exit code {result.returncode}: {shlex.join(argv)}")
        raise CommandError(argv, result.returncode, stderr or "")

    return result
