"""
Provides the utilities(functions) needed by the site deployer to drive external tools:
    - run_command
    - run_shell
    - command_succeeds
"""

import logging
import subprocess
from typing import Optional, Sequence

from site_deployer.errors import DeploymentTimeoutError, ExternalToolError

logger = logging.getLogger(__name__)


def run_command(args: Sequence[str], cwd=None, stream: bool = False,
                timeout: Optional[float] = None) -> str:
    """
    Execute a command and return its output.

    :param args: program and arguments, no shell involved
    :param cwd: working directory for the command
    :param stream: when True the output goes straight to the terminal and "" is returned
    :param timeout: seconds before the command is killed
    :return: decoded stdout and stderr of the command
    :raises ExternalToolError: if the command exits with a non-zero status
    :raises DeploymentTimeoutError: if the command outlives the timeout
    """
    args = [str(a) for a in args]
    logger.debug(f"Running: {' '.join(args)} (cwd={cwd})")

    if timeout is not None and timeout <= 0:
        raise DeploymentTimeoutError(f"No time left to run: {' '.join(args)}")

    try:
        if stream:
            result = subprocess.run(args, cwd=cwd, timeout=timeout)
            output = ""
        else:
            result = subprocess.run(
                args,
                cwd=cwd,
                timeout=timeout,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT
            )
            output = result.stdout.decode(errors="replace")
    except FileNotFoundError as e:
        raise ExternalToolError(args, 127, str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise DeploymentTimeoutError(
            f"Command timed out after {timeout:.0f}s: {' '.join(args)}") from e

    if result.returncode != 0:
        raise ExternalToolError(args, result.returncode, output)
    return output


def run_shell(expression: str, cwd=None, stream: bool = False,
              timeout: Optional[float] = None) -> str:
    """Run an opaque shell expression through bash"""
    return run_command(["bash", "-c", expression], cwd=cwd, stream=stream, timeout=timeout)


def command_succeeds(args: Sequence[str], cwd=None, timeout: Optional[float] = None) -> bool:
    """Probe form of run_command: True on exit status 0"""
    try:
        run_command(args, cwd=cwd, timeout=timeout)
    except ExternalToolError as e:
        logger.debug(f"Probe failed: {e}")
        return False
    return True
