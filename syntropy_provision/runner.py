"""
Subprocess execution for host operations.

Commands run in their own session so that an operator interrupt (Ctrl-C) does
not reach an in-flight raw write; the pipeline decides when to stop.
"""

import logging
import os
import shutil
import subprocess
from typing import List, Optional

from .errors import OperationTimeout, PlatformFailure

logger = logging.getLogger(__name__)


def needs_sudo() -> bool:
    """True when privileged commands must be prefixed with sudo"""
    return hasattr(os, 'geteuid') and os.geteuid() != 0 and shutil.which('sudo') is not None


def run_command(
    command: List[str],
    subphase: str,
    timeout: Optional[float] = 30,
    check: bool = True,
    privileged: bool = False,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a command with logging; failures become PlatformFailure(subphase)"""
    if privileged and needs_sudo():
        command = ['sudo', '-n'] + list(command)

    cmd_str = ' '.join(command)
    logger.debug(f"Running command ({subphase}): {cmd_str}")

    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
            start_new_session=True,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {cmd_str}")
        raise OperationTimeout(subphase, f"'{command[0]}' exceeded the {timeout}s timeout")
    except FileNotFoundError:
        raise PlatformFailure(subphase, f"required command not found: {command[0]}")

    if result.stdout:
        logger.debug(f"Command output: {result.stdout.strip()}")
    if result.stderr:
        logger.debug(f"Command error: {result.stderr.strip()}")

    if check and result.returncode != 0:
        detail = (result.stderr or result.stdout or '').strip().splitlines()
        signal = detail[-1] if detail else f"exit status {result.returncode}"
        raise PlatformFailure(subphase, f"'{command[0]}' failed: {signal}")

    return result


def command_available(name: str) -> bool:
    return shutil.which(name) is not None
