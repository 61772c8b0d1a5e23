"""Native tool invocation helpers."""

import asyncio
import logging
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from remaster.errors import MissingDependency


logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


@dataclass
class CommandResult:
    """Exit status and decoded output of a native tool."""
    returncode: int
    stdout: str = ""
    stderr: str = ""


async def run_command(
    cmd: List[str],
    check: bool = True,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
) -> CommandResult:
    """Run a native tool and collect its output.

    stdin is closed so tools that prompt (unsquashfs on overwrite, mksquashfs
    on a full disk) fail instead of hanging. A tool still running after
    ``timeout`` seconds is killed and ``subprocess.TimeoutExpired`` raised.
    With ``check`` a non-zero exit raises ``subprocess.CalledProcessError``
    carrying the decoded stdout and stderr.
    """
    logger.debug(f"Running: {shlex.join(cmd)}")
    started = time.monotonic()

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"{cmd[0]} killed after {timeout}s")
        raise subprocess.TimeoutExpired(cmd, timeout)

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    logger.debug(f"{cmd[0]} exited {result.returncode} after {time.monotonic() - started:.1f}s")

    if check and result.returncode != 0:
        tail = result.stderr.strip().splitlines()[-STDERR_TAIL_LINES:]
        for line in tail:
            logger.debug(f"{cmd[0]}: {line}")
        raise subprocess.CalledProcessError(
            result.returncode, cmd, output=result.stdout, stderr=result.stderr
        )

    return result


def missing_tools(tools: Iterable[str]) -> List[str]:
    """Return the tools from ``tools`` that are not on PATH."""
    return sorted({tool for tool in tools if shutil.which(tool) is None})


def require_tools(tools: Iterable[str]) -> None:
    """Fail before any mutation if a native tool is unavailable."""
    missing = missing_tools(tools)
    if missing:
        raise MissingDependency(f"required tools not found: {', '.join(missing)}")
    logger.debug("All required tools available")
