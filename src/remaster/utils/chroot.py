"""Scoped privileged execution context inside an extracted root filesystem."""

import asyncio
import logging
import shutil
import subprocess
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Tuple

from remaster.errors import BestEffortFailure
from remaster.utils.process import CommandResult, run_command


logger = logging.getLogger(__name__)

# (mount arguments, mount point relative to the root), in bind order
SYSTEM_MOUNTS: List[Tuple[List[str], str]] = [
    (["--bind", "/dev"], "dev"),
    (["--bind", "/dev/pts"], "dev/pts"),
    (["-t", "proc", "proc"], "proc"),
    (["-t", "sysfs", "sysfs"], "sys"),
]

HOST_RESOLV_CONF = Path("/etc/resolv.conf")


class PrivilegedRoot:
    """Handle for running commands chrooted into a bound root tree."""

    def __init__(self, root: Path):
        self.root = root

    async def run(self, command: str, timeout: int = 1800) -> CommandResult:
        """Run a shell command as root inside the tree."""
        return await run_command(
            ["chroot", str(self.root), "/bin/sh", "-c", command],
            timeout=timeout,
        )


async def _unmount_all(mounted: List[Path]) -> None:
    for target in reversed(mounted):
        result = await run_command(["umount", "-l", str(target)], check=False)
        if result.returncode != 0:
            logger.warning(f"Failed to unmount {target}: {result.stderr.strip()}")
        else:
            logger.debug(f"Unmounted {target}")


@asynccontextmanager
async def privileged_root(root: Path) -> AsyncIterator[PrivilegedRoot]:
    """Bind the kernel interfaces into ``root`` for the duration of the block.

    Every mount made here is released on exit, whether the block succeeds,
    raises, or is cancelled. A failure to set up the mounts is raised as
    BestEffortFailure.
    """
    mounted: List[Path] = []
    resolv_target = root / "etc/resolv.conf"
    resolv_backup = None
    resolv_copied = False
    try:
        for args, rel in SYSTEM_MOUNTS:
            target = root / rel
            await asyncio.to_thread(lambda: target.mkdir(parents=True, exist_ok=True))
            try:
                await run_command(["mount", *args, str(target)])
            except subprocess.CalledProcessError as e:
                raise BestEffortFailure(
                    f"cannot mount {rel} into {root}: {e.stderr.strip() if e.stderr else e}"
                ) from e
            mounted.append(target)
            logger.debug(f"Mounted {target}")

        # Name resolution for package managers run inside the tree
        if HOST_RESOLV_CONF.exists():
            if resolv_target.is_symlink() or resolv_target.exists():
                resolv_backup = resolv_target.with_name("resolv.conf.remaster-orig")
                await asyncio.to_thread(resolv_target.rename, resolv_backup)
            await asyncio.to_thread(shutil.copyfile, HOST_RESOLV_CONF, resolv_target)
            resolv_copied = True

        yield PrivilegedRoot(root)

    finally:
        await _unmount_all(mounted)
        if resolv_copied:
            await asyncio.to_thread(resolv_target.unlink)
        if resolv_backup is not None:
            await asyncio.to_thread(resolv_backup.rename, resolv_target)
