"""Extraction of the appended EFI boot partition."""

import asyncio
import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple, TYPE_CHECKING

from remaster.errors import ExtractionFailure
from remaster.models.artifacts import SECTOR_SIZE, BootAsset
from remaster.stages.base import BaseStage
from remaster.utils.process import run_command

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)

APPENDED_PARTITION_MARKER = "append_partition 2"
INTERVAL_RE = re.compile(r"(\d+)d-(\d+)d")
COPY_CHUNK_SECTORS = 2048


def parse_appended_partition_interval(report: str) -> Optional[Tuple[int, int]]:
    """Find the inclusive sector interval of appended partition 2.

    ``report`` is the output of ``xorriso -report_el_torito as_mkisofs``.
    The interval is searched on the ``-append_partition 2`` line and the line
    after it. Returns None when no well-formed interval is found.
    """
    lines = report.splitlines()
    for index, line in enumerate(lines):
        if APPENDED_PARTITION_MARKER not in line:
            continue
        for candidate in lines[index:index + 2]:
            match = INTERVAL_RE.search(candidate)
            if match:
                start, end = int(match.group(1)), int(match.group(2))
                if end >= start:
                    return start, end
                logger.warning(f"Ignoring inverted partition interval {start}-{end}")
        return None
    return None


def copy_sectors(source: Path, target: Path, start: int, count: int) -> int:
    """Copy ``count`` 512-byte sectors starting at ``start``. Returns bytes written."""
    remaining = count * SECTOR_SIZE
    written = 0
    with open(source, "rb") as src, open(target, "wb") as dst:
        src.seek(start * SECTOR_SIZE)
        while remaining:
            chunk = src.read(min(remaining, COPY_CHUNK_SECTORS * SECTOR_SIZE))
            if not chunk:
                raise ExtractionFailure(
                    f"source image ends {remaining} bytes before the end of the "
                    f"boot partition (sectors {start}+{count})"
                )
            dst.write(chunk)
            written += len(chunk)
            remaining -= len(chunk)
    return written


def write_fallback(target: Path, size: int) -> None:
    """Write a zero-filled stand-in boot partition."""
    with open(target, "wb") as f:
        f.truncate(size)


class BootAssetExtractor(BaseStage):
    """Copies the second El Torito boot partition out of the source image."""

    name = "boot_asset"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        return ["xorriso"]

    async def run(self, ctx: "BuildContext") -> None:
        """Extract the boot asset into the work directory."""
        source = ctx.source_image
        if not await asyncio.to_thread(source.is_file):
            raise ExtractionFailure(f"source image not found: {source}")

        target = ctx.boot_asset_path
        await asyncio.to_thread(lambda: target.parent.mkdir(parents=True, exist_ok=True))

        interval = await self._read_interval(ctx)
        if interval is None:
            size = ctx.config.image.fallback_asset_size
            ctx.warn(
                self.name,
                f"could not locate appended boot partition, using {size} byte zero-filled image",
            )
            await asyncio.to_thread(write_fallback, target, size)
            ctx.boot_asset = BootAsset(path=target, size=size, degraded=True)
            return

        start, end = interval
        count = end - start + 1
        logger.info(f"Extracting EFI partition: sectors {start} to {end} ({count} sectors)")
        size = await asyncio.to_thread(copy_sectors, source, target, start, count)
        ctx.boot_asset = BootAsset(path=target, size=size, interval=interval)

    async def _read_interval(self, ctx: "BuildContext") -> Optional[Tuple[int, int]]:
        try:
            result = await run_command(
                ["xorriso", "-indev", str(ctx.source_image), "-report_el_torito", "as_mkisofs"],
                timeout=300,
            )
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to read boot catalog: {e}. Stderr: {e.stderr}")
            return None

        # xorriso reports on stderr as well as stdout
        return parse_appended_partition_interval(result.stdout + "\n" + result.stderr)
