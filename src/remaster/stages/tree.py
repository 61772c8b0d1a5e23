"""Extraction of the ISO 9660 directory tree."""

import asyncio
import logging
import shutil
import subprocess
from typing import List, TYPE_CHECKING

from remaster.errors import ExtractionFailure
from remaster.models.artifacts import ImageTree
from remaster.stages.base import BaseStage
from remaster.utils.fs import make_writable
from remaster.utils.process import run_command

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)


class ImageTreeExtractor(BaseStage):
    """Unpacks the full ISO tree into the work directory."""

    name = "tree"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        return ["xorriso"]

    async def run(self, ctx: "BuildContext") -> None:
        """Extract the image and make the copy writable."""
        source = ctx.source_image
        if not await asyncio.to_thread(source.is_file):
            raise ExtractionFailure(f"source image not found: {source}")

        target = ctx.iso_dir
        if await asyncio.to_thread(target.exists):
            await asyncio.to_thread(shutil.rmtree, target)
        await asyncio.to_thread(lambda: target.mkdir(parents=True))

        logger.info(f"Extracting {source} to {target}")
        try:
            await run_command(
                ["xorriso", "-osirrox", "on", "-indev", str(source), "-extract", "/", str(target)],
                timeout=3600,
            )
        except subprocess.CalledProcessError as e:
            raise ExtractionFailure(
                f"xorriso could not extract {source}: {e.stderr.strip() if e.stderr else e}"
            ) from e

        if not await asyncio.to_thread(lambda: any(target.iterdir())):
            raise ExtractionFailure(f"extracted tree of {source} is empty")

        # ISO 9660 files come out read-only
        changed = await asyncio.to_thread(make_writable, target)
        logger.debug(f"Granted write permission on {changed} entries")

        ctx.iso_tree = ImageTree(root=target)
