"""Sequential orchestration of a remaster run."""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from remaster.engine.context import BuildContext
from remaster.errors import MissingDependency, RemasterError
from remaster.models.artifacts import RemasterResult
from remaster.models.config import RemasterConfig
from remaster.models.mutation import InjectOp, ReplaceOp
from remaster.stages.registry import StageRegistry
from remaster.utils.fs import remove_path
from remaster.utils.process import require_tools


logger = logging.getLogger(__name__)

LOG_FILE_NAME = "remaster.log"

STAGE_ORDER = [
    "boot_asset",
    "tree",
    "layers",
    "injector",
    "bootcfg",
    "validator",
    "builder",
]


def missing_payloads(config: RemasterConfig, payload_dir: Path) -> List[str]:
    """Payload files referenced by the mutation sets that do not exist."""
    missing = []
    for spec in (config.iso_mutations, config.rootfs_mutations):
        for op in spec.operations:
            if isinstance(op, (InjectOp, ReplaceOp)) and op.source is not None:
                if not (payload_dir / op.source).is_file():
                    missing.append(op.source)
    return missing


def clear_work_dir(work_dir: Path, keep: Optional[List[str]] = None) -> None:
    """Empty ``work_dir``, sparing the names in ``keep``."""
    if not work_dir.is_dir():
        return
    for entry in work_dir.iterdir():
        if entry.name not in (keep or []):
            remove_path(entry)


class RemasterPipeline:
    """Runs every stage in order against one build context."""

    def __init__(self, config: RemasterConfig, registry: Optional[StageRegistry] = None):
        """Initialize pipeline."""
        self.config = config
        self.registry = registry or StageRegistry()
        self.ctx = BuildContext.from_config(config)

    async def run(self) -> RemasterResult:
        """Produce the output image or raise the first fatal error."""
        ctx = self.ctx
        start_time = datetime.now()
        logger.info(f"Remastering {ctx.source_image} -> {ctx.output_image}")

        current = "preflight"
        owns_work_dir = False
        try:
            await self.preflight()
            owns_work_dir = True
            await asyncio.to_thread(clear_work_dir, ctx.work_dir, [LOG_FILE_NAME])
            await asyncio.to_thread(lambda: ctx.work_dir.mkdir(parents=True, exist_ok=True))

            for name in STAGE_ORDER:
                current = name
                stage = self.registry.get_stage(name)
                logger.info(f"Stage {name}: starting")
                await stage.run(ctx)

            current = "validator"
            validator = self.registry.get_stage("validator")
            await validator.verify_image(ctx, ctx.temp_output)

            current = "publish"
            await asyncio.to_thread(os.replace, ctx.temp_output, ctx.output_image)
            ctx.temp_output = None

        except RemasterError as e:
            if e.stage is None:
                e.stage = current
            logger.error(f"Remaster failed: {e}")
            await self._discard_output()
            raise
        except Exception as e:
            logger.error(f"Remaster failed in stage {current}: {e}", exc_info=True)
            await self._discard_output()
            raise
        finally:
            if owns_work_dir and not self.config.work.keep_work_dir:
                await asyncio.to_thread(clear_work_dir, ctx.work_dir, [LOG_FILE_NAME])

        duration = (datetime.now() - start_time).total_seconds()
        logger.info(f"Wrote {ctx.output_image} in {duration:.2f}s with {len(ctx.warnings)} warning(s)")

        return RemasterResult(
            output=ctx.output_image,
            degraded_boot_asset=ctx.boot_asset.degraded,
            warnings=list(ctx.warnings),
            repacked_layers=[layer.name for layer in ctx.layers if layer.dirty],
            checks=list(ctx.checks),
        )

    async def preflight(self) -> None:
        """Fail before touching anything if tools or payloads are missing."""
        ctx = self.ctx
        require_tools(self.registry.required_tools(ctx))

        missing = await asyncio.to_thread(missing_payloads, self.config, ctx.payload_dir)
        if missing:
            raise MissingDependency(
                f"payload files not found in {ctx.payload_dir}: {', '.join(missing)}"
            )

        protected = [ctx.source_image, ctx.output_image, ctx.payload_dir]
        if ctx.config_dir is not None:
            protected.append(ctx.config_dir)
        for path in protected:
            if ctx.work_dir == path or ctx.work_dir in path.parents:
                raise RemasterError(f"work directory {ctx.work_dir} must not contain {path}")

    async def _discard_output(self) -> None:
        temp = self.ctx.temp_output
        if temp is not None and await asyncio.to_thread(lambda: temp.exists()):
            await asyncio.to_thread(temp.unlink)
            logger.info(f"Removed partial output {temp}")
        self.ctx.temp_output = None
