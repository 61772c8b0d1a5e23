"""Stage registry for assembling the pipeline."""

import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Type

from remaster.stages.base import BaseStage
from remaster.stages.boot_asset import BootAssetExtractor
from remaster.stages.bootcfg import BootConfigPatcher
from remaster.stages.builder import ImageBuilder
from remaster.stages.injector import ContentInjector
from remaster.stages.layers import LayerMerger
from remaster.stages.tree import ImageTreeExtractor
from remaster.stages.validator import Validator

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)


class StageRegistry:
    """Registry holding one instance of every pipeline stage."""

    def __init__(self):
        """Initialize stage registry."""
        self._stages: Dict[str, BaseStage] = {}
        self._stage_classes: Dict[str, Type[BaseStage]] = {
            "boot_asset": BootAssetExtractor,
            "tree": ImageTreeExtractor,
            "layers": LayerMerger,
            "injector": ContentInjector,
            "bootcfg": BootConfigPatcher,
            "validator": Validator,
            "builder": ImageBuilder,
        }
        for name, stage_class in self._stage_classes.items():
            try:
                self._stages[name] = stage_class()
            except Exception as e:
                logger.error(f"Failed to instantiate stage {name}: {e}")
                raise

    def get_stage(self, name: str) -> Optional[BaseStage]:
        """Get a stage by name."""
        return self._stages.get(name)

    def replace_stage(self, name: str, stage: BaseStage) -> None:
        """Swap in a different implementation for a stage."""
        if name not in self._stages:
            raise KeyError(f"Unknown stage: {name}")
        self._stages[name] = stage

    def list_stages(self) -> List[str]:
        """List stage names in pipeline order."""
        return list(self._stages.keys())

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        """Union of the native tools every stage needs for this run."""
        tools = set()
        for stage in self._stages.values():
            tools.update(stage.required_tools(ctx))
        return sorted(tools)
