"""Pipeline stages for remastering."""

from remaster.stages.base import BaseStage
from remaster.stages.registry import StageRegistry

__all__ = [
    "BaseStage",
    "StageRegistry",
]
