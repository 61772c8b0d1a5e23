"""Pydantic models for configuration and validation."""

from remaster.models.config import (
    RemasterConfig,
    WorkConfig,
    LayerConfig,
    ImageConfig,
    ValidationConfig,
)
from remaster.models.bootcfg import (
    BootMenuConfig,
    SetFieldPatch,
    RemoveTokenPatch,
    ReplaceTokenPatch,
)
from remaster.models.mutation import (
    MutationSpec,
    InjectOp,
    ReplaceOp,
    RemoveOp,
    LinkOp,
    PrivilegedOp,
    DisabledComponent,
)

__all__ = [
    "RemasterConfig",
    "WorkConfig",
    "LayerConfig",
    "ImageConfig",
    "ValidationConfig",
    "BootMenuConfig",
    "SetFieldPatch",
    "RemoveTokenPatch",
    "ReplaceTokenPatch",
    "MutationSpec",
    "InjectOp",
    "ReplaceOp",
    "RemoveOp",
    "LinkOp",
    "PrivilegedOp",
    "DisabledComponent",
]
