"""
Live Remaster - rebuild Ubuntu-style live ISO images.

Extracts a hybrid ISO, merges or selectively edits its casper squashfs
layers, injects content, and rebuilds an image that boots on both BIOS
and UEFI.
"""

__version__ = "1.0.0"

# Re-export key components for easier access
from remaster.models.config import RemasterConfig
from remaster.models.mutation import MutationSpec
from remaster.models.artifacts import RemasterResult

__all__ = [
    "RemasterConfig",
    "MutationSpec",
    "RemasterResult",
]
