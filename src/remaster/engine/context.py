"""Per-run build context threaded through every stage."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from remaster.models.artifacts import (
    BootAsset,
    CheckResult,
    FilesystemLayer,
    ImageTree,
    StageWarning,
)
from remaster.models.config import RemasterConfig


logger = logging.getLogger(__name__)


@dataclass
class BuildContext:
    """Everything one pipeline run knows about its inputs and intermediate state.

    The context owns the work directory for the lifetime of the run. Stages
    read configuration and paths from here and record their products here;
    nothing is read from the process working directory.
    """
    config: RemasterConfig
    work_dir: Path
    source_image: Path
    output_image: Path
    payload_dir: Path
    config_dir: Optional[Path] = None
    boot_asset: Optional[BootAsset] = None
    iso_tree: Optional[ImageTree] = None
    layers: List[FilesystemLayer] = field(default_factory=list)
    # Trees receiving the main rootfs mutations (merged, single, or top layer)
    rootfs_tree: Optional[ImageTree] = None
    collapsed_layer: Optional[FilesystemLayer] = None
    # Layer names the boot menu must no longer reference after a collapse
    retired_layer_names: List[str] = field(default_factory=list)
    warnings: List[StageWarning] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)
    temp_output: Optional[Path] = None

    @classmethod
    def from_config(cls, config: RemasterConfig) -> "BuildContext":
        work = config.work
        return cls(
            config=config,
            work_dir=Path(work.work_dir),
            source_image=Path(work.source_image),
            output_image=Path(work.output_image),
            payload_dir=Path(work.payload_dir),
            config_dir=Path(work.config_dir) if work.config_dir else None,
        )

    @property
    def iso_dir(self) -> Path:
        return self.work_dir / "iso"

    @property
    def layers_dir(self) -> Path:
        return self.work_dir / "layers"

    @property
    def rootfs_dir(self) -> Path:
        return self.work_dir / "rootfs"

    @property
    def boot_asset_path(self) -> Path:
        return self.work_dir / "efi.img"

    @property
    def container_dir(self) -> Path:
        return self.iso_dir / self.config.layers.directory

    @property
    def strategy(self) -> str:
        if len(self.layers) > 1:
            return self.config.layers.strategy
        return "single"

    @property
    def top_layer(self) -> Optional[FilesystemLayer]:
        return self.layers[-1] if self.layers else None

    def warn(self, stage: str, message: str) -> None:
        """Record a best-effort failure and keep going."""
        logger.warning(f"{stage}: {message}")
        self.warnings.append(StageWarning(stage=stage, message=message))
