"""Configuration models."""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from remaster.models.bootcfg import BootMenuConfig
from remaster.models.mutation import MutationSpec


EFI_PARTITION_TYPE = "28732ac11ff8d211ba4b00a0c93ec93b"
ISO_MBR_PARTITION_TYPE = "a2a0d0ebe5b9334487c068b6b72699c7"


class WorkConfig(BaseModel):
    """Input, output and working locations."""
    source_image: str = Field(..., description="Source hybrid ISO")
    output_image: str = Field(..., description="Final image path")
    work_dir: str = Field(default="./work")
    payload_dir: str = Field(default="./payload")
    keep_work_dir: bool = False
    log_level: str = Field(default="INFO")
    # Set by the loader to the directory the configuration was read from
    config_dir: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    def resolve(self, base_dir: Path) -> "WorkConfig":
        """Return a copy with relative paths anchored at ``base_dir``."""
        updates = {}
        for name in ("source_image", "output_image", "work_dir", "payload_dir"):
            path = Path(getattr(self, name))
            if not path.is_absolute():
                updates[name] = str((base_dir / path).resolve())
        updates["config_dir"] = str(base_dir.resolve())
        return self.model_copy(update=updates)


class LayerConfig(BaseModel):
    """Layered root filesystem handling."""
    directory: str = Field(default="casper")
    names: List[str] = Field(default_factory=list, description="Container stems, base layer first")
    strategy: Literal["collapse", "selective"] = "selective"
    collapsed_name: str = Field(default="filesystem")
    prune_unlisted: bool = True
    compression: str = Field(default="xz")
    block_size: str = Field(default="1M")

    @field_validator("names")
    @classmethod
    def validate_names(cls, v):
        """Layer names must be unique container stems."""
        stems = [name[:-len(".squashfs")] if name.endswith(".squashfs") else name for name in v]
        if len(set(stems)) != len(stems):
            raise ValueError(f"Duplicate layer names: {v}")
        return stems


class ImageConfig(BaseModel):
    """Hybrid image reconstruction parameters."""
    volume_id: str = Field(default="Ubuntu Custom", max_length=32)
    boot_hybrid: str = Field(default="/usr/lib/grub/i386-pc/boot_hybrid.img")
    bios_boot_image: str = Field(default="boot/grub/i386-pc/eltorito.img")
    bios_boot_load_size: int = Field(default=4, ge=1)
    catalog_path: str = Field(default="boot.catalog")
    catalog_placeholders: List[str] = Field(
        default_factory=lambda: ["boot.catalog", "isolinux/boot.cat"]
    )
    manifest_name: str = Field(default="md5sum.txt")
    efi_partition_type: str = Field(default=EFI_PARTITION_TYPE)
    iso_mbr_part_type: str = Field(default=ISO_MBR_PARTITION_TYPE)
    fallback_asset_size: int = Field(default=5 * 1024 * 1024, gt=0)

    @field_validator("fallback_asset_size")
    @classmethod
    def validate_sector_multiple(cls, v):
        """The fallback EFI image must be whole sectors."""
        if v % 512:
            raise ValueError("fallback_asset_size must be a multiple of 512")
        return v


class ValidationConfig(BaseModel):
    """Checklist policy."""
    required_subtrees: List[str] = Field(default_factory=lambda: ["usr/bin", "etc"])
    degraded_boot_asset_fatal: bool = False


class RemasterConfig(BaseModel):
    """Main configuration model."""
    model_config = ConfigDict(extra="ignore")

    work: WorkConfig
    layers: LayerConfig = Field(default_factory=LayerConfig)
    boot: BootMenuConfig = Field(default_factory=BootMenuConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    variables: Dict[str, Any] = Field(default_factory=dict)
    iso_mutations: MutationSpec = Field(default_factory=MutationSpec)
    rootfs_mutations: MutationSpec = Field(default_factory=MutationSpec)

    @field_validator("iso_mutations")
    @classmethod
    def validate_iso_mutations(cls, v):
        """The ISO tree is not a root filesystem and cannot be chrooted into."""
        if v.transforms:
            raise ValueError("privileged operations are only allowed in rootfs_mutations")
        return v

    @property
    def requires_privileges(self) -> bool:
        return bool(self.rootfs_mutations.transforms)
