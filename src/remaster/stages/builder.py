"""Repacking of modified layers and reconstruction of the hybrid image."""

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from remaster.errors import BuildFailure
from remaster.models.artifacts import ChecksumManifest, FilesystemLayer, ImageTree
from remaster.stages.base import BaseStage
from remaster.utils.fs import disk_usage, md5_file, regular_files
from remaster.utils.process import run_command

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)

DPKG_STATUS = "var/lib/dpkg/status"
INSTALLED = "install ok installed"


def parse_dpkg_status(text: str) -> Dict[str, str]:
    """Installed package to version, from a dpkg status database."""
    packages = {}
    for stanza in text.split("\n\n"):
        fields = {}
        for line in stanza.splitlines():
            if not line or line[0].isspace() or ":" not in line:
                continue
            key, _, value = line.partition(":")
            fields[key] = value.strip()
        if fields.get("Status") != INSTALLED or "Package" not in fields:
            continue
        name = fields["Package"]
        if fields.get("Multi-Arch") == "same" and "Architecture" in fields:
            name = f"{name}:{fields['Architecture']}"
        packages[name] = fields.get("Version", "")
    return packages


def render_package_manifest(packages: Dict[str, str]) -> str:
    return "".join(f"{name}\t{version}\n" for name, version in sorted(packages.items()))


def build_checksum_manifest(tree: ImageTree, excluded: List[str]) -> ChecksumManifest:
    """md5 of every regular file in ``tree`` except ``excluded`` paths."""
    skip = {path.strip("/") for path in excluded}
    return ChecksumManifest(entries={
        relpath: md5_file(tree.path(relpath))
        for relpath in regular_files(tree.root)
        if relpath not in skip
    })


def temp_output_path(output: Path) -> Path:
    """Partial output path next to the final one, so publishing is a rename."""
    return output.with_name(f".{output.name}.partial")


class ImageBuilder(BaseStage):
    """Writes sidecars, repacks dirty layers and runs the xorriso rebuild."""

    name = "builder"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        return ["mksquashfs", "xorriso"]

    async def run(self, ctx: "BuildContext") -> None:
        """Produce the image at ``ctx.temp_output``."""
        image = ctx.config.image
        boot_hybrid = Path(image.boot_hybrid)
        if not await asyncio.to_thread(boot_hybrid.is_file):
            raise BuildFailure(f"hybrid MBR template not found: {boot_hybrid}")
        if ctx.boot_asset is None:
            raise BuildFailure("no boot asset available")

        for layer in ctx.layers:
            if layer.dirty:
                await self.repack(ctx, layer)
            else:
                logger.info(f"{layer.name} unchanged, keeping original container")

        await self.write_checksums(ctx)

        ctx.temp_output = temp_output_path(ctx.output_image)
        await asyncio.to_thread(lambda: ctx.temp_output.parent.mkdir(parents=True, exist_ok=True))
        await self.build_image(ctx, ctx.temp_output)

    async def repack(self, ctx: "BuildContext", layer: FilesystemLayer) -> None:
        """Rewrite a layer's sidecars and container from its tree."""
        if layer.tree is None:
            raise BuildFailure(f"layer {layer.name} is marked modified but has no tree")

        size = await asyncio.to_thread(disk_usage, layer.tree.root)
        await asyncio.to_thread(layer.size_path.write_text, str(size))
        logger.info(f"{layer.name}: {size} bytes uncompressed")

        await self.write_package_manifest(layer)

        config = ctx.config.layers
        staging = layer.container.with_name(f"{layer.container.name}.tmp")
        logger.info(f"Repacking {layer.container.name} ({config.compression}, block size {config.block_size})")
        try:
            await run_command(
                [
                    "mksquashfs", str(layer.tree.root), str(staging),
                    "-noappend", "-comp", config.compression, "-b", config.block_size,
                ],
                timeout=7200,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            if await asyncio.to_thread(staging.exists):
                await asyncio.to_thread(staging.unlink)
            stderr = getattr(e, "stderr", None)
            raise BuildFailure(
                f"mksquashfs failed for {layer.name}: {stderr.strip() if stderr else e}"
            ) from e
        await asyncio.to_thread(os.replace, staging, layer.container)

        signature = layer.signature_path
        if await asyncio.to_thread(signature.exists):
            await asyncio.to_thread(signature.unlink)
            logger.info(f"Removed {signature.name}, it no longer matches the container")

    async def write_package_manifest(self, layer: FilesystemLayer) -> Optional[int]:
        """Regenerate ``<name>.manifest`` when the tree carries a dpkg database."""
        status = layer.tree.path(DPKG_STATUS)
        if not await asyncio.to_thread(status.is_file):
            logger.debug(f"{layer.name}: no dpkg status, leaving package manifest alone")
            return None
        text = await asyncio.to_thread(status.read_text, errors="replace")
        packages = parse_dpkg_status(text)
        await asyncio.to_thread(layer.manifest_path.write_text, render_package_manifest(packages))
        logger.info(f"{layer.name}: package manifest lists {len(packages)} packages")
        return len(packages)

    async def write_checksums(self, ctx: "BuildContext") -> ChecksumManifest:
        image = ctx.config.image
        excluded = [image.manifest_name, *image.catalog_placeholders]
        manifest = await asyncio.to_thread(build_checksum_manifest, ctx.iso_tree, excluded)
        await asyncio.to_thread(ctx.iso_tree.path(image.manifest_name).write_text, manifest.render())
        logger.info(f"Wrote {image.manifest_name} with {len(manifest.entries)} entries")
        return manifest

    def xorriso_command(self, ctx: "BuildContext", output: Path) -> List[str]:
        image = ctx.config.image
        return [
            "xorriso", "-as", "mkisofs",
            "-r", "-V", image.volume_id,
            "-o", str(output),
            "-J", "-joliet-long",
            "-l",
            "-iso-level", "3",
            "-partition_cyl_align", "off",
            "-partition_offset", "16",
            "--grub2-mbr", image.boot_hybrid,
            "--protective-msdos-label",
            "--mbr-force-bootable",
            "-append_partition", "2", image.efi_partition_type, str(ctx.boot_asset.path),
            "-appended_part_as_gpt",
            "-iso_mbr_part_type", image.iso_mbr_part_type,
            "-c", "/" + image.catalog_path.strip("/"),
            "-b", image.bios_boot_image,
            "-no-emul-boot",
            "-boot-load-size", str(image.bios_boot_load_size),
            "-boot-info-table",
            "--grub2-boot-info",
            "-eltorito-alt-boot",
            "-e", "--interval:appended_partition_2:all::",
            "-no-emul-boot",
            "-boot-load-size", str(ctx.boot_asset.sectors),
            str(ctx.iso_tree.root),
        ]

    async def build_image(self, ctx: "BuildContext", output: Path) -> None:
        logger.info(f"Building hybrid image {output}")
        try:
            await run_command(self.xorriso_command(ctx, output), timeout=7200)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            stderr = getattr(e, "stderr", None)
            raise BuildFailure(f"xorriso failed: {stderr.strip() if stderr else e}") from e
