"""Discovery and preparation of the squashfs root filesystem layers."""

import asyncio
import logging
import os
import shutil
import stat
import subprocess
from pathlib import Path
from typing import Dict, List, TYPE_CHECKING

from remaster.errors import ExtractionFailure, LayerDiscoveryFailure
from remaster.models.artifacts import FilesystemLayer, ImageTree
from remaster.stages.base import BaseStage
from remaster.utils.fs import matches_pattern, remove_path
from remaster.utils.process import run_command

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)

CONTAINER_SUFFIX = ".squashfs"
LISTING_ROOT = "squashfs-root"
AUFS_WHITEOUT = ".wh."
AUFS_OPAQUE = ".wh..wh..opq"
OVERLAY_OPAQUE_XATTR = "trusted.overlay.opaque"


def discover_containers(directory: Path) -> Dict[str, Path]:
    """Map container stem to path for every squashfs in ``directory``."""
    if not directory.is_dir():
        return {}
    return {
        path.name[:-len(CONTAINER_SUFFIX)]: path
        for path in sorted(directory.glob(f"*{CONTAINER_SUFFIX}"))
        if path.is_file()
    }


def resolve_layer_order(configured: List[str], found: Dict[str, Path]) -> List[str]:
    """Check the configured layer order against what the image contains."""
    if not found:
        raise LayerDiscoveryFailure("no squashfs container found in the image")

    if not configured:
        if len(found) == 1:
            return list(found)
        raise LayerDiscoveryFailure(
            f"found {len(found)} containers ({', '.join(found)}) but no layer order is "
            f"configured; set layers.names"
        )

    missing = [name for name in configured if name not in found]
    if missing:
        raise LayerDiscoveryFailure(
            f"configured layers not present in the image: {', '.join(missing)} "
            f"(found: {', '.join(found)})"
        )
    return list(configured)


def parse_listing(output: str) -> List[str]:
    """Relative paths from ``unsquashfs -l`` output."""
    paths = []
    prefix = LISTING_ROOT + "/"
    for line in output.splitlines():
        line = line.rstrip("\n")
        if line.startswith(prefix):
            paths.append(line[len(prefix):])
    return paths


def _is_whiteout(st: os.stat_result) -> bool:
    return stat.S_ISCHR(st.st_mode) and st.st_rdev == 0


def _is_opaque(path: Path) -> bool:
    if (path / AUFS_OPAQUE).exists():
        return True
    try:
        return os.getxattr(path, OVERLAY_OPAQUE_XATTR, follow_symlinks=False) == b"y"
    except (OSError, AttributeError):
        return False


def _copy_dir_metadata(src_st: os.stat_result, dst: Path) -> None:
    os.chmod(dst, stat.S_IMODE(src_st.st_mode))
    if os.geteuid() == 0:
        os.lchown(dst, src_st.st_uid, src_st.st_gid)


def overlay_tree(lower: Path, upper: Path) -> None:
    """Apply ``upper`` on top of ``lower`` the way overlayfs would present them.

    Entries of ``upper`` win over ``lower``. Whiteouts (0/0 character devices
    or ``.wh.`` files) delete the lower entry, opaque directories hide the
    lower directory's content. Entries are moved out of ``upper``, which is
    left consumed.
    """
    for dirpath, dirnames, filenames in os.walk(upper):
        rel_dir = os.path.relpath(dirpath, upper)
        lower_dir = lower if rel_dir == "." else lower / rel_dir

        # Symlinks to directories are moved like files
        for name in list(dirnames):
            if os.path.islink(os.path.join(dirpath, name)):
                dirnames.remove(name)
                filenames.append(name)

        for name in dirnames:
            up = Path(dirpath) / name
            low = lower_dir / name
            opaque = _is_opaque(up)
            if low.is_symlink() or (low.exists() and (opaque or not low.is_dir())):
                remove_path(low)
            if not low.exists():
                low.mkdir()
            _copy_dir_metadata(os.lstat(up), low)

        for name in filenames:
            up = Path(dirpath) / name
            if name == AUFS_OPAQUE:
                continue
            if name.startswith(AUFS_WHITEOUT):
                hidden = lower_dir / name[len(AUFS_WHITEOUT):]
                if hidden.exists() or hidden.is_symlink():
                    remove_path(hidden)
                continue
            low = lower_dir / name
            if low.exists() or low.is_symlink():
                remove_path(low)
            if _is_whiteout(os.lstat(up)):
                continue
            os.rename(up, low)


class LayerMerger(BaseStage):
    """Turns the image's squashfs containers into trees ready for mutation."""

    name = "layers"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        return ["unsquashfs"]

    async def run(self, ctx: "BuildContext") -> None:
        """Discover layers and unpack them according to the configured strategy."""
        config = ctx.config.layers
        found = await asyncio.to_thread(discover_containers, ctx.container_dir)
        names = resolve_layer_order(config.names, found)

        if config.prune_unlisted:
            for name, path in found.items():
                if name not in names:
                    await self._delete_container(FilesystemLayer(name=name, rank=-1, container=path))

        ctx.layers = [
            FilesystemLayer(name=name, rank=rank, container=found[name])
            for rank, name in enumerate(names)
        ]
        logger.info(f"Layers (base first): {', '.join(names)}; strategy: {ctx.strategy}")

        if ctx.strategy == "single":
            layer = ctx.layers[0]
            layer.tree = await self.unpack(layer.container, ctx.rootfs_dir)
            ctx.rootfs_tree = layer.tree
        elif ctx.strategy == "collapse":
            await self._collapse(ctx)
        else:
            await self._select(ctx)

    async def unpack(self, container: Path, target: Path) -> ImageTree:
        """Fully decompress a container into ``target``."""
        if await asyncio.to_thread(target.exists):
            await asyncio.to_thread(shutil.rmtree, target)
        await asyncio.to_thread(lambda: target.parent.mkdir(parents=True, exist_ok=True))

        logger.info(f"Unpacking {container.name}")
        try:
            await run_command(["unsquashfs", "-d", str(target), str(container)], timeout=3600)
        except subprocess.CalledProcessError as e:
            raise ExtractionFailure(
                f"unsquashfs failed for {container.name}: {e.stderr.strip() if e.stderr else e}"
            ) from e
        return ImageTree(root=target)

    async def list_container(self, container: Path) -> List[str]:
        """List a container's paths without decompressing file data."""
        try:
            result = await run_command(["unsquashfs", "-l", str(container)], timeout=600)
        except subprocess.CalledProcessError as e:
            raise ExtractionFailure(
                f"cannot list {container.name}: {e.stderr.strip() if e.stderr else e}"
            ) from e
        return parse_listing(result.stdout)

    async def _collapse(self, ctx: "BuildContext") -> None:
        base, *upper_layers = ctx.layers
        merged = await self.unpack(base.container, ctx.rootfs_dir)

        for layer in upper_layers:
            staging = await self.unpack(layer.container, ctx.layers_dir / layer.name)
            logger.info(f"Overlaying {layer.name} onto {base.name}")
            await asyncio.to_thread(overlay_tree, merged.root, staging.root)
            await asyncio.to_thread(shutil.rmtree, staging.root)

        for layer in ctx.layers:
            await self._delete_container(layer)

        name = ctx.config.layers.collapsed_name
        collapsed = FilesystemLayer(
            name=name,
            rank=0,
            container=ctx.container_dir / f"{name}.squashfs",
            tree=merged,
            dirty=True,
        )
        ctx.retired_layer_names = [layer.container.name for layer in ctx.layers]
        ctx.layers = [collapsed]
        ctx.collapsed_layer = collapsed
        ctx.rootfs_tree = merged

    async def _select(self, ctx: "BuildContext") -> None:
        patterns = ctx.config.rootfs_mutations.removal_patterns()
        *lower_layers, top = ctx.layers

        listings = await asyncio.gather(
            *(self.list_container(layer.container) for layer in lower_layers)
        )
        for layer, listing in zip(lower_layers, listings):
            layer.listing = listing
            hits = [
                path for path in listing
                if any(matches_pattern(path, pattern) for pattern in patterns)
            ]
            if hits:
                logger.info(f"{layer.name}: {len(hits)} paths match removal patterns, unpacking")
                layer.tree = await self.unpack(layer.container, ctx.layers_dir / layer.name)
            else:
                logger.info(f"{layer.name}: no removal matches, leaving container untouched")

        top.tree = await self.unpack(top.container, ctx.layers_dir / top.name)
        ctx.rootfs_tree = top.tree

    async def _delete_container(self, layer: FilesystemLayer) -> None:
        for path in [layer.container, *layer.sidecars]:
            if await asyncio.to_thread(path.exists):
                await asyncio.to_thread(path.unlink)
                logger.debug(f"Removed {path.name}")
