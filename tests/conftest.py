"""Shared fixtures for pipeline tests."""

from pathlib import Path

import pytest

from remaster.engine.context import BuildContext
from remaster.models.artifacts import BootAsset, FilesystemLayer, ImageTree
from remaster.models.config import RemasterConfig


def make_config(tmp_path: Path, **overrides) -> RemasterConfig:
    """A RemasterConfig whose paths all live under ``tmp_path``."""
    data = {
        "work": {
            "source_image": str(tmp_path / "source.iso"),
            "output_image": str(tmp_path / "out" / "custom.iso"),
            "work_dir": str(tmp_path / "work"),
            "payload_dir": str(tmp_path / "payload"),
        },
    }
    data["work"].update(overrides.pop("work", {}))
    data.update(overrides)
    return RemasterConfig(**data)


def make_tree(root: Path, files: dict) -> ImageTree:
    """Create files from a ``relpath -> content`` mapping."""
    root.mkdir(parents=True, exist_ok=True)
    for relpath, content in files.items():
        path = root / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
    return ImageTree(root=root)


@pytest.fixture
def config(tmp_path):
    """Default configuration rooted in the test directory."""
    return make_config(tmp_path)


@pytest.fixture
def ctx(config):
    """Build context with an extracted ISO tree and one unpacked layer."""
    context = BuildContext.from_config(config)
    context.iso_tree = make_tree(context.iso_dir, {
        "boot/grub/i386-pc/eltorito.img": b"\0" * 2048,
        "boot/grub/grub.cfg": "set timeout=30\n",
        "casper/filesystem.squashfs": b"squashfs",
        "boot.catalog": b"catalog",
    })
    rootfs = make_tree(context.rootfs_dir, {
        "usr/bin/env": "#!/bin/sh\n",
        "etc/hostname": "ubuntu\n",
    })
    layer = FilesystemLayer(
        name="filesystem",
        rank=0,
        container=context.container_dir / "filesystem.squashfs",
        tree=rootfs,
    )
    context.layers = [layer]
    context.rootfs_tree = rootfs
    context.boot_asset = BootAsset(path=context.boot_asset_path, size=4096)
    return context


@pytest.fixture
def config_factory(tmp_path):
    """Build configurations rooted in the test directory with overrides."""
    def _factory(**overrides):
        return make_config(tmp_path, **overrides)
    return _factory


@pytest.fixture
def tree_factory():
    """Create working trees from ``relpath -> content`` mappings."""
    return make_tree
