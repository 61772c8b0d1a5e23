"""Tests for ISO tree extraction."""

import os
import stat
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from remaster.engine.context import BuildContext
from remaster.errors import ExtractionFailure
from remaster.stages.tree import ImageTreeExtractor


@pytest.fixture
def context(config):
    ctx = BuildContext.from_config(config)
    ctx.source_image.write_bytes(b"iso")
    return ctx


def fake_extract(files):
    """run_command stand-in that writes read-only files into the target."""
    async def _run(cmd, **kwargs):
        target = Path(cmd[-1])
        for relpath in files:
            path = target / relpath
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("x")
            os.chmod(path, 0o444)
        return MagicMock(returncode=0, stdout="", stderr="")
    return _run


@pytest.mark.asyncio
class TestImageTreeExtractor:
    """Test the tree extraction stage."""

    async def test_extract(self, context):
        """Test the tree is extracted and made writable."""
        with patch("remaster.stages.tree.run_command", side_effect=fake_extract(["casper/filesystem.squashfs", "md5sum.txt"])) as mock_run:
            await ImageTreeExtractor().run(context)

        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ["xorriso", "-osirrox", "on"]
        assert cmd[-2:] == ["/", str(context.iso_dir)]

        assert context.iso_tree.root == context.iso_dir
        md5sum = context.iso_tree.path("md5sum.txt")
        assert md5sum.stat().st_mode & stat.S_IWUSR

    async def test_replaces_stale_tree(self, context):
        """Test leftovers from an earlier run are removed."""
        context.iso_dir.mkdir(parents=True)
        (context.iso_dir / "stale").write_text("old")

        with patch("remaster.stages.tree.run_command", side_effect=fake_extract(["md5sum.txt"])):
            await ImageTreeExtractor().run(context)

        assert not (context.iso_dir / "stale").exists()

    async def test_empty_tree(self, context):
        """Test an image that extracts to nothing is rejected."""
        with patch("remaster.stages.tree.run_command", side_effect=fake_extract([])):
            with pytest.raises(ExtractionFailure) as exc_info:
                await ImageTreeExtractor().run(context)
        assert "empty" in str(exc_info.value)

    async def test_xorriso_failure(self, context):
        """Test a failing xorriso becomes an ExtractionFailure."""
        error = subprocess.CalledProcessError(32, ["xorriso"])
        error.stderr = "not a recognizable ISO"
        with patch("remaster.stages.tree.run_command", new_callable=AsyncMock, side_effect=error):
            with pytest.raises(ExtractionFailure) as exc_info:
                await ImageTreeExtractor().run(context)
        assert "not a recognizable ISO" in str(exc_info.value)
