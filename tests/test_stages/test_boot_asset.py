"""Tests for EFI boot partition extraction."""

import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from remaster.engine.context import BuildContext
from remaster.errors import ExtractionFailure
from remaster.stages.boot_asset import (
    BootAssetExtractor,
    copy_sectors,
    parse_appended_partition_interval,
)


REPORT = """\
-V 'Ubuntu 24.04 LTS amd64'
--modification-date='2024042423535300'
--grub2-mbr --interval:local_fs:0s-15s:zero_mbrpt,zero_gpt:'/isos/ubuntu.iso'
--protective-msdos-label
-partition_cyl_align off
-partition_offset 16
--mbr-force-bootable
-append_partition 2 28732ac11ff8d211ba4b00a0c93ec93b --interval:local_fs:12105120d-12115263d::'/isos/ubuntu.iso'
-appended_part_as_gpt
-iso_mbr_part_type a2a0d0ebe5b9334487c068b6b72699c7
-c '/boot.catalog'
"""


class TestParseInterval:
    """Test parsing of the El Torito report."""

    def test_same_line(self):
        """Test the interval on the append_partition line."""
        assert parse_appended_partition_interval(REPORT) == (12105120, 12115263)

    def test_next_line(self):
        """Test the interval on the line after the marker."""
        report = "-append_partition 2 0xef \\\n  --interval:local_fs:100d-107d::'x.iso'\n"
        assert parse_appended_partition_interval(report) == (100, 107)

    def test_missing(self):
        """Test reports without partition 2 give None."""
        assert parse_appended_partition_interval("-c '/boot.catalog'\n") is None
        assert parse_appended_partition_interval("-append_partition 2 0xef efi.img\n-c x\n") is None

    def test_inverted(self):
        """Test a malformed inverted interval is ignored."""
        assert parse_appended_partition_interval("-append_partition 2 0xef 200d-100d\n") is None


class TestCopySectors:
    """Test raw sector copies."""

    def test_exact_bytes(self, tmp_path):
        """Test exactly count sectors from start are copied."""
        source = tmp_path / "image"
        source.write_bytes(b"".join(bytes([n]) * 512 for n in range(10)))

        written = copy_sectors(source, tmp_path / "efi.img", start=3, count=4)

        assert written == 4 * 512
        data = (tmp_path / "efi.img").read_bytes()
        assert data == b"".join(bytes([n]) * 512 for n in range(3, 7))

    def test_short_source(self, tmp_path):
        """Test a truncated image is an extraction failure."""
        source = tmp_path / "image"
        source.write_bytes(b"\0" * 1024)

        with pytest.raises(ExtractionFailure):
            copy_sectors(source, tmp_path / "efi.img", start=1, count=4)


@pytest.fixture
def context(config):
    """Build context with a small fake source image."""
    ctx = BuildContext.from_config(config)
    ctx.source_image.write_bytes(b"".join(bytes([n % 256]) * 512 for n in range(64)))
    return ctx


@pytest.mark.asyncio
class TestBootAssetExtractor:
    """Test the boot asset stage."""

    async def test_extracts_interval(self, context):
        """Test the partition is copied when the report has an interval."""
        report = "-append_partition 2 28732ac11ff8d211ba4b00a0c93ec93b --interval:local_fs:8d-15d::'src.iso'\n"
        with patch("remaster.stages.boot_asset.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = MagicMock(stdout="", stderr=report, returncode=0)

            await BootAssetExtractor().run(context)

        asset = context.boot_asset
        assert not asset.degraded
        assert asset.interval == (8, 15)
        assert asset.size == 8 * 512
        assert asset.sectors == 8
        assert asset.path.read_bytes()[:512] == bytes([8]) * 512
        assert context.warnings == []

    async def test_fallback_when_missing(self, context):
        """Test a zero-filled fallback is used and the run is marked degraded."""
        with patch("remaster.stages.boot_asset.run_command", new_callable=AsyncMock) as mock_run:
            mock_run.return_value = MagicMock(stdout="-c '/boot.catalog'\n", stderr="", returncode=0)

            await BootAssetExtractor().run(context)

        asset = context.boot_asset
        assert asset.degraded
        assert asset.size == 5 * 1024 * 1024
        assert asset.path.stat().st_size == 5 * 1024 * 1024
        assert len(context.warnings) == 1
        assert context.warnings[0].stage == "boot_asset"

    async def test_fallback_when_xorriso_fails(self, context):
        """Test an unreadable boot catalog degrades instead of failing."""
        error = subprocess.CalledProcessError(5, ["xorriso"])
        error.stderr = "libburn: no such file"
        with patch("remaster.stages.boot_asset.run_command", new_callable=AsyncMock, side_effect=error):
            await BootAssetExtractor().run(context)

        assert context.boot_asset.degraded

    async def test_missing_source(self, config):
        """Test a missing source image is fatal."""
        ctx = BuildContext.from_config(config)
        with pytest.raises(ExtractionFailure):
            await BootAssetExtractor().run(ctx)
