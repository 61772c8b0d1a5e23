"""Tests for CLI command implementations."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from remaster.cli.commands import build_image, inspect_image, validate_config
from remaster.models.artifacts import RemasterResult, StageWarning


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "config.yaml").write_text(
        "work:\n"
        "  source_image: in.iso\n"
        "  output_image: out/custom.iso\n"
        "layers:\n"
        "  strategy: collapse\n"
    )
    return tmp_path


class TestBuildImage:
    """Tests for the build command."""

    @patch("remaster.cli.commands.setup_logging")
    @patch("remaster.cli.commands.RemasterPipeline")
    def test_overrides_applied(self, mock_pipeline, mock_logging, config_dir):
        """Verify CLI overrides reach the pipeline configuration."""
        result = RemasterResult(
            output=config_dir / "out/custom.iso",
            degraded_boot_asset=True,
            warnings=[StageWarning("boot_asset", "fallback used")],
            repacked_layers=["filesystem"],
        )
        mock_pipeline.return_value.run = AsyncMock(return_value=result)

        returned = build_image(config_dir, keep_work=True, log_level="debug")

        assert returned is result
        config = mock_pipeline.call_args[0][0]
        assert config.work.keep_work_dir is True
        assert config.work.log_level == "DEBUG"
        assert config.layers.strategy == "collapse"
        log_file = mock_logging.call_args.kwargs["log_file"]
        assert log_file == Path(config.work.work_dir) / "remaster.log"


class TestValidateConfig:
    """Tests for the config validate command."""

    def test_valid(self, config_dir):
        """Verify a valid directory loads."""
        config = validate_config(config_dir)
        assert config.work.output_image == str(config_dir.resolve() / "out/custom.iso")


class TestInspectImage:
    """Tests for the inspect command."""

    @patch("remaster.cli.commands.console")
    @patch("remaster.cli.commands.require_tools")
    def test_reports_partition(self, mock_require, mock_console, tmp_path):
        """Verify the partition interval is printed."""
        image = tmp_path / "ubuntu.iso"
        image.write_bytes(b"iso")
        responses = [
            MagicMock(stdout="-append_partition 2 0xef --interval:local_fs:100d-107d::'x'\n", stderr=""),
            MagicMock(stdout="'/casper/minimal.squashfs'\n", stderr=""),
        ]
        with patch("remaster.cli.commands.run_command", new_callable=AsyncMock, side_effect=responses):
            inspect_image(image)

        printed = [c.args[0] for c in mock_console.print.call_args_list if isinstance(c.args[0], str)]
        assert "EFI partition: sectors 100-107 (8 sectors)" in printed

    @patch("remaster.cli.commands.require_tools")
    def test_missing_image(self, mock_require, tmp_path):
        """Verify a missing image is reported."""
        with pytest.raises(FileNotFoundError):
            inspect_image(tmp_path / "missing.iso")
