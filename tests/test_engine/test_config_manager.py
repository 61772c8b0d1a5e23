"""Tests for configuration directory loading."""

from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError

from remaster.engine.config import ConfigManager
from remaster.models.mutation import InjectOp, RemoveOp


@pytest.fixture
def config_dir(tmp_path):
    """Create a temporary config directory structure."""
    (tmp_path / "conf.d").mkdir()
    (tmp_path / "mutations").mkdir()

    (tmp_path / "config.yaml").write_text("""
work:
  source_image: ./ubuntu-24.04-desktop-amd64.iso
  output_image: /srv/images/kiosk.iso
  log_level: info
layers:
  names: [minimal, minimal.standard, minimal.standard.live]
  strategy: selective
image:
  volume_id: Kiosk
variables:
  hostname: kiosk
""")
    return tmp_path


@pytest.mark.asyncio
class TestConfigManager:
    """Test ConfigManager async operations."""

    async def test_load(self, config_dir):
        """Test the main config is loaded and paths resolved."""
        manager = ConfigManager(config_dir)

        config = await manager.load()

        assert manager.config is config
        base = config_dir.resolve()
        assert config.work.source_image == str(base / "ubuntu-24.04-desktop-amd64.iso")
        assert config.work.output_image == "/srv/images/kiosk.iso"
        assert config.work.work_dir == str(base / "work")
        assert config.work.log_level == "INFO"
        assert config.layers.names == ["minimal", "minimal.standard", "minimal.standard.live"]
        assert config.image.volume_id == "Kiosk"

    async def test_fragments_merged_in_order(self, config_dir):
        """Test conf.d fragments deep-merge over the main config by name."""
        (config_dir / "conf.d" / "10-collapse.yaml").write_text("layers:\n  strategy: collapse\n")
        (config_dir / "conf.d" / "20-debug.yaml").write_text(
            "work:\n  log_level: DEBUG\nlayers:\n  compression: zstd\n"
        )

        config = await ConfigManager(config_dir).load()

        assert config.layers.strategy == "collapse"
        assert config.layers.compression == "zstd"
        assert config.layers.names == ["minimal", "minimal.standard", "minimal.standard.live"]
        assert config.work.log_level == "DEBUG"
        assert config.image.volume_id == "Kiosk"

    async def test_mutation_files(self, config_dir):
        """Test mutation documents populate the per-tree sets."""
        (config_dir / "mutations" / "rootfs.yaml").write_text("""
operations:
  - op: remove
    pattern: usr/share/doc
  - op: inject
    path: /etc/hostname
    content: "{{ hostname }}\\n"
    mode: "0644"
disabled_components:
  - name: gnome-initial-setup
    marker: etc/gnome-initial-setup/disabled
""")
        (config_dir / "mutations" / "iso.yaml").write_text("operations: []\n")

        config = await ConfigManager(config_dir).load()

        ops = config.rootfs_mutations.operations
        assert isinstance(ops[0], RemoveOp)
        assert isinstance(ops[1], InjectOp)
        assert ops[1].path == "etc/hostname"
        assert ops[1].content == "{{ hostname }}\n"
        assert config.rootfs_mutations.disabled_components[0].name == "gnome-initial-setup"
        assert config.iso_mutations.is_empty()

    async def test_missing_main_config(self, tmp_path):
        """Test a directory without config.yaml is rejected."""
        with pytest.raises(FileNotFoundError):
            await ConfigManager(tmp_path).load()

    async def test_invalid_config(self, config_dir):
        """Test model errors propagate."""
        (config_dir / "conf.d" / "bad.yaml").write_text("layers:\n  strategy: overlay\n")

        with pytest.raises(ValidationError):
            await ConfigManager(config_dir).load()

    async def test_empty_fragment(self, config_dir):
        """Test an empty fragment is ignored."""
        (config_dir / "conf.d" / "empty.yaml").write_text("")

        config = await ConfigManager(config_dir).load()

        assert config.layers.strategy == "selective"

    async def test_read_yaml_threading(self, config_dir):
        """Test that YAML reading is offloaded to a thread."""
        manager = ConfigManager(config_dir)

        with patch("asyncio.to_thread", new_callable=AsyncMock) as mock_to_thread:
            mock_to_thread.return_value = {"key": "value"}

            result = await manager._read_yaml(config_dir / "config.yaml")

            assert result == {"key": "value"}
            mock_to_thread.assert_called_once()
