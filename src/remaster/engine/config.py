"""Configuration loading for a remaster run."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML

from remaster.models.config import RemasterConfig
from remaster.utils.templates import merge_dicts


logger = logging.getLogger(__name__)

MUTATION_FILES = {
    "iso_mutations": "iso.yaml",
    "rootfs_mutations": "rootfs.yaml",
}


class ConfigManager:
    """Loads a configuration directory into a RemasterConfig."""

    def __init__(self, config_dir: Path):
        """Initialize configuration manager."""
        self.config_dir = Path(config_dir).resolve()
        self.yaml = YAML()
        self.config: Optional[RemasterConfig] = None

    async def load(self) -> RemasterConfig:
        """Load and validate all configuration files."""
        logger.info(f"Loading configuration from {self.config_dir}")

        config_file = self.config_dir / "config.yaml"
        if not config_file.exists():
            raise FileNotFoundError(f"Main config not found: {config_file}")

        data = await self._read_yaml(config_file)
        data = await self._merge_fragments(data)
        data = await self._load_mutations(data)

        try:
            config = RemasterConfig(**data)
        except ValidationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise

        self.config = config.model_copy(update={"work": config.work.resolve(self.config_dir)})
        logger.info("Configuration loaded successfully")
        return self.config

    async def _merge_fragments(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge ``conf.d/*.yaml`` over the main config, in name order."""
        fragments_dir = self.config_dir / "conf.d"
        if not fragments_dir.is_dir():
            return data
        for yaml_file in sorted(fragments_dir.glob("*.yaml")):
            fragment = await self._read_yaml(yaml_file)
            data = merge_dicts(data, fragment)
            logger.debug(f"Merged {yaml_file}")
        return data

    async def _load_mutations(self, data: Dict[str, Any]) -> Dict[str, Any]:
        mutations_dir = self.config_dir / "mutations"
        for key, filename in MUTATION_FILES.items():
            yaml_file = mutations_dir / filename
            if not yaml_file.exists():
                continue
            if key in data:
                logger.warning(f"{yaml_file} overrides {key} from config.yaml")
            data[key] = await self._read_yaml(yaml_file)
            logger.debug(f"Loaded {key} from {yaml_file}")
        return data

    async def _read_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Read and parse a YAML file. Empty files read as an empty mapping."""
        def _read():
            return self.yaml.load(file_path.read_text()) or {}

        return await asyncio.to_thread(_read)
