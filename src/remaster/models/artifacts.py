"""Runtime artifacts produced and consumed by pipeline stages."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


SECTOR_SIZE = 512


@dataclass
class ImageTree:
    """A working filesystem tree on disk."""
    root: Path

    def path(self, relpath: str) -> Path:
        return self.root / relpath.strip("/")

    def exists(self, relpath: str) -> bool:
        target = self.path(relpath)
        return target.exists() or target.is_symlink()


@dataclass
class BootAsset:
    """Raw bytes of the appended EFI partition, stored in the work directory."""
    path: Path
    size: int
    degraded: bool = False
    interval: Optional[Tuple[int, int]] = None
    sector_size: int = SECTOR_SIZE

    @property
    def sectors(self) -> int:
        return self.size // self.sector_size


@dataclass
class FilesystemLayer:
    """One squashfs container and its sidecars."""
    name: str
    rank: int
    container: Path
    tree: Optional[ImageTree] = None
    listing: Optional[List[str]] = None
    dirty: bool = False

    @property
    def size_path(self) -> Path:
        return self.container.with_name(f"{self.name}.size")

    @property
    def manifest_path(self) -> Path:
        return self.container.with_name(f"{self.name}.manifest")

    @property
    def signature_path(self) -> Path:
        return self.container.with_name(f"{self.container.name}.gpg")

    @property
    def sidecars(self) -> List[Path]:
        return [self.size_path, self.manifest_path, self.signature_path]


@dataclass
class ChecksumManifest:
    """``md5sum.txt`` content: ``./relpath`` to md5 hex digest."""
    entries: Dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        return "".join(f"{digest}  ./{path}\n" for path, digest in sorted(self.entries.items()))

    @classmethod
    def parse(cls, text: str) -> "ChecksumManifest":
        entries = {}
        for line in text.splitlines():
            if not line.strip():
                continue
            digest, _, path = line.partition("  ")
            entries[path[2:] if path.startswith("./") else path] = digest
        return cls(entries=entries)


@dataclass
class CheckResult:
    """Outcome of one named validation assertion."""
    name: str
    passed: bool
    detail: str = ""


@dataclass
class StageWarning:
    """A recorded best-effort failure."""
    stage: str
    message: str


@dataclass
class RemasterResult:
    """What a successful pipeline run hands back to its caller."""
    output: Path
    degraded_boot_asset: bool
    warnings: List[StageWarning] = field(default_factory=list)
    repacked_layers: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)

    @staticmethod
    def failed(checks: Iterable[CheckResult]) -> List[CheckResult]:
        return [check for check in checks if not check.passed]
