"""Mutation specification models."""

from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _parse_mode(value):
    if isinstance(value, str):
        return int(value, 8)
    return value


def _parse_owner(value):
    """Accept ``"uid:gid"``, ``[uid, gid]`` or a single uid used for both."""
    if value is None:
        return None
    if isinstance(value, str):
        uid, _, gid = value.partition(":")
        return int(uid), int(gid or uid)
    if isinstance(value, int):
        return value, value
    return tuple(value)


def _relative(path: str) -> str:
    path = path.strip()
    if not path.strip("/"):
        raise ValueError("path must name an entry below the tree root")
    if ".." in path.split("/"):
        raise ValueError(f"path escapes the tree root: {path}")
    return path.strip("/")


RelPath = Annotated[str, AfterValidator(_relative)]
Mode = Annotated[int, BeforeValidator(_parse_mode)]
Owner = Annotated[Optional[Tuple[int, int]], BeforeValidator(_parse_owner)]


class _WriteOp(BaseModel):
    """Fields shared by operations that write file content."""
    model_config = ConfigDict(extra="forbid")

    path: RelPath = Field(..., description="Destination relative to the tree root")
    source: Optional[str] = Field(None, description="Payload file, relative to the payload directory")
    content: Optional[str] = Field(None, description="Inline content, rendered as a template")
    owner: Owner = None

    @model_validator(mode="after")
    def check_payload(self):
        """Exactly one of source and content must be given."""
        if (self.source is None) == (self.content is None):
            raise ValueError("exactly one of 'source' or 'content' is required")
        return self


class InjectOp(_WriteOp):
    """Create or overwrite a file."""
    op: Literal["inject"]
    mode: Mode = 0o644


class ReplaceOp(_WriteOp):
    """Overwrite an existing file, keeping its mode unless one is given."""
    op: Literal["replace"]
    mode: Optional[Mode] = None


class RemoveOp(BaseModel):
    """Remove every entry matching a pattern."""
    model_config = ConfigDict(extra="forbid")

    op: Literal["remove"]
    pattern: str


class LinkOp(BaseModel):
    """Create a symbolic link, replacing whatever is at the path."""
    model_config = ConfigDict(extra="forbid")

    op: Literal["link"]
    path: RelPath
    target: str
    owner: Owner = None


class PrivilegedOp(BaseModel):
    """Command run as root inside the tree. Best effort only."""
    model_config = ConfigDict(extra="forbid")

    op: Literal["privileged"]
    command: str
    description: str = ""
    timeout: int = Field(default=1800, ge=1)


MutationOp = Annotated[
    Union[InjectOp, ReplaceOp, RemoveOp, LinkOp, PrivilegedOp],
    Field(discriminator="op"),
]


class DisabledComponent(BaseModel):
    """A first-run component masked by the mutation set."""
    model_config = ConfigDict(extra="forbid")

    name: str
    marker: RelPath = Field(..., description="Override file or link that must exist")
    absent: List[str] = Field(default_factory=list, description="Paths that must not exist")


class MutationSpec(BaseModel):
    """Ordered mutation set applied to one tree."""
    model_config = ConfigDict(extra="forbid")

    operations: List[MutationOp] = Field(default_factory=list)
    disabled_components: List[DisabledComponent] = Field(default_factory=list)
    required_paths: List[str] = Field(default_factory=list)

    @property
    def removals(self) -> List[RemoveOp]:
        return [op for op in self.operations if isinstance(op, RemoveOp)]

    @property
    def writes(self) -> List[Union[InjectOp, ReplaceOp, LinkOp]]:
        return [
            op for op in self.operations
            if isinstance(op, (InjectOp, ReplaceOp, LinkOp))
        ]

    @property
    def transforms(self) -> List[PrivilegedOp]:
        return [op for op in self.operations if isinstance(op, PrivilegedOp)]

    def removal_patterns(self) -> List[str]:
        return [op.pattern for op in self.removals]

    def removals_only(self) -> "MutationSpec":
        """The subset applied to lower layers in the selective strategy."""
        return MutationSpec(operations=list(self.removals))

    def expected_paths(self) -> List[str]:
        """Destinations that must exist once the spec has been applied."""
        paths = [op.path for op in self.writes]
        paths.extend(p.strip("/") for p in self.required_paths)
        return paths

    def is_empty(self) -> bool:
        return not self.operations
