"""Boot menu patch models."""

from typing import Annotated, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class SetFieldPatch(BaseModel):
    """Set a numeric menu field such as ``timeout``."""
    model_config = ConfigDict(extra="forbid")

    op: Literal["set-field"]
    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    value: int


class RemoveTokenPatch(BaseModel):
    """Remove a kernel parameter, with its value if it has one."""
    model_config = ConfigDict(extra="forbid")

    op: Literal["remove-token"]
    token: str = Field(..., min_length=1)


class ReplaceTokenPatch(BaseModel):
    """Substitute one kernel parameter token for another."""
    model_config = ConfigDict(extra="forbid")

    op: Literal["replace-token"]
    old: str = Field(..., min_length=1)
    new: str = Field(..., min_length=1)


BootPatch = Annotated[
    Union[SetFieldPatch, RemoveTokenPatch, ReplaceTokenPatch],
    Field(discriminator="op"),
]


class BootMenuConfig(BaseModel):
    """Boot menu files and the patches applied to each of them."""
    model_config = ConfigDict(extra="forbid")

    config_files: List[str] = Field(
        default_factory=lambda: ["boot/grub/grub.cfg", "boot/grub/loopback.cfg"]
    )
    patches: List[BootPatch] = Field(default_factory=list)
