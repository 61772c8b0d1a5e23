"""Typed patches for boot menu configuration files."""

import asyncio
import logging
import re
from typing import List, Sequence, TYPE_CHECKING

from remaster.models.bootcfg import (
    BootPatch,
    RemoveTokenPatch,
    ReplaceTokenPatch,
    SetFieldPatch,
)
from remaster.stages.base import BaseStage

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)

# First word of a line that carries kernel parameters, and whether the
# second word is the kernel image rather than a parameter
KERNEL_COMMANDS = {
    "linux": True,
    "linuxefi": True,
    "kernel": True,
    "append": False,
}

LAYER_PATH_PARAMETER = "layerfs-path"


def _field_re(name: str) -> "re.Pattern":
    return re.compile(
        rf"^(?P<head>\s*(?:set\s+)?{re.escape(name)}(?:\s*=\s*|\s+))(?P<value>\d+)(?P<tail>\s*)$"
    )


def _token_matches(token: str, name: str) -> bool:
    return token == name or token.startswith(name + "=")


class KernelLine:
    """A kernel command line split into indentation, fixed words and parameters."""

    def __init__(self, text: str):
        self.indent = text[:len(text) - len(text.lstrip())]
        words = text.split()
        fixed = 2 if KERNEL_COMMANDS[words[0]] else 1
        self.fixed = words[:fixed]
        self.params = words[fixed:]

    @staticmethod
    def is_kernel_line(text: str) -> bool:
        words = text.split()
        return bool(words) and words[0] in KERNEL_COMMANDS

    def render(self) -> str:
        return self.indent + " ".join(self.fixed + self.params)


class BootMenu:
    """Line-oriented model of a GRUB or isolinux menu file."""

    def __init__(self, text: str):
        self.lines = text.split("\n")

    def render(self) -> str:
        return "\n".join(self.lines)

    def kernel_lines(self) -> List[str]:
        return [line for line in self.lines if KernelLine.is_kernel_line(line)]

    def apply(self, patches: Sequence[BootPatch]) -> bool:
        """Apply patches in order. Returns True if any line changed."""
        changed = False
        for patch in patches:
            if isinstance(patch, SetFieldPatch):
                changed |= self.set_field(patch.name, patch.value)
            elif isinstance(patch, RemoveTokenPatch):
                changed |= self._edit_params(lambda params: self._remove(params, patch.token))
            elif isinstance(patch, ReplaceTokenPatch):
                changed |= self._edit_params(lambda params: self._replace(params, patch.old, patch.new))
        return changed

    def set_field(self, name: str, value: int) -> bool:
        pattern = _field_re(name)
        changed = False
        for index, line in enumerate(self.lines):
            match = pattern.match(line)
            if match and int(match.group("value")) != value:
                self.lines[index] = f"{match.group('head')}{value}{match.group('tail')}"
                changed = True
        return changed

    def _edit_params(self, edit) -> bool:
        changed = False
        for index, line in enumerate(self.lines):
            if not KernelLine.is_kernel_line(line):
                continue
            kernel = KernelLine(line)
            params = edit(list(kernel.params))
            if params != kernel.params:
                kernel.params = params
                self.lines[index] = kernel.render()
                changed = True
        return changed

    @staticmethod
    def _remove(params: List[str], name: str) -> List[str]:
        return [token for token in params if not _token_matches(token, name)]

    @staticmethod
    def _replace(params: List[str], old: str, new: str) -> List[str]:
        if old not in params:
            return params
        if new in params:
            return [token for token in params if token != old]
        return [new if token == old else token for token in params]


class BootConfigPatcher(BaseStage):
    """Applies the configured boot menu patches to every menu file present."""

    name = "bootcfg"

    def patches_for(self, ctx: "BuildContext") -> List[BootPatch]:
        patches = list(ctx.config.boot.patches)
        if ctx.retired_layer_names:
            # Boot from the single collapsed container
            patches.append(RemoveTokenPatch(op="remove-token", token=LAYER_PATH_PARAMETER))
        return patches

    async def run(self, ctx: "BuildContext") -> None:
        """Patch boot menu files in the ISO tree."""
        patches = self.patches_for(ctx)
        if not patches:
            logger.debug("No boot menu patches configured")
            return

        found = 0
        for relpath in ctx.config.boot.config_files:
            path = ctx.iso_tree.path(relpath)
            if not await asyncio.to_thread(path.is_file):
                logger.debug(f"Boot menu file {relpath} not present, skipping")
                continue
            found += 1
            menu = BootMenu(await asyncio.to_thread(path.read_text))
            if menu.apply(patches):
                await asyncio.to_thread(path.write_text, menu.render())
                logger.info(f"Patched {relpath}")
            else:
                logger.debug(f"{relpath} already up to date")

        if not found:
            ctx.warn(self.name, "none of the configured boot menu files exist in the image")
