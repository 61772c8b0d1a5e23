"""Application of mutation sets to working trees."""

import asyncio
import logging
import os
import stat
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union, TYPE_CHECKING

from remaster.errors import BestEffortFailure, MissingDependency
from remaster.models.artifacts import ImageTree
from remaster.models.mutation import InjectOp, LinkOp, MutationSpec, ReplaceOp
from remaster.stages.base import BaseStage
from remaster.utils.chroot import privileged_root
from remaster.utils.fs import matches_pattern, relpaths, remove_path, resolve_in_tree
from remaster.utils.templates import render_template

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)

DIR_MODE = 0o755


@dataclass
class MutationOutcome:
    """What applying a mutation set did to a tree."""
    changed: bool = False
    warnings: List[str] = field(default_factory=list)


def load_payload(
    op: Union[InjectOp, ReplaceOp], payload_dir: Path, variables: Dict[str, Any]
) -> bytes:
    """Bytes to write for an inject or replace operation."""
    if op.source is not None:
        source = payload_dir / op.source
        if not source.is_file():
            raise MissingDependency(f"payload not found: {source}")
        return source.read_bytes()
    return render_template(op.content, variables, name=op.path).encode()


def _set_owner(path: Path, owner: Optional[Tuple[int, int]], outcome: MutationOutcome) -> bool:
    if owner is None:
        return False
    st = os.lstat(path)
    if (st.st_uid, st.st_gid) == owner:
        return False
    try:
        os.lchown(path, *owner)
    except PermissionError:
        outcome.warnings.append(f"cannot set owner {owner[0]}:{owner[1]} on {path} without root")
        return False
    return True


def _make_parents(root: Path, target: Path, owner, outcome: MutationOutcome) -> None:
    missing = []
    parent = target.parent
    while parent != root and not parent.exists():
        missing.append(parent)
        parent = parent.parent
    for directory in reversed(missing):
        directory.mkdir(mode=DIR_MODE)
        outcome.changed = True
        _set_owner(directory, owner, outcome)


def _below_any(rel: str, roots: Set[str]) -> bool:
    parts = rel.split("/")
    return any("/".join(parts[:i]) in roots for i in range(1, len(parts)))


def _apply_removals(tree: ImageTree, spec: MutationSpec, outcome: MutationOutcome) -> None:
    patterns = spec.removal_patterns()
    if not patterns:
        return
    doomed: List[str] = []
    doomed_set: Set[str] = set()
    for rel in relpaths(tree.root):
        if _below_any(rel, doomed_set):
            continue
        if any(matches_pattern(rel, pattern) for pattern in patterns):
            doomed.append(rel)
            doomed_set.add(rel)
    for rel in doomed:
        remove_path(tree.path(rel))
        logger.debug(f"Removed {rel}")
    if doomed:
        outcome.changed = True
        logger.info(f"Removed {len(doomed)} entries from {tree.root}")


def _write_file(tree: ImageTree, op, data: bytes, outcome: MutationOutcome) -> None:
    target = resolve_in_tree(tree.root, op.path)
    exists = target.exists() or target.is_symlink()
    mode = op.mode

    if isinstance(op, ReplaceOp) and not exists:
        outcome.warnings.append(f"replace target {op.path} does not exist, creating it")
    if mode is None:
        if exists and not target.is_symlink() and target.is_file():
            mode = stat.S_IMODE(os.lstat(target).st_mode)
        else:
            mode = 0o644

    if target.is_symlink() or target.is_dir():
        remove_path(target)
        outcome.changed = True
    else:
        _make_parents(tree.root, target, op.owner, outcome)

    if target.exists() and target.read_bytes() == data:
        if stat.S_IMODE(target.stat().st_mode) != mode:
            os.chmod(target, mode)
            outcome.changed = True
    else:
        target.write_bytes(data)
        os.chmod(target, mode)
        outcome.changed = True
        logger.debug(f"Wrote {op.path} ({len(data)} bytes, mode {mode:o})")

    if _set_owner(target, op.owner, outcome):
        outcome.changed = True


def _write_link(tree: ImageTree, op: LinkOp, outcome: MutationOutcome) -> None:
    target = resolve_in_tree(tree.root, op.path)
    if target.is_symlink() and os.readlink(target) == op.target:
        if _set_owner(target, op.owner, outcome):
            outcome.changed = True
        return
    if target.exists() or target.is_symlink():
        remove_path(target)
    else:
        _make_parents(tree.root, target, op.owner, outcome)
    target.symlink_to(op.target)
    _set_owner(target, op.owner, outcome)
    outcome.changed = True
    logger.debug(f"Linked {op.path} -> {op.target}")


def apply_mutations(
    tree: ImageTree,
    spec: MutationSpec,
    payload_dir: Path,
    variables: Optional[Dict[str, Any]] = None,
) -> MutationOutcome:
    """Apply removals, then writes, of ``spec`` to ``tree``.

    Privileged operations are not run here; see ContentInjector.
    """
    outcome = MutationOutcome()
    _apply_removals(tree, spec, outcome)
    for op in spec.writes:
        if isinstance(op, LinkOp):
            _write_link(tree, op, outcome)
        else:
            _write_file(tree, op, load_payload(op, payload_dir, variables or {}), outcome)
    return outcome


class ContentInjector(BaseStage):
    """Applies the configured mutation sets to the ISO tree and root filesystem."""

    name = "injector"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        if ctx.config.requires_privileges:
            return ["mount", "umount", "chroot"]
        return []

    async def run(self, ctx: "BuildContext") -> None:
        """Mutate every working tree."""
        config = ctx.config

        if not config.iso_mutations.is_empty():
            await self.apply(ctx, ctx.iso_tree, config.iso_mutations)

        spec = config.rootfs_mutations
        if ctx.strategy == "selective":
            lower_spec = spec.removals_only()
            for layer in ctx.layers[:-1]:
                if layer.tree is not None:
                    outcome = await self.apply(ctx, layer.tree, lower_spec)
                    layer.dirty = layer.dirty or outcome.changed

        top = ctx.top_layer
        outcome = await self.apply(ctx, ctx.rootfs_tree, spec)
        top.dirty = top.dirty or outcome.changed

        if spec.transforms:
            if ctx.strategy == "selective":
                ctx.warn(
                    self.name,
                    "privileged operations skipped: the selective strategy has no complete root filesystem",
                )
            elif await self.run_privileged(ctx, ctx.rootfs_tree, spec):
                top.dirty = True

    async def apply(self, ctx: "BuildContext", tree: ImageTree, spec: MutationSpec) -> MutationOutcome:
        """Apply the non-privileged part of ``spec`` to ``tree``."""
        outcome = await asyncio.to_thread(
            apply_mutations, tree, spec, ctx.payload_dir, ctx.config.variables
        )
        for message in outcome.warnings:
            ctx.warn(self.name, message)
        return outcome

    async def run_privileged(self, ctx: "BuildContext", tree: ImageTree, spec: MutationSpec) -> bool:
        """Run privileged operations inside the tree. Returns True if any ran."""
        attempted = False
        try:
            async with privileged_root(tree.root) as root:
                for op in spec.transforms:
                    label = op.description or op.command
                    logger.info(f"Running privileged operation: {label}")
                    attempted = True
                    try:
                        await root.run(op.command, timeout=op.timeout)
                    except subprocess.CalledProcessError as e:
                        ctx.warn(self.name, f"'{label}' failed with exit code {e.returncode}: {(e.stderr or '').strip()}")
                    except subprocess.TimeoutExpired:
                        ctx.warn(self.name, f"'{label}' timed out after {op.timeout}s")
        except BestEffortFailure as e:
            ctx.warn(self.name, e.message)
        return attempted
