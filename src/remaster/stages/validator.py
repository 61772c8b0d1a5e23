"""Named pre- and post-build assertions."""

import asyncio
import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple, TYPE_CHECKING

from remaster.errors import ValidationFailure
from remaster.models.artifacts import CheckResult, FilesystemLayer, ImageTree
from remaster.models.mutation import MutationSpec
from remaster.stages.base import BaseStage
from remaster.stages.boot_asset import parse_appended_partition_interval, APPENDED_PARTITION_MARKER
from remaster.stages.bootcfg import BootMenu, LAYER_PATH_PARAMETER
from remaster.utils.process import run_command

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


logger = logging.getLogger(__name__)

FIND_RESULT_RE = re.compile(r"^'(?P<path>/.*)'$")


def layer_contains(layer: FilesystemLayer, relpath: str) -> bool:
    """Whether a lower layer holds ``relpath``.

    An unpacked layer is checked on disk, since removals may have changed it
    since it was listed. An untouched layer is checked against its listing.
    """
    relpath = relpath.strip("/")
    if layer.tree is not None:
        return layer.tree.exists(relpath)
    return relpath in (layer.listing or [])


def check_required_subtrees(
    tree: ImageTree, required: List[str], lower_layers: Optional[List[FilesystemLayer]] = None
) -> CheckResult:
    """Every required subtree exists in the tree or in a lower layer."""
    missing = [
        subtree for subtree in required
        if not tree.path(subtree).is_dir()
        and not any(layer_contains(layer, subtree) for layer in lower_layers or [])
    ]
    return CheckResult(
        name="required-subtrees",
        passed=not missing,
        detail=f"missing: {', '.join(missing)}" if missing else f"{len(required)} present",
    )


def check_expected_paths(trees: List[Tuple[ImageTree, MutationSpec]]) -> CheckResult:
    """Every injected, linked or explicitly required path is in place."""
    missing = []
    total = 0
    for tree, spec in trees:
        for relpath in spec.expected_paths():
            total += 1
            if not tree.exists(relpath):
                missing.append(relpath)
    return CheckResult(
        name="injected-files-present",
        passed=not missing,
        detail=f"missing: {', '.join(missing)}" if missing else f"{total} present",
    )


def check_masked_components(
    tree: ImageTree, spec: MutationSpec, lower_layers: Optional[List[FilesystemLayer]] = None
) -> List[CheckResult]:
    """Each disabled first-run component has its marker and none of its leftovers.

    Leftovers are looked for in ``tree`` and in every lower layer.
    """
    results = []
    for component in spec.disabled_components:
        problems = []
        if not tree.exists(component.marker):
            problems.append(f"marker {component.marker} missing")
        for path in component.absent:
            if tree.exists(path):
                problems.append(f"{path} still present")
            problems.extend(
                f"{path} still present in {layer.name}"
                for layer in lower_layers or [] if layer_contains(layer, path)
            )
        results.append(CheckResult(
            name=f"component-masked:{component.name}",
            passed=not problems,
            detail="; ".join(problems) if problems else "masked",
        ))
    return results


def check_no_layer_references(
    iso_tree: ImageTree, config_files: List[str], retired: List[str]
) -> CheckResult:
    """No boot menu still points at a per-layer container."""
    offenders = []
    for relpath in config_files:
        path = iso_tree.path(relpath)
        if not path.is_file():
            continue
        text = path.read_text()
        menu = BootMenu(text)
        for line in menu.kernel_lines():
            if any(t.startswith(LAYER_PATH_PARAMETER + "=") or t == LAYER_PATH_PARAMETER for t in line.split()):
                offenders.append(f"{relpath}: {LAYER_PATH_PARAMETER}")
                break
        offenders.extend(f"{relpath}: {name}" for name in retired if name in text)
    return CheckResult(
        name="no-layer-references",
        passed=not offenders,
        detail="; ".join(offenders) if offenders else "clean",
    )


def parse_find_output(output: str) -> List[str]:
    """Paths from ``xorriso -find`` output, which quotes each result."""
    paths = []
    for line in output.splitlines():
        match = FIND_RESULT_RE.match(line.strip())
        if match:
            paths.append(match.group("path"))
    return paths


class Validator(BaseStage):
    """Runs the checklist and aborts the pipeline on any failure."""

    name = "validator"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        return ["xorriso"]

    async def run(self, ctx: "BuildContext") -> None:
        """Pre-build checks against the working trees."""
        results = await asyncio.to_thread(self.pre_build_checks, ctx)
        self._conclude(ctx, results, "pre-build")

    async def verify_image(self, ctx: "BuildContext", image: Path) -> None:
        """Post-build checks against the finished image."""
        results = [
            await self._check_containers(ctx, image),
            await self._check_appended_partition(image),
        ]
        self._conclude(ctx, results, "post-build")

    def pre_build_checks(self, ctx: "BuildContext") -> List[CheckResult]:
        config = ctx.config
        results = []

        lower_layers = ctx.layers[:-1] if ctx.strategy == "selective" else []
        results.append(check_required_subtrees(
            ctx.rootfs_tree, config.validation.required_subtrees, lower_layers
        ))

        results.append(check_expected_paths([
            (ctx.iso_tree, config.iso_mutations),
            (ctx.rootfs_tree, config.rootfs_mutations),
        ]))
        results.extend(check_masked_components(
            ctx.rootfs_tree, config.rootfs_mutations, lower_layers
        ))

        if ctx.retired_layer_names:
            results.append(check_no_layer_references(
                ctx.iso_tree, config.boot.config_files, ctx.retired_layer_names
            ))

        bios_image = config.image.bios_boot_image
        results.append(CheckResult(
            name="bios-boot-image-present",
            passed=ctx.iso_tree.path(bios_image).is_file(),
            detail=bios_image,
        ))

        if config.validation.degraded_boot_asset_fatal:
            degraded = ctx.boot_asset is None or ctx.boot_asset.degraded
            results.append(CheckResult(
                name="boot-asset-not-degraded",
                passed=not degraded,
                detail="fallback boot partition in use" if degraded else "extracted from source",
            ))
        return results

    def expected_containers(self, ctx: "BuildContext") -> List[str]:
        directory = ctx.config.layers.directory.strip("/")
        return [f"/{directory}/{layer.container.name}" for layer in ctx.layers]

    async def _check_containers(self, ctx: "BuildContext", image: Path) -> CheckResult:
        expected = self.expected_containers(ctx)
        directory = "/" + ctx.config.layers.directory.strip("/")
        try:
            result = await run_command(
                ["xorriso", "-indev", str(image), "-find", directory, "-name", "*.squashfs"],
                timeout=300,
            )
        except subprocess.CalledProcessError as e:
            return CheckResult("catalog-lists-containers", False, f"xorriso failed: {(e.stderr or '').strip()}")
        listed = set(parse_find_output(result.stdout))
        missing = [path for path in expected if path not in listed]
        return CheckResult(
            name="catalog-lists-containers",
            passed=not missing,
            detail=f"missing: {', '.join(missing)}" if missing else ", ".join(expected),
        )

    async def _check_appended_partition(self, image: Path) -> CheckResult:
        try:
            result = await run_command(
                ["xorriso", "-indev", str(image), "-report_el_torito", "as_mkisofs"],
                timeout=300,
            )
        except subprocess.CalledProcessError as e:
            return CheckResult("appended-partition-present", False, f"xorriso failed: {(e.stderr or '').strip()}")
        report = result.stdout + "\n" + result.stderr
        present = APPENDED_PARTITION_MARKER in report
        interval = parse_appended_partition_interval(report)
        return CheckResult(
            name="appended-partition-present",
            passed=present,
            detail=f"sectors {interval[0]}-{interval[1]}" if interval else ("present" if present else "absent"),
        )

    def _conclude(self, ctx: "BuildContext", results: List[CheckResult], phase: str) -> None:
        ctx.checks.extend(results)
        for result in results:
            level = logging.INFO if result.passed else logging.ERROR
            logger.log(level, f"[{phase}] {result.name}: {'ok' if result.passed else 'FAILED'} ({result.detail})")
        failures = [result for result in results if not result.passed]
        if failures:
            raise ValidationFailure(failures, stage=self.name)
