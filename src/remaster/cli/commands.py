"""Command implementations for CLI."""

import asyncio
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from remaster.engine.config import ConfigManager
from remaster.engine.pipeline import LOG_FILE_NAME, RemasterPipeline
from remaster.models.artifacts import CheckResult, RemasterResult, StageWarning
from remaster.models.config import RemasterConfig
from remaster.stages.boot_asset import parse_appended_partition_interval
from remaster.stages.validator import parse_find_output
from remaster.utils.logging import setup_logging
from remaster.utils.process import require_tools, run_command


console = Console()
stderr_console = Console(stderr=True)


def _load_config(config_dir: Path) -> RemasterConfig:
    return asyncio.run(ConfigManager(config_dir).load())


def print_checks(checks: List[CheckResult], title: str = "Checks"):
    """Print validation checks as a table."""
    if not checks:
        return
    table = Table(title=title)
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Detail", style="dim", max_width=60)

    for check in checks:
        result = "[green]passed[/green]" if check.passed else "[red]FAILED[/red]"
        table.add_row(check.name, result, check.detail)

    console.print(table)


def print_warnings(warnings: List[StageWarning]):
    """Print recorded best-effort failures."""
    if not warnings:
        return
    table = Table(title="Warnings")
    table.add_column("Stage", style="yellow")
    table.add_column("Message")

    for warning in warnings:
        table.add_row(warning.stage, warning.message)

    console.print(table)


def build_image(config_dir: Path, keep_work: bool = False, log_level: Optional[str] = None) -> RemasterResult:
    """Run the full remaster pipeline for a configuration directory."""
    setup_logging(log_level or "INFO")
    config = _load_config(config_dir)

    work = config.work
    if keep_work:
        work = work.model_copy(update={"keep_work_dir": True})
    if log_level:
        work = work.model_copy(update={"log_level": log_level.upper()})
    config = config.model_copy(update={"work": work})

    setup_logging(work.log_level, log_file=Path(work.work_dir) / LOG_FILE_NAME)

    pipeline = RemasterPipeline(config)
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=stderr_console,
    ) as progress:
        task = progress.add_task(f"Remastering {Path(work.source_image).name}...", total=None)

        result = asyncio.run(pipeline.run())

        progress.update(task, completed=True)

    print_warnings(result.warnings)
    print_checks(result.checks)

    if result.degraded_boot_asset:
        console.print("[yellow]![/yellow] EFI boot partition was not found; a blank fallback was used")
    if result.repacked_layers:
        console.print(f"  Repacked: {', '.join(result.repacked_layers)}")
    else:
        console.print("  Repacked: none")
    console.print(f"[green]✓[/green] Wrote {result.output}")
    return result


async def _inspect(image: Path, directory: str):
    report = await run_command(
        ["xorriso", "-indev", str(image), "-report_el_torito", "as_mkisofs"],
        timeout=300,
    )
    found = await run_command(
        ["xorriso", "-indev", str(image), "-find", "/" + directory.strip("/"), "-name", "*.squashfs"],
        timeout=300,
    )
    return (
        parse_appended_partition_interval(report.stdout + "\n" + report.stderr),
        parse_find_output(found.stdout),
    )


def inspect_image(image: Path, directory: str = "casper"):
    """Show the boot partition interval and layer containers of an image."""
    require_tools(["xorriso"])
    if not image.is_file():
        raise FileNotFoundError(f"Image not found: {image}")

    interval, containers = asyncio.run(_inspect(image, directory))

    if interval:
        start, end = interval
        console.print(f"EFI partition: sectors {start}-{end} ({end - start + 1} sectors)")
    else:
        console.print("[yellow]EFI partition: not found[/yellow]")

    table = Table(title="Containers")
    table.add_column("Path", style="cyan")
    for path in containers:
        table.add_row(path)
    console.print(table)


def validate_config(config_dir: Path):
    """Validate a configuration directory."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("Validating configuration...", total=None)

        config = _load_config(config_dir)

        progress.update(task, completed=True)

    console.print("[green]✓[/green] Configuration is valid")
    console.print(f"  Source: {config.work.source_image}")
    console.print(f"  Output: {config.work.output_image}")
    console.print(f"  Layers: {', '.join(config.layers.names) or 'auto-detect'} ({config.layers.strategy})")
    console.print(f"  ISO operations: {len(config.iso_mutations.operations)}")
    console.print(f"  Root filesystem operations: {len(config.rootfs_mutations.operations)}")
    if config.requires_privileges:
        console.print("  [yellow]Privileged operations configured: run as root[/yellow]")
    return config
