"""Main CLI implementation using Typer."""

import subprocess
from pathlib import Path
from typing import Optional, Callable, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from ruamel.yaml.error import YAMLError

from remaster.cli.commands import build_image, inspect_image, validate_config, print_checks
from remaster.errors import RemasterError, ValidationFailure


# Create Typer app
app = typer.Typer(
    name="remaster",
    help="Rebuild Ubuntu-style live ISO images with customized content",
    add_completion=False,
)

# Console for rich output
console = Console()


def _run_cli_command(handler: Callable[..., Any], **kwargs: Any):
    """Helper to run a CLI command with error handling."""
    try:
        handler(**kwargs)
    except ValidationFailure as e:
        console.print(f"[red]Error:[/red] {e}")
        print_checks(e.failures, title="Failed checks")
        raise typer.Exit(1) from e
    except RemasterError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except (FileNotFoundError, ValidationError, YAMLError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from e
    except subprocess.CalledProcessError as e:
        console.print(f"[red]Error:[/red] {' '.join(e.cmd)} exited with {e.returncode}")
        raise typer.Exit(1) from e


@app.command("build")
def build_command(
    config_dir: Path = typer.Argument(..., help="Configuration directory"),
    keep_work: bool = typer.Option(
        False, "--keep-work", help="Keep the work directory after the run"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Override the configured log level"
    ),
):
    """Build a customized image from a configuration directory."""
    _run_cli_command(build_image, config_dir=config_dir, keep_work=keep_work, log_level=log_level)


@app.command("inspect")
def inspect_command(
    image: Path = typer.Argument(..., help="ISO image to inspect"),
    directory: str = typer.Option(
        "casper", "--directory", "-d", help="Directory holding the layer containers"
    ),
):
    """Show an image's EFI partition and layer containers."""
    _run_cli_command(inspect_image, image=image, directory=directory)


# Config subcommands
config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")


@config_app.command("validate")
def config_validate_command(
    config_dir: Path = typer.Argument(..., help="Configuration directory"),
):
    """Validate configuration files."""
    _run_cli_command(validate_config, config_dir=config_dir)


def main():
    """Main entry point for CLI."""
    app()
