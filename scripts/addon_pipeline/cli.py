"""
Command-line interface for the addon pipeline.
Provides commands for building, key management, signing and verification.
"""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import ConfigurationError, ProjectConfig
from .pipeline import AddonPipeline, BuildReport, PipelineError
from .plugins import plugin_registry
from .plugins.base import AddonCollisionError
from .processing.signing import Signer, SigningError, load_public_key, read_signature

DEFAULT_CONFIG = Path("addon.toml")

# Initialize typer app and rich console
app = typer.Typer(
    name="addon-pipeline",
    help="Addon pipeline - Generate, pack and sign game configuration addons",
    add_completion=False,
    rich_markup_mode="rich",
    epilog="""
[bold]Examples:[/bold]
  [cyan]addon-pipeline keygen 17th[/cyan]                       Create the project keypair
  [cyan]addon-pipeline build[/cyan]                             Build every addon in addon.toml
  [cyan]addon-pipeline build --workers 4[/cyan]                 Build addons in parallel
  [cyan]addon-pipeline verify build/archives/17th_Music.pbo build/archives/17th_Music.pbo.17th.sig keys/17th.pubkey[/cyan]

[bold]Environment Variables:[/bold]
  Use [cyan]addon-pipeline config --env-vars[/cyan] to see all available variables.
    """
)
console = Console()


@app.command()
def build(
    config_file: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Project file path"),
    workers: int = typer.Option(1, "--workers", "-w", min=1, help="Worker threads for plugins and packaging")
):
    """Generate, pack, sign and verify every enabled addon."""
    console.print("[bold blue]Building addons...[/bold blue]")

    config = _load_config(config_file)

    try:
        pipeline = AddonPipeline(config, max_workers=workers)
        report = pipeline.build()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)
    except AddonCollisionError as e:
        console.print(f"[red]Addon collision:[/red] {e}")
        raise typer.Exit(1)
    except PipelineError as e:
        console.print(f"[red]Pipeline error:[/red] {e}")
        if e.plugin:
            console.print(f"[red]Failed in plugin:[/red] {e.plugin}")
        for addon_name, error in e.failures:
            console.print(f"  [red]✗[/red] {addon_name}: {error}")
        raise typer.Exit(1)

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")

    _display_build_report(report)
    console.print(f"[green]✓ Built {len(report.archives)} signed archives[/green]")


@app.command()
def keygen(
    name: str = typer.Argument(..., help="Keypair name, usually the project prefix"),
    keys_dir: Path = typer.Option(Path("keys"), "--keys", "-k", help="Directory for the key files")
):
    """Create a new signing keypair."""
    signer = Signer(keys_dir)

    try:
        keypair = signer.generate(name)
    except SigningError as e:
        console.print(f"[red]Error creating keypair:[/red] {e}")
        raise typer.Exit(1)

    public_path, private_path = signer.key_paths(name)
    console.print(f"[green]✓[/green] Created keypair '{keypair.name}' (fingerprint {keypair.fingerprint})")
    console.print(f"  Public key:  {public_path}")
    console.print(f"  Private key: {private_path} [dim](keep this file secret)[/dim]")


@app.command()
def sign(
    archive: Path = typer.Argument(..., help="Archive to sign"),
    key: Optional[str] = typer.Option(None, "--key", help="Keypair name; defaults to the project key"),
    keys_dir: Optional[Path] = typer.Option(None, "--keys", "-k", help="Directory holding the key files"),
    config_file: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Project file used for defaults")
):
    """Sign an existing archive with a stored keypair."""
    if key is None or keys_dir is None:
        project = _load_config(config_file)
        key = key or project.key_name
        keys_dir = keys_dir or Path(project.signing.keys_path)

    signer = Signer(keys_dir)

    try:
        keypair = signer.load(key)
        signature = signer.sign(archive, keypair)
    except SigningError as e:
        console.print(f"[red]Error signing archive:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Wrote {signature.path}")


@app.command()
def verify(
    archive: Path = typer.Argument(..., help="Signed archive"),
    signature_file: Path = typer.Argument(..., help="Detached signature file"),
    public_key_file: Path = typer.Argument(..., help="Public key file")
):
    """Verify an archive against a detached signature."""
    try:
        public_key = load_public_key(public_key_file)
        signature = read_signature(signature_file, archive)
        valid = Signer.verify(archive, signature, public_key)
    except SigningError as e:
        console.print(f"[red]Error verifying archive:[/red] {e}")
        raise typer.Exit(1)

    if not valid:
        console.print(f"[red]✗[/red] Signature does not match {archive}")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Signature is valid for {archive}")


@app.command()
def config(
    config_file: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Project file path"),
    env_vars: bool = typer.Option(False, "--env-vars", help="Show available environment variables")
):
    """Show the resolved project configuration."""
    if env_vars:
        _display_env_vars()
        return

    project = _load_config(config_file)
    _display_config(project)
    _display_plugins(project)
    console.print("[green]✓ Configuration is valid[/green]")


def _load_config(config_file: Path) -> ProjectConfig:
    """Load the project file, reporting every validation error."""
    try:
        project = ProjectConfig.from_file(config_file)
    except ConfigurationError as e:
        if e.errors:
            console.print(f"[red]Configuration errors in {config_file}:[/red]")
            for error in e.errors:
                console.print(f"  • {error}")
        else:
            console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[dim]Using configuration: {config_file}[/dim]")

    env_vars_used = [key for key in os.environ if key.startswith('ADDON_PIPELINE_')]
    if env_vars_used:
        console.print(f"[dim]Environment overrides applied: {len(env_vars_used)} variables[/dim]")

    return project


def _display_build_report(report: BuildReport) -> None:
    """Display the release archives of a build."""
    table = Table(title="Release Archives")
    table.add_column("Addon", style="cyan")
    table.add_column("Archive", style="green")
    table.add_column("Members", justify="right")
    table.add_column("Signature", style="yellow")
    table.add_column("Verified", width=8)

    for release in report.archives:
        table.add_row(
            release.addon,
            str(release.archive.path),
            str(len(release.archive.members)),
            release.signature.path.name,
            "[green]✓[/green]" if release.verified else "[red]✗[/red]",
        )

    console.print(table)


def _display_config(project: ProjectConfig) -> None:
    """Display configuration in a formatted table."""
    table = Table(title="Addon Project Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Prefix", project.prefix)
    table.add_row("Name", project.name)
    table.add_row("Author", project.author or "-")
    table.add_row("Plugins", ", ".join(project.plugins) or "-")

    # Packing
    table.add_row("Pack Tool", project.packer.tool)
    table.add_row("Pack Executable", project.packer.executable)
    table.add_row("Archive Extension", project.packer.archive_extension)
    table.add_row("Exclude", ", ".join(project.packer.exclude) or "-")
    table.add_row("Include", ", ".join(project.packer.include) or "-")
    table.add_row("Header Extensions", ", ".join(project.packer.header_extensions))

    # Signing
    table.add_row("Key Name", project.key_name)
    table.add_row("Keys Directory", project.signing.keys_path)

    # Paths
    table.add_row("Build Directory", project.build_path)
    table.add_row("Assets Directory", project.assets_path)
    table.add_row("Release Target", project.release_target or "-")

    console.print(table)


def _display_plugins(project: ProjectConfig) -> None:
    """Display every enabled plugin with its parsed settings."""
    table = Table(title="Enabled Plugins")
    table.add_column("Plugin", style="cyan", no_wrap=True)
    table.add_column("Class", style="magenta", no_wrap=True)
    table.add_column("Settings", style="green")

    errors = []
    for plugin_name in project.plugins:
        try:
            info = plugin_registry.create_plugin(plugin_name, project).get_plugin_info()
        except ConfigurationError as e:
            errors.append(str(e))
            continue
        except (TypeError, ValueError) as e:
            errors.append(f"settings.{plugin_name}: {e}")
            continue

        table.add_row(info["name"], info["class"], escape(repr(info["settings"])))

    console.print(table)

    if errors:
        console.print("[red]Plugin configuration errors:[/red]")
        for error in errors:
            console.print(f"  • {escape(error)}")
        raise typer.Exit(1)


def _display_env_vars() -> None:
    """Display available environment variables for configuration."""
    table = Table(title="Addon Pipeline Environment Variables")
    table.add_column("Environment Variable", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Example", style="green")

    env_vars = [
        ("ADDON_PIPELINE_BUILD_PATH", "Build directory path", "build"),
        ("ADDON_PIPELINE_ASSETS_PATH", "Assets directory path", "assets"),
        ("ADDON_PIPELINE_PACK_TOOL", "Archive tool (armake2 or zip)", "zip"),
        ("ADDON_PIPELINE_PACK_EXECUTABLE", "Path of the external packer", "/usr/local/bin/armake2"),
        ("ADDON_PIPELINE_KEYS_PATH", "Directory holding the keypair files", "keys"),
    ]

    for var_name, description, example in env_vars:
        table.add_row(var_name, description, example)

    console.print(table)
    console.print("\n[dim]Set these environment variables to override project file settings.[/dim]")


if __name__ == "__main__":
    app()
