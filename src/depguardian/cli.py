"""CLI entry point for depguardian."""

import asyncio
import json
import logging
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv()

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from depguardian.adapters.base import PackageNotFoundError
from depguardian.adapters.manifest import ManifestError
from depguardian.analyzers.pipeline import ScanPipeline
from depguardian.config import ConfigurationError, DepGuardianConfig, load_config
from depguardian.models.schemas import ScanResult, Severity

app = typer.Typer(help="Dependency vulnerability and supply-chain scanner for npm projects.")

console = Console()
err_console = Console(stderr=True)

SEVERITY_STYLES = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "dim",
}


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Route library logging through rich on stderr."""
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress logs"),
    debug: bool = typer.Option(False, "--debug", help="Show debug logs"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to .depguardian.json"),
) -> None:
    """Scan npm dependencies for vulnerabilities and supply-chain threats."""
    setup_logging(verbose, debug)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config


def _load_config(ctx: typer.Context) -> DepGuardianConfig:
    config_path = (ctx.obj or {}).get("config_path")
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _spinner() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=err_console,
        transient=True,
    )


def _styled(severity: Severity) -> str:
    style = SEVERITY_STYLES[severity]
    return f"[{style}]{severity.value}[/{style}]"


def _split_names(values: list[str] | None) -> list[str]:
    names = []
    for value in values or []:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names


def _write_json(result_data: dict, output: Path | None, json_output: bool) -> None:
    text = json.dumps(result_data, indent=2, default=str)
    if output:
        output.write_text(text)
        console.print(f"[green]Saved to {output}[/green]")
    if json_output:
        typer.echo(text)


def render_scan(result: ScanResult, threshold: Severity) -> None:
    """Print a scan result as rich tables."""
    vulnerabilities = sorted(
        (v for v in result.vulnerabilities if v.severity.rank >= threshold.rank),
        key=lambda v: (-v.severity.rank, v.package_name, v.id),
    )
    threats = [t for t in result.supply_chain_threats if t.severity.rank >= threshold.rank]

    console.print()
    summary = Table(title="Scan Summary", show_header=False, box=None)
    summary.add_column("Metric", style="bold")
    summary.add_column("Value", justify="right")
    summary.add_row("Dependencies scanned", str(result.dependencies_scanned))
    summary.add_row("Vulnerable packages", str(result.vulnerable_packages))
    for severity in sorted(Severity, key=lambda s: -s.rank):
        summary.add_row(f"  {severity.value.title()}", str(result.severity_counts.get(severity, 0)))
    summary.add_row("Supply chain threats", str(len(result.supply_chain_threats)))
    summary.add_row("Duration", f"{result.scan_duration_seconds:.2f}s")
    console.print(summary)

    if vulnerabilities:
        console.print()
        table = Table(title="Vulnerabilities")
        table.add_column("Severity")
        table.add_column("Package", style="cyan")
        table.add_column("ID")
        table.add_column("Title", max_width=50)
        table.add_column("Patched in", style="green")
        for vuln in vulnerabilities:
            table.add_row(
                _styled(vuln.severity),
                f"{vuln.package_name}@{vuln.package_version}",
                vuln.id,
                vuln.title or "-",
                ", ".join(sorted(vuln.patched_versions)[:3]) or "-",
            )
        console.print(table)

    if threats:
        console.print()
        table = Table(title="Supply Chain Threats")
        table.add_column("Severity")
        table.add_column("Type")
        table.add_column("Package", style="cyan")
        table.add_column("Description", max_width=60)
        for threat in sorted(threats, key=lambda t: -t.severity.rank):
            table.add_row(_styled(threat.severity), threat.type.value, threat.package_name, threat.description)
        console.print(table)

    if result.upgrade_paths:
        console.print()
        table = Table(title="Safe Upgrades")
        table.add_column("Package", style="cyan")
        table.add_column("From")
        table.add_column("To", style="green")
        table.add_column("Breaking")
        table.add_column("Confidence")
        table.add_column("Risk", justify="right")
        for path in result.upgrade_paths:
            table.add_row(
                path.package_name,
                path.current_version,
                path.target_version,
                "[yellow]yes[/yellow]" if path.is_breaking else "no",
                path.confidence.value,
                f"{path.risk_score:.0f}",
            )
        console.print(table)

    if result.unresolved_packages:
        console.print()
        console.print("[bold yellow]No safe upgrade found for:[/bold yellow]")
        for name in result.unresolved_packages:
            console.print(f"  [yellow]![/yellow] {name}")

    if result.unversioned_packages:
        console.print()
        console.print("[bold yellow]Installed version unknown, findings cover every release:[/bold yellow]")
        for name in result.unversioned_packages:
            console.print(f"  [yellow]?[/yellow] {name}")

    if not vulnerabilities and not threats:
        console.print()
        console.print("[bold green]No issues found at or above the reporting threshold.[/bold green]")


def exceeds_threshold(result: ScanResult, fail_on: Severity | None) -> bool:
    """Whether any finding reaches the ``--fail-on`` severity.

    Vulnerabilities of packages with an unknown installed version are
    reported but never fail the run.
    """
    if fail_on is None:
        return False
    unversioned = set(result.unversioned_packages)
    findings = [
        *(v for v in result.vulnerabilities if v.package_name not in unversioned),
        *result.supply_chain_threats,
    ]
    return any(item.severity.rank >= fail_on.rank for item in findings)


@app.command()
def scan(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Project directory or package.json"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output JSON file"),
    severity: Severity | None = typer.Option(None, "--severity", "-s", help="Minimum severity to report"),
    ignore: list[str] | None = typer.Option(None, "--ignore", "-i", help="Packages to skip (repeatable or comma-separated)"),
    fail_on: Severity | None = typer.Option(None, "--fail-on", help="Exit 1 when a finding reaches this severity"),
    transitive: bool = typer.Option(False, "--transitive", help="Also scan lockfile-only packages"),
) -> None:
    """Scan a project's dependencies."""
    config = _load_config(ctx)
    config.scanning.ignore_packages.extend(_split_names(ignore))
    threshold = severity or config.scanning.severity

    result = asyncio.run(_scan(config, path, transitive))

    if json_output or output:
        _write_json(result.model_dump(mode="json"), output, json_output)
    if not json_output:
        render_scan(result, threshold)

    if exceeds_threshold(result, fail_on):
        raise typer.Exit(1)


async def _scan(config: DepGuardianConfig, path: Path, transitive: bool) -> ScanResult:
    """Async implementation of scan."""
    with _spinner() as progress:
        progress.add_task(f"Scanning {path}...", total=None)
        try:
            async with ScanPipeline(config) as pipeline:
                return await pipeline.scan_project(path, include_transitive=transitive)
        except (ConfigurationError, ManifestError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)


@app.command()
def check(
    ctx: typer.Context,
    package: str = typer.Argument(..., help="Package name"),
    version: str | None = typer.Argument(None, help="Version to check (default: latest)"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output JSON file"),
    fail_on: Severity | None = typer.Option(None, "--fail-on", help="Exit 1 when a finding reaches this severity"),
) -> None:
    """Check a single package version."""
    config = _load_config(ctx)
    result = asyncio.run(_check(config, package, version))

    if json_output or output:
        _write_json(result.model_dump(mode="json"), output, json_output)
    if not json_output:
        render_scan(result, Severity.LOW)

    if exceeds_threshold(result, fail_on):
        raise typer.Exit(1)


async def _check(config: DepGuardianConfig, package: str, version: str | None) -> ScanResult:
    """Async implementation of check."""
    with _spinner() as progress:
        progress.add_task(f"Checking {package}...", total=None)
        try:
            async with ScanPipeline(config) as pipeline:
                return await pipeline.check_package(package, version)
        except (ConfigurationError, PackageNotFoundError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)


@app.command()
def upgrade(
    ctx: typer.Context,
    package: str = typer.Argument(..., help="Package name"),
    version: str = typer.Argument(..., help="Currently installed version"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Find the safest upgrade for a vulnerable package version."""
    config = _load_config(ctx)
    vulnerabilities, path = asyncio.run(_upgrade(config, package, version))

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "vulnerabilities": [v.model_dump(mode="json") for v in vulnerabilities],
                    "upgrade_path": path.model_dump(mode="json") if path else None,
                },
                indent=2,
                default=str,
            )
        )
        return

    console.print()
    if not vulnerabilities:
        console.print(f"[green]No known vulnerabilities in {package}@{version}[/green]")
        return

    console.print(f"[bold]{len(vulnerabilities)}[/bold] known vulnerabilities in [cyan]{package}@{version}[/cyan]")
    if path is None:
        console.print("[yellow]No safe upgrade path found[/yellow]")
        raise typer.Exit(1)

    info_table = Table(show_header=False, box=None)
    info_table.add_column("Key", style="bold")
    info_table.add_column("Value")
    info_table.add_row("Upgrade to", f"[green]{path.target_version}[/green]")
    info_table.add_row("Breaking", "[yellow]yes[/yellow]" if path.is_breaking else "no")
    info_table.add_row("Confidence", path.confidence.value)
    info_table.add_row("Risk score", f"{path.risk_score:.0f}")
    info_table.add_row("Fixes", ", ".join(sorted(path.fixed_vulnerability_ids)) or "-")
    if path.new_vulnerability_ids:
        info_table.add_row("Introduces", ", ".join(sorted(path.new_vulnerability_ids)))
    info_table.add_row("Changelog", path.changelog_url or "-")
    console.print(info_table)


async def _upgrade(config: DepGuardianConfig, package: str, version: str):
    """Async implementation of upgrade."""
    with _spinner() as progress:
        progress.add_task(f"Resolving upgrade for {package}...", total=None)
        try:
            async with ScanPipeline(config) as pipeline:
                return await pipeline.plan_upgrade(package, version)
        except ConfigurationError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)


@app.command("safe-version")
def safe_version(
    ctx: typer.Context,
    package: str = typer.Argument(..., help="Package name"),
    version_range: str = typer.Argument(..., help="npm version range, e.g. ^4.17.0"),
) -> None:
    """Find the newest version in a range without critical vulnerabilities."""
    config = _load_config(ctx)
    found = asyncio.run(_safe_version(config, package, version_range))

    if found is None:
        console.print(f"[red]No safe version of {package} satisfies {version_range}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]{package}@{found}[/green]")


async def _safe_version(config: DepGuardianConfig, package: str, version_range: str) -> str | None:
    """Async implementation of safe-version."""
    with _spinner() as progress:
        progress.add_task(f"Checking {package} {version_range}...", total=None)
        try:
            async with ScanPipeline(config) as pipeline:
                return await pipeline.find_safe_version(package, version_range)
        except ConfigurationError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from depguardian import __version__

    console.print(f"depguardian v{__version__}")


if __name__ == "__main__":
    app()
