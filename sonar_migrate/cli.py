"""Command-line interface for the SonarQube to SonarCloud migration tool."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Annotated

import structlog
import typer
from rich.console import Console
from rich.table import Table

from sonar_migrate.clients import SonarCloudClient, SonarQubeClient
from sonar_migrate.config import Config
from sonar_migrate.context import RunContext
from sonar_migrate.errors import ConfigurationError
from sonar_migrate.extraction import SonarQubeExtractor
from sonar_migrate.orchestration import MigrationOrchestrator
from sonar_migrate.protocols import load_report_pipeline
from sonar_migrate.resilience import RemoteCallPolicy
from sonar_migrate.results import MigrationResults, ProjectResult, StepStatus
from sonar_migrate.transfer import TransferPipeline, discover_project

# Constants
MAX_ERRORS_TO_DISPLAY = 10

STATUS_STYLES = {
    StepStatus.SUCCESS: "green",
    StepStatus.PARTIAL: "yellow",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "dim",
}

# Create Typer app
app = typer.Typer(
    name="sonar-migrate",
    help="Migrate SonarQube projects and organization data to SonarCloud",
    add_completion=False,
)
state_app = typer.Typer(help="Inspect or reset per-project sync state")
app.add_typer(state_app, name="state")

console = Console()

ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration file (optional, uses environment variables by default)",
    ),
]
LogLevelOption = Annotated[
    str | None,
    typer.Option(
        "--log-level",
        "-l",
        help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL), overrides the configured level",
    ),
]
LogFormatOption = Annotated[
    str | None,
    typer.Option(
        "--log-format",
        "-f",
        help="Log format (json or text), overrides the configured format",
    ),
]


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    logging.basicConfig(
        format="%(message)s", stream=sys.stderr, level=log_level.upper(), force=True
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_file: Path | None) -> Config:
    """Load configuration from a file when given, else from the environment."""
    if config_file is not None:
        return Config.from_file(config_file)
    return Config.from_env()


def load_logged_config(
    config_file: Path | None, log_level: str | None, log_format: str | None
) -> Config:
    """Load configuration, then set up logging from the options or the config.

    Options given on the command line win over the ``logging`` section.
    """
    try:
        config = load_config(config_file)
    except Exception:
        setup_logging(log_level or "INFO", log_format or "json")
        raise
    setup_logging(log_level or config.logging.level, log_format or config.logging.format)
    return config


@app.command()
def migrate(
    config_file: ConfigOption = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            "-n",
            help="Extract and write mapping CSVs without changing SonarCloud",
        ),
    ] = False,
    mappings_dir: Annotated[
        Path | None,
        typer.Option(
            "--mappings-dir",
            "-m",
            help="Directory of edited mapping CSVs from a previous dry run",
        ),
    ] = None,
    wait: Annotated[
        bool,
        typer.Option("--wait", "-w", help="Wait for each uploaded analysis to finish"),
    ] = False,
    log_level: LogLevelOption = None,
    log_format: LogFormatOption = None,
) -> None:
    """Migrate every project and organization-wide resource to SonarCloud.

    Run with --dry-run first, review the CSVs written to
    <output_dir>/mappings, then rerun with --mappings-dir pointing at them.

    Examples:
        sonar-migrate migrate --config migrate.yaml --dry-run
        sonar-migrate migrate --config migrate.yaml --mappings-dir ./migration-output/mappings
    """
    logger = structlog.get_logger(__name__)

    try:
        config = load_logged_config(config_file, log_level, log_format)
        if dry_run:
            config.migrate.dry_run = True
        if mappings_dir is not None:
            config.migrate.mappings_dir = mappings_dir
        if wait:
            config.migrate.wait = True

        if config.migrate.dry_run:
            console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")

        results = asyncio.run(MigrationOrchestrator(config).migrate_all())
    except KeyboardInterrupt:
        console.print("\n[red]Migration interrupted by user[/red]")
        logger.info("Migration interrupted by user")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        logger.error("Migration failed", error=str(e), exc_info=True)
        sys.exit(1)

    _display_results(results)
    if results.dry_run:
        console.print(
            f"\n[green]Mapping CSVs written to {RunContext.from_config(config).mappings_dir}[/green]"
        )
    elif results.success:
        console.print("\n[green]Migration completed successfully![/green]")
    else:
        console.print("\n[yellow]Migration finished with errors[/yellow]")
        sys.exit(1)


async def _transfer_main(
    config: Config, project_key: str, org_key: str | None
) -> ProjectResult:
    if config.report_pipeline is None:
        raise ConfigurationError(
            "No scanner report pipeline configured (set 'report_pipeline')"
        )
    org = config.org(org_key) if org_key else config.organizations[0]
    context = RunContext.from_config(config)
    report_pipeline = load_report_pipeline(config.report_pipeline)
    source_policy = RemoteCallPolicy.from_config(config.rate_limit)
    dest_policy = RemoteCallPolicy.from_config(config.rate_limit)

    async with SonarQubeClient.from_config(config.source, source_policy) as source_client:
        async with SonarCloudClient.from_config(org, dest_policy) as dest_client:
            project = await discover_project(source_client, project_key)
            extractor = SonarQubeExtractor(source_client, context.limits)
            pipeline = TransferPipeline(
                context,
                extractor,
                dest_client,
                report_pipeline,
                org,
                source_client=source_client,
                project_bindings=await extractor.extract_bindings([project]),
            )
            return await pipeline.transfer_project(
                project, context.state_tracker_for(project_key), test_connections=True
            )


@app.command()
def transfer(
    project_key: Annotated[str, typer.Argument(help="SonarQube project key")],
    org_key: Annotated[
        str | None,
        typer.Option(
            "--org",
            "-o",
            help="Destination organization key (defaults to the first configured)",
        ),
    ] = None,
    config_file: ConfigOption = None,
    wait: Annotated[
        bool,
        typer.Option("--wait", "-w", help="Wait for each uploaded analysis to finish"),
    ] = False,
    log_level: LogLevelOption = None,
    log_format: LogFormatOption = None,
) -> None:
    """Transfer a single project with all of its branches."""
    logger = structlog.get_logger(__name__)

    try:
        config = load_logged_config(config_file, log_level, log_format)
        if wait:
            config.migrate.wait = True
        result = asyncio.run(_transfer_main(config, project_key, org_key))
    except KeyboardInterrupt:
        console.print("\n[red]Transfer interrupted by user[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Transfer failed: {e}[/red]")
        logger.error("Transfer failed", project=project_key, error=str(e), exc_info=True)
        sys.exit(1)

    _display_steps(result)
    if result.status == StepStatus.FAILED:
        sys.exit(1)


@state_app.command("show")
def state_show(
    project_key: Annotated[str, typer.Argument(help="SonarQube project key")],
    config_file: ConfigOption = None,
) -> None:
    """Show the sync state of one project."""
    setup_logging("WARNING", "text")
    try:
        config = load_config(config_file)
        tracker = RunContext.from_config(config).state_tracker_for(project_key)
        tracker.initialize()
    except Exception as e:
        console.print(f"[red]Failed to read state: {e}[/red]")
        sys.exit(1)

    summary = tracker.summary()
    table = Table(title=f"Sync state: {project_key}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("State file", str(tracker.storage.path))
    table.add_row("Last sync", summary["last_sync"] or "never")
    table.add_row("Processed issues", str(summary["processed_issues_count"]))
    table.add_row("Completed branches", ", ".join(summary["completed_branches"]) or "-")
    table.add_row("History entries", str(summary["sync_history_count"]))
    console.print(table)


@state_app.command("reset")
def state_reset(
    project_key: Annotated[str, typer.Argument(help="SonarQube project key")],
    config_file: ConfigOption = None,
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Reset without asking for confirmation")
    ] = False,
) -> None:
    """Forget all sync progress of one project."""
    setup_logging("WARNING", "text")
    try:
        config = load_config(config_file)
    except Exception as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if not yes and not typer.confirm(
        f"Reset sync state of {project_key}? The next run transfers everything again"
    ):
        console.print("Aborted")
        raise typer.Exit(1)

    tracker = RunContext.from_config(config).state_tracker_for(project_key)
    try:
        tracker.reset()
    except Exception as e:
        console.print(f"[red]Failed to reset state: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]State reset for {project_key}[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    from sonar_migrate import __version__

    console.print(f"sonar-migrate version {__version__}")


def _status_text(status: StepStatus) -> str:
    style = STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


def _display_steps(result: ProjectResult) -> None:
    table = Table(title=f"Project {result.project_key}: {_status_text(result.status)}")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for step in result.steps:
        table.add_row(step.step, _status_text(step.status), step.error or step.detail or "")
    console.print(table)
    if result.fatal_error:
        console.print(f"[red]{result.fatal_error}[/red]")


def _display_results(results: MigrationResults) -> None:
    """Display migration results in formatted tables.

    Args:
        results: Results of the run.
    """
    summary = results.summary()

    # Summary table
    summary_table = Table(title="Migration Summary")
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Count", style="magenta", justify="right")
    for key, value in summary.items():
        summary_table.add_row(key.replace("_", " ").capitalize(), str(value))

    console.print("\n")
    console.print(summary_table)

    # Project details table
    if results.projects:
        projects_table = Table(title="Project Details")
        projects_table.add_column("Project", style="cyan")
        projects_table.add_column("Organization")
        projects_table.add_column("Status")
        projects_table.add_column("Branches")
        projects_table.add_column("Failed steps", style="red")

        for project in results.projects:
            projects_table.add_row(
                project.project_key,
                project.org_key or "",
                _status_text(project.status),
                ", ".join(project.branches_transferred),
                ", ".join(s.step for s in project.failed_steps),
            )

        console.print("\n")
        console.print(projects_table)

    # Show errors if any
    if results.errors:
        console.print("\n[red]Errors encountered:[/red]")
        for i, error in enumerate(results.errors[:MAX_ERRORS_TO_DISPLAY], 1):
            console.print(f"  {i}. {error}")

        if len(results.errors) > MAX_ERRORS_TO_DISPLAY:
            console.print(
                f"  ... and {len(results.errors) - MAX_ERRORS_TO_DISPLAY} more errors"
            )


if __name__ == "__main__":
    app()
