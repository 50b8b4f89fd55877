"""CLI entrypoint for jido.

``jido do`` drives a coding agent through review rounds on the current
branch, then runs the safety gate over everything the rounds touched.
``jido check`` runs the same gate over an explicit list of files.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .agent_runner import ClaudeAgentRunner, MockAgentRunner
from .config import Config, SafetyConfig, load_project_config
from .controller import IterationController
from .errors import JidoError, SafetyViolationError
from .models import IterationContext, IterationOutcome
from .run_log import RunLogger
from .safety import (
    SafetyReport,
    check_test_requirements,
    create_safety_report,
    validate_files,
    validate_package_manifest_changes,
)
from .workspace import GitWorkspace

app = typer.Typer(
    name="jido",
    help="Iteratively resolve an issue with a coding agent, then gate the result.",
    add_completion=False,
)

console = Console()

ISSUE_KEY_RE = re.compile(r"^[A-Z]{1,10}-\d+$")

MANIFEST_FILES = ("package.json", "pyproject.toml")


def setup_logging(verbose: bool = False, level_name: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise use level_name.
        level_name: Level from configuration, e.g. ``JIDO_LOG_LEVEL``.
    """
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"jido version {__version__}")
        raise typer.Exit()


def fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(message)}")
    raise typer.Exit(1)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Iterative issue resolution with a coding agent."""
    pass


def _read_description(
    issue_key: str, description: Optional[str], description_file: Optional[Path]
) -> str:
    if description and description_file:
        fail("Use either --description or --description-file, not both")
    if description_file:
        try:
            return description_file.read_text(encoding="utf-8")
        except OSError as exc:
            fail(f"Cannot read description file {description_file}: {exc}")
    return description or f"Resolve issue {issue_key}."


def _manifest_checks(files: list[str], repo_path: Path, safety: SafetyConfig) -> dict[str, bool]:
    """Run manifest checks for any modified package manifests."""
    checks: dict[str, bool] = {}
    for path in files:
        if Path(path).name not in MANIFEST_FILES:
            continue
        try:
            verdict = validate_package_manifest_changes(repo_path / path, safety)
        except SafetyViolationError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            checks[f"manifest {path}"] = False
            continue
        for warning in verdict.warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(path)}: {escape(warning)}")
        checks[f"manifest {path}"] = True
    return checks


def run_safety_gate(
    files: list[str],
    repo_path: Path,
    safety: SafetyConfig,
    tests_were_run: bool,
) -> SafetyReport:
    """Validate files and test requirements and combine them into a report."""
    validation = validate_files(files, repo_path, safety)
    tests = check_test_requirements(files, repo_path, safety, tests_were_run=tests_were_run)
    return create_safety_report(validation, tests, _manifest_checks(files, repo_path, safety))


def _display_outcome(outcome: IterationOutcome, start_iteration: int = 1) -> None:
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("#", style="dim", width=3)
    table.add_column("Summary", width=50)
    table.add_column("Files", width=6)
    table.add_column("Commit", width=9)
    table.add_column("Tests", width=6)
    table.add_column("Status", width=10)

    for number, result in enumerate(outcome.results, start=start_iteration):
        status = "[green]Done[/green]" if result.success else "[red]Failed[/red]"
        if result.issue_resolved:
            status = "[green]Resolved[/green]"
        table.add_row(
            str(number),
            escape(result.summary[:50]),
            str(len(result.files_modified)),
            (result.commit_hash or "-")[:7],
            "yes" if result.tests_run else "no",
            status,
        )

    console.print()
    console.print(table)
    console.print()
    console.print(
        f"[bold]Iterations:[/bold] {outcome.successful_iterations}/{outcome.iterations_run} successful"
    )
    console.print(f"[bold]Stop reason:[/bold] {outcome.stop_reason.value}")
    console.print(f"[bold]Files modified:[/bold] {len(outcome.all_files_modified)}")

    for result in outcome.results:
        for error in result.errors or ():
            console.print(f"  [red]-[/red] {escape(error)}")
        if result.review_notes:
            console.print(f"  [dim]Review notes:[/dim] {escape(result.review_notes)}")


def _display_report(report: SafetyReport) -> None:
    style = "green" if report.overall else "red"
    title = "SAFETY CHECKS PASSED" if report.overall else "SAFETY CHECKS FAILED"
    console.print(Panel(
        f"[bold {style}]{title}[/bold {style}]\n\n{escape(report.summary)}",
        border_style=style,
    ))
    for error in report.file_validation.errors:
        console.print(f"  [red]-[/red] {escape(error)}")


@app.command("do")
def do(
    issue_key: str = typer.Argument(..., help="Issue key, e.g. PROJ-123."),
    iterations: Optional[int] = typer.Option(
        None, "--iterations", "-i", help="Maximum number of rounds (default 2)."
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Agent model."),
    repo: Optional[Path] = typer.Option(
        None, "--repo", "-r", help="Repository to work in. Defaults to the current directory."
    ),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", help="Issue description text."
    ),
    description_file: Optional[Path] = typer.Option(
        None, "--description-file", help="Read the issue description from a file."
    ),
    single_commit: bool = typer.Option(
        False, "--single-commit", help="Ask the agent for one commit at the end."
    ),
    resume: bool = typer.Option(
        False, "--resume", help="Continue after rounds already committed on this branch."
    ),
    skip_tests: bool = typer.Option(
        False, "--skip-tests", help="Treat the test requirement as satisfied."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Allow a dirty tree, use the mock agent and never fail the gate."
    ),
    mock: bool = typer.Option(False, "--mock", help="Use the mock agent."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose output."),
) -> None:
    """Resolve an issue through iterative agent rounds.

    Examples:
        jido do PROJ-123 --description-file issue.md

        jido do PROJ-123 --iterations 4 --model opus --single-commit

        jido do PROJ-123 --resume
    """
    if not ISSUE_KEY_RE.match(issue_key):
        fail(f"Invalid issue key {issue_key!r}; expected a key like PROJ-123")

    repo_path = (repo or Path.cwd()).resolve()
    if not repo_path.exists():
        fail(f"Repository does not exist: {repo_path}")

    issue_text = _read_description(issue_key, description, description_file)

    try:
        config = Config.from_env(repo_path)
    except JidoError as exc:
        fail(str(exc))

    setup_logging(verbose, config.log_level)
    logger = logging.getLogger(__name__)

    if iterations is not None:
        config.iterations = iterations
    if model:
        config.agent = replace(config.agent, model=model)
    if mock or dry_run:
        config.mock_mode = True

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    try:
        workspace = GitWorkspace(repo_path)
    except JidoError as exc:
        fail(str(exc))

    if workspace.is_dirty() and not dry_run:
        dirty = workspace.uncommitted_files()
        fail(
            f"You have {len(dirty)} uncommitted change(s). "
            "Please commit or stash them first."
        )

    start_iteration = 1
    if resume:
        try:
            previous = workspace.infer_previous_iterations()
        except JidoError as exc:
            fail(str(exc))
        if previous >= config.iterations:
            console.print(
                f"[yellow]All {config.iterations} iteration(s) already ran "
                f"({previous} commit(s) on this branch); nothing to resume.[/yellow]"
            )
            raise typer.Exit(0)
        start_iteration = previous + 1
        console.print(f"[dim]Resuming at iteration {start_iteration}[/dim]")

    if config.mock_mode:
        runner = MockAgentRunner()
        console.print("[yellow]Running with the mock agent[/yellow]")
    else:
        runner = ClaudeAgentRunner.from_settings(config.agent)
        if not runner.check_installed():
            fail(f"Agent CLI '{config.agent.command}' not found or not working")

    run_logger = RunLogger(config.log_dir or repo_path / ".jido" / "logs", issue_key)
    controller = IterationController(runner, settings=config.agent, run_logger=run_logger)

    context = IterationContext(
        issue_identifier=issue_key,
        working_directory=repo_path,
        total_iterations=config.iterations,
        issue_description=issue_text,
        single_commit=single_commit,
    )

    console.print(
        f"\n[bold]Resolving {issue_key}[/bold] "
        f"({config.iterations} iteration(s), model {config.agent.model})\n"
    )

    try:
        outcome = controller.run(context, start_iteration=start_iteration)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; agent process stopped.[/yellow]")
        run_logger.log_error("Interrupted by user")
        run_logger.finalize(success=False)
        raise typer.Exit(130)
    except JidoError as exc:
        run_logger.log_error(str(exc))
        run_logger.finalize(success=False)
        fail(str(exc))

    _display_outcome(outcome, start_iteration)

    files = outcome.all_files_modified
    report = run_safety_gate(
        files, repo_path, config.safety, tests_were_run=outcome.tests_were_run or skip_tests
    )
    run_logger.log_safety_report(report.to_dict())
    log_file = run_logger.finalize(success=report.overall and outcome.successful_iterations > 0)

    console.print()
    _display_report(report)
    console.print(f"[dim]Log file: {log_file}[/dim]")

    if not report.overall:
        if dry_run:
            logger.warning("Safety checks failed (dry run, not failing)")
            return
        raise typer.Exit(1)


@app.command("check")
def check(
    paths: list[str] = typer.Argument(..., help="Files to validate, relative to the repository."),
    repo: Optional[Path] = typer.Option(
        None, "--repo", "-r", help="Repository root. Defaults to the current directory."
    ),
    tests_run: bool = typer.Option(
        False, "--tests-run", help="Tests were already run for these changes."
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose output."),
) -> None:
    """Run the safety gate over a list of files."""
    setup_logging(verbose)

    repo_path = (repo or Path.cwd()).resolve()
    if not repo_path.exists():
        fail(f"Repository does not exist: {repo_path}")

    try:
        _agent, safety = load_project_config(repo_path)
    except JidoError as exc:
        fail(str(exc))

    report = run_safety_gate(list(paths), repo_path, safety, tests_were_run=tests_run)
    _display_report(report)

    if not report.overall:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
