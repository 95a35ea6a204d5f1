# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from stageci.controller import PipelineController
from stageci.errors import ConfigurationError
from stageci.run import RunReport
from stageci.ui.console import Console, get_console, set_console

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """stageci: run a pipeline of dependent jobs with bounded concurrency."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("config_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--concurrency",
    "-j",
    default=None,
    type=click.IntRange(min=1),
    envvar="STAGECI_CONCURRENCY",
    help="Maximum number of jobs running at once (default: CPU count - 1)",
)
@click.option("--dry-run", is_flag=True, default=False, help="Validate and print the plan without running anything")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False, path_type=Path), help="Write the JSON run report here")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-step timeout in seconds")
@click.option(
    "--scheduling-timeout",
    default=None,
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds a job may wait for a worker with its runtime label",
)
@click.option("--workspace", default=".", show_default=True, type=click.Path(file_okay=False, path_type=Path), help="Directory step workdirs are relative to")
def run(config_path, concurrency, dry_run, report_path, timeout, scheduling_timeout, workspace):
    """Run the pipeline defined in CONFIG_PATH."""
    console = get_console()

    try:
        controller = PipelineController.from_file(
            config_path,
            workspace=workspace,
            concurrency=concurrency,
            default_timeout=timeout,
            scheduling_timeout=scheduling_timeout,
            console=console,
        )
    except ConfigurationError as e:
        console.print_error(
            "Invalid pipeline",
            str(e),
            suggestion=f"Fix {config_path} and run again:\n  stageci run --dry-run {config_path}",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    if dry_run:
        console.print_plan(controller.graph, controller.plan())
        sys.exit(EXIT_SUCCESS)

    try:
        console.print_run_started(
            pipeline=controller.pipeline.name,
            config=str(config_path),
            job_count=len(controller.graph),
            concurrency=controller.concurrency,
        )
        report = controller.run()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)

    console.print_results(report)

    if report_path is not None:
        written = report.write(report_path)
        console.print_info(f"Report written to {written}")

    if controller.interrupted:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_SUCCESS if report.success else EXIT_FAILURE)


@cli.command()
@click.argument("report_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def show(report_path):
    """Print a saved run report; exits 1 if that run failed."""
    console = get_console()
    try:
        report = RunReport.load(report_path)
    except (ValueError, KeyError) as e:
        console.print_error("Unreadable report", f"Could not parse {report_path}", details=[str(e)])
        sys.exit(EXIT_CONFIG_ERROR)

    console.print_results(report)
    sys.exit(EXIT_SUCCESS if report.success else EXIT_FAILURE)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
