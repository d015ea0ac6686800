# cli.py
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import click

from formica.orchestrator import Orchestrator, report_no_jobs
from formica.registry import JobRegistry, NoJobsFound
from formica.settings import EXIT_FORCED_TERMINATION, EXIT_INTERRUPTED, ON_BUSY_POLICIES, Settings
from formica.ui.console import Console, get_console, set_console


def configure_logging(debug: bool) -> None:
    """Root logging setup; FORMICA_LOG_LEVEL wins over the --debug flag."""
    level_name = os.getenv("FORMICA_LOG_LEVEL") or ("DEBUG" if debug else "INFO")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        force=True,
    )


def load_settings(**overrides) -> Settings:
    """Environment settings with CLI overrides; exits on invalid values."""
    console = get_console()
    try:
        settings = Settings.from_env().with_overrides(**overrides)
        settings.validate()
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(2)
    console.print_debug(f"Settings: {settings}")
    return settings


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """Formica CI: a small script-driven CI job orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config-dir", type=click.Path(path_type=Path), default=None, help="Configuration directory (default: formica_conf)")
@click.option("--queue-dir", type=click.Path(path_type=Path), default=None, help="Queue directory watched for triggers (default: queue)")
@click.option("--update-interval", type=float, default=None, help="Seconds between configuration updates")
@click.option("--poll-interval", type=float, default=None, help="Seconds between queue polls")
@click.option(
    "--on-busy",
    type=click.Choice(ON_BUSY_POLICIES),
    default=None,
    help="What to do when a running job is triggered again",
)
@click.option("--allow-empty/--no-allow-empty", default=None, help="Keep running when no jobs are defined yet")
@click.pass_context
def run(ctx, config_dir, queue_dir, update_interval, poll_interval, on_busy, allow_empty):
    """Synchronize the configuration and serve queued jobs until interrupted."""
    console = get_console()
    settings = load_settings(
        config_dir=config_dir,
        queue_dir=queue_dir,
        update_interval=update_interval,
        poll_interval=poll_interval,
        on_busy=on_busy,
        allow_empty=allow_empty,
    )

    try:
        code = Orchestrator(settings, console=console).run()
    except KeyboardInterrupt:
        # Interrupted before the shutdown handler was installed.
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if code == EXIT_FORCED_TERMINATION:
        # No cleanup on the last escalation level: skip atexit and thread joins.
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(code)
    sys.exit(code)


@cli.command()
@click.option("--config-dir", type=click.Path(path_type=Path), default=None, help="Configuration directory (default: formica_conf)")
def jobs(config_dir):
    """Scan the configuration directory and list the jobs found."""
    console = get_console()
    settings = load_settings(config_dir=config_dir)
    registry = JobRegistry(
        settings.config_root,
        agent_init_prefix=settings.agent_init_prefix,
        agent_cleanup_prefix=settings.agent_cleanup_prefix,
        step_prefix=settings.step_prefix,
    )
    try:
        catalog = registry.rescan()
    except NoJobsFound as e:
        sys.exit(report_no_jobs(e, console))
    console.print_catalog(catalog)


@cli.command()
@click.argument("job_name")
@click.option("--queue-dir", type=click.Path(path_type=Path), default=None, help="Queue directory watched for triggers (default: queue)")
def trigger(job_name, queue_dir):
    """Queue JOB_NAME for a running orchestrator to pick up."""
    console = get_console()
    settings = load_settings(queue_dir=queue_dir)
    if not job_name.strip() or "/" in job_name or os.sep in job_name:
        console.print_error(
            "Invalid job name",
            f"{job_name!r} cannot be used as a trigger name.",
            suggestion="Use a job folder name (or part of it), e.g.: formica trigger integration_test",
        )
        sys.exit(2)

    queue_root = settings.queue_root
    queue_root.mkdir(parents=True, exist_ok=True)
    # Hidden while being written; the poller skips dotfiles.
    tmp = queue_root / f".{job_name}.tmp"
    tmp.write_text(job_name + "\n", encoding="utf-8")
    target = queue_root / job_name
    suffix = 1
    while target.exists():
        target = queue_root / f"{job_name}.{suffix}"
        suffix += 1
    tmp.replace(target)
    console.print_info(f"Queued {job_name} ({target})")


if __name__ == "__main__":
    cli()
