import json
from datetime import datetime
from pathlib import Path

import click
import yaml

from reincarnation_engine.config import check_cron_time
from reincarnation_engine.config_manager import ConfigManager
from reincarnation_engine.decision import DecisionEngine
from reincarnation_engine.host import JobRegistry, QueueingRestartAction
from reincarnation_engine.periodic import PeriodicSweep


def _load_registry(history_file: Path, config_manager: ConfigManager) -> JobRegistry:
    raw = history_file.read_text()
    try:
        return JobRegistry.from_yaml(history_file, raw, restart_action=QueueingRestartAction(),
                                     local_config_source=config_manager.get_local)
    except (ValueError, KeyError, yaml.YAMLError) as e:
        raise click.ClickException(f"Could not load history file {history_file}: {e}")


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Path to reincarnation.yaml.")
@click.pass_context
def cli(ctx, config_path):
    """Reincarnation: automatically restarts failed builds."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _config_manager(ctx) -> ConfigManager:
    if "config_manager" not in ctx.obj:
        ctx.obj["config_manager"] = ConfigManager(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config_manager"]


@cli.command("check-cron")
@click.argument("cron_time")
def check_cron(cron_time: str):
    """Validates a cron time string."""
    valid, message = check_cron_time(cron_time)
    click.echo(message)
    if not valid:
        raise SystemExit(1)


@cli.command("show-config")
@click.pass_context
def show_config(ctx):
    """Prints the effective global and local configuration."""
    snapshot = _config_manager(ctx).snapshot
    click.echo(json.dumps(snapshot.to_dict(), indent=2))


@cli.command("evaluate")
@click.argument("history_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--job", "job_name", default=None, help="Only evaluate this job.")
@click.pass_context
def evaluate(ctx, history_file: Path, job_name):
    """Dry-runs the after-build decision for the latest build of each job in HISTORY_FILE."""
    config_manager = _config_manager(ctx)
    registry = _load_registry(history_file, config_manager)
    engine = DecisionEngine(registry, config_provider=config_manager.get_global)

    jobs = registry.list_jobs()
    if job_name:
        jobs = [job for job in jobs if job.name == job_name]
        if not jobs:
            raise click.ClickException(f"Job '{job_name}' not found in {history_file}.")

    for job in jobs:
        build = job.latest_build()
        if build is None:
            click.echo(f"- {job.name}: no builds")
            continue
        decisions = engine.evaluate(build)
        if not decisions:
            click.echo(f"- {job.name} #{build.number} ({build.outcome.value}): no restart")
        for decision in decisions:
            click.echo(f"- {job.name} #{build.number} ({build.outcome.value}): restart [{decision.category.value}] {decision.reason}")


@cli.command("sweep")
@click.argument("history_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--at", "at", type=click.DateTime(formats=["%Y-%m-%d %H:%M"]), default=None,
              help="Pretend the tick happens at this time (default: now).")
@click.pass_context
def sweep(ctx, history_file: Path, at):
    """Dry-runs one periodic reincarnation tick against HISTORY_FILE."""
    config_manager = _config_manager(ctx)
    registry = _load_registry(history_file, config_manager)
    periodic = PeriodicSweep(registry, config_provider=config_manager.get_global)

    report = periodic.on_tick(now=at or datetime.now())
    if report.skipped_reason:
        click.echo(f"Tick skipped: {report.skipped_reason}.")
        return
    click.echo(f"Evaluated {report.evaluated} jobs, {report.restarts} restarts.")
    for decision in report.decisions:
        click.echo(f"- {decision.job_name} #{decision.build_number}: {decision.reason}")
    for failed in report.failed_jobs:
        click.echo(f"- {failed}: evaluation failed, see log")


if __name__ == '__main__':
    cli()
