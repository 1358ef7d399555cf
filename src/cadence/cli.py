"""CLI entry points for Cadence.

Commands:
    cadence validate RULES_FILE   — Validate a JSON rule file
    cadence evaluate RULES_FILE   — Run one evaluation pass against static facts
    cadence schedule RULES_FILE   — Preview timers for time-based rules
    cadence config show|path|init|get|set — Inspect or edit the config file
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli_w
import typer
from rich.console import Console
from rich.table import Table

import cadence
from cadence.automations.engine import EvaluateOptions
from cadence.automations.models import rule_from_dict
from cadence.automations.schedule import ScheduleParser
from cadence.automations.validation import validate_rule
from cadence.config import CadenceConfig, ConfigManager
from cadence.errors import ConfigError, RuleValidationError, ScheduleError
from cadence.logging_setup import setup_logging
from cadence.runtime import create_automation

console = Console()
err_console = Console(stderr=True)
app = typer.Typer(
    name="cadence",
    help="Rule-based automation core: validate, evaluate and preview automation rules.",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Inspect or edit the configuration file.")
app.add_typer(config_app, name="config")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config_dir: Path | None = typer.Option(
        None, "--config-dir", help="Directory holding config.toml"
    ),
) -> None:
    """Cadence automation CLI."""
    manager = ConfigManager(config_dir)
    config = manager.load()
    setup_logging(config.logging, verbose=verbose)
    ctx.obj = {"manager": manager, "config": config}


def _config(ctx: typer.Context) -> CadenceConfig:
    if ctx.obj and "config" in ctx.obj:
        return ctx.obj["config"]
    return CadenceConfig()


def _manager(ctx: typer.Context) -> ConfigManager:
    if ctx.obj and "manager" in ctx.obj:
        return ctx.obj["manager"]
    return ConfigManager()


def _read_rules_file(path: Path) -> list[dict[str, Any]]:
    """Read a JSON list of rules, or an object with a ``rules`` list."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        console.print(f"[red]Cannot read {path}: {exc}[/red]")
        raise typer.Exit(1) from None
    except json.JSONDecodeError as exc:
        console.print(f"[red]Invalid JSON in {path}: {exc}[/red]")
        raise typer.Exit(1) from None

    if isinstance(data, dict):
        data = data.get("rules", [])
    if not isinstance(data, list):
        console.print(f"[red]{path} must contain a list of rules[/red]")
        raise typer.Exit(1)
    return data


def _parse_fact(raw: str) -> tuple[str, Any]:
    """Split ``key=value``; the value is read as JSON, else kept as a string."""
    key, sep, value = raw.partition("=")
    if not sep or not key:
        console.print(f"[red]Facts must be in 'key=value' format, got {raw!r}[/red]")
        raise typer.Exit(1)
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


# ------------------------------------------------------------------
# cadence validate
# ------------------------------------------------------------------


@app.command()
def validate(
    rules_file: Path = typer.Argument(help="JSON file with automation rules"),
) -> None:
    """Validate every rule in a rule file."""
    rules = _read_rules_file(rules_file)

    table = Table(title="Rule Validation", border_style="cyan")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Errors", style="dim")

    invalid = 0
    for index, raw in enumerate(rules):
        rule_id = raw.get("id") if isinstance(raw, dict) else None
        name = raw.get("name", "") if isinstance(raw, dict) else ""
        try:
            errors = validate_rule(rule_from_dict(raw))
        except RuleValidationError as exc:
            errors = exc.errors
        if errors:
            invalid += 1
        status = "[red]INVALID[/red]" if errors else "[green]OK[/green]"
        table.add_row(str(rule_id or f"#{index}"), str(name or ""), status, "\n".join(errors))

    console.print()
    console.print(table)
    console.print(f"{len(rules) - invalid} valid, {invalid} invalid")
    if invalid:
        raise typer.Exit(1)


# ------------------------------------------------------------------
# cadence evaluate
# ------------------------------------------------------------------


@app.command()
def evaluate(
    ctx: typer.Context,
    rules_file: Path = typer.Argument(help="JSON file with automation rules"),
    fact: list[str] | None = typer.Option(
        None, "--fact", "-f", help="Fact as key=value (value parsed as JSON when possible)"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report matches without dispatching"),
    as_json: bool = typer.Option(False, "--json", help="Print fired actions as JSON"),
) -> None:
    """Load rules and run one evaluation pass with static facts."""
    rules = _read_rules_file(rules_file)
    facts = dict(_parse_fact(item) for item in fact or [])

    runtime = create_automation(_config(ctx))
    result = runtime.engine.load_rules(rules)
    for rule_id, message in result.skipped:
        err_console.print(f"[yellow]Skipped {rule_id or '?'}: {message}[/yellow]", highlight=False)

    fired = asyncio.run(
        runtime.engine.evaluate(facts, EvaluateOptions(dispatch=not dry_run))
    )

    if as_json:
        payload = [
            {
                "rule_id": item.rule_id,
                "rule_name": item.rule_name,
                "priority": item.priority,
                "action": item.action.type.value,
                "params": item.action.params,
                "dispatched": item.dispatched,
                "error": item.error,
            }
            for item in fired
        ]
        typer.echo(json.dumps(payload, default=str))
        return

    if not fired:
        console.print("[dim]No rules fired.[/dim]")
        return

    table = Table(title="Fired Actions", border_style="cyan")
    table.add_column("Rule", style="bold")
    table.add_column("Priority", justify="right")
    table.add_column("Action")
    table.add_column("Dispatched")
    for item in fired:
        dispatched = "[green]yes[/green]" if item.dispatched else "[yellow]no[/yellow]"
        table.add_row(item.rule_id, str(item.priority), item.action.type.value, dispatched)
    console.print()
    console.print(table)


# ------------------------------------------------------------------
# cadence schedule
# ------------------------------------------------------------------


@app.command()
def schedule(
    ctx: typer.Context,
    rules_file: Path = typer.Argument(help="JSON file with automation rules"),
    at: str | None = typer.Option(None, "--at", help="Preview as of HH:MM today"),
) -> None:
    """Show when each time-based rule would first fire and how it recurs."""
    now = datetime.now()
    if at is not None:
        try:
            hour, minute = ScheduleParser.parse_time(at)
        except ScheduleError as exc:
            console.print(f"[red]{exc.message}[/red]")
            raise typer.Exit(1) from None
        now = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    runtime = create_automation(_config(ctx))
    runtime.engine.load_rules(_read_rules_file(rules_file))

    table = Table(title="Scheduled Rules", border_style="cyan")
    table.add_column("ID", style="bold")
    table.add_column("Schedule")
    table.add_column("Next Fire")
    table.add_column("Delay (s)", justify="right")
    table.add_column("Every (s)", justify="right")

    rows = 0
    for rule in runtime.engine.list_rules():
        plan = runtime.engine.scheduler.preview(rule, now)
        if plan is None:
            continue
        spec = rule.trigger.schedule
        label = spec.type.value if spec else "?"
        if spec and spec.time:
            label = f"{label} {spec.time}"
        mode = " (polling)" if plan.polling else ""
        table.add_row(
            rule.id,
            label + mode,
            plan.next_fire.strftime("%Y-%m-%d %H:%M"),
            f"{plan.delay_seconds:.0f}",
            f"{plan.interval_seconds:.0f}",
        )
        rows += 1

    console.print()
    console.print(table)
    if not rows:
        console.print("[dim]No time-based rules.[/dim]")


# ------------------------------------------------------------------
# cadence config show / path / init / get / set
# ------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Print the effective configuration as TOML."""
    typer.echo(tomli_w.dumps(_config(ctx).model_dump()))


@config_app.command("path")
def config_path(ctx: typer.Context) -> None:
    """Print the config file location."""
    typer.echo(str(_manager(ctx).get_config_path()))


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a config file populated with defaults."""
    manager = _manager(ctx)
    if manager.exists() and not force:
        console.print(f"[yellow]Config already exists at {manager.get_config_path()}[/yellow]")
        raise typer.Exit(1)
    manager.save(CadenceConfig())
    console.print(f"[green]Wrote {manager.get_config_path()}[/green]")


@config_app.command("get")
def config_get(
    ctx: typer.Context,
    key: str = typer.Argument(help="Config key as section.field (e.g. 'engine.fact_cache_ttl_ms')"),
) -> None:
    """Print one config value."""
    try:
        value = _manager(ctx).get_value(key)
    except ConfigError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1) from None
    typer.echo(str(value))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(help="Config key as section.field (e.g. 'scheduler.enabled')"),
    value: str = typer.Argument(help="New value, coerced to the field's type"),
) -> None:
    """Update one config value and save the file."""
    try:
        config = _manager(ctx).set_value(key, value)
    except ConfigError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1) from None
    section, _, name = key.partition(".")
    console.print(f"[green]{key} = {getattr(getattr(config, section), name)}[/green]")


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(f"cadence {cadence.__version__}")
