"""CLI commands for sync configuration and conflict previews.

This module provides a command-line interface for inspecting and changing
the persisted sync settings, and for running conflict detection on two
snapshot files.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import click
from pydantic import BaseModel, ValidationError
from rich.console import Console
from rich.table import Table

from .config import (
    CONFLICT_CONFIG_KEY,
    SYNC_CONFIG_KEY,
    ConflictResolutionSettings,
    SyncSettings,
    YamlConfigStore,
    apply_updates,
)
from .detection import ConflictDetectionEngine
from .exceptions import ConflictResolutionError
from .models import EntityType, ExternalService, ResolutionStrategy, SyncMetadata, entity_from_dict
from .resolution import ConflictResolutionEngine
from .utils.datetime import parse_timestamp

console = Console()


def _settings_table(title: str, settings: BaseModel) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for name, value in settings.model_dump(mode="json").items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
        table.add_row(name, str(value))
    return table


def _parse_time(value: Optional[str], option: str):
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        raise click.BadParameter(f"not an ISO-8601 timestamp: {value}", param_hint=option)
    return parsed


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} must contain a JSON object")
    return data


@click.group(name="orbit-sync")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              help="Settings file (default: $ORBIT_SYNC_CONFIG or ~/.orbit/sync.yaml)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool):
    """Manage sync settings and preview conflicts."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = YamlConfigStore(config_path)


@cli.group("config")
def config_group():
    """Show or change persisted settings."""
    pass


@config_group.command("show")
@click.pass_obj
def show_config(store: YamlConfigStore):
    """Show sync and conflict resolution settings."""
    console.print(f"[dim]{store.path}[/dim]")
    console.print(_settings_table("Sync", store.load(SYNC_CONFIG_KEY, SyncSettings)))
    console.print(_settings_table("Conflict Resolution", store.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings)))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def set_config(store: YamlConfigStore, key: str, value: str):
    """Set a sync setting, e.g. `set background_sync_interval 30`."""
    settings = store.load(SYNC_CONFIG_KEY, SyncSettings)
    try:
        settings = apply_updates(settings, {key: value})
    except (ValueError, ValidationError) as e:
        raise click.ClickException(str(e))

    store.save(SYNC_CONFIG_KEY, settings)
    console.print(f"[green]✅ {key} = {getattr(settings, key)}[/green]")


@config_group.command("strategy")
@click.argument("strategy", type=click.Choice([s.value for s in ResolutionStrategy]))
@click.option("--service", type=click.Choice([s.value for s in ExternalService]),
              help="Only use this strategy for one service")
@click.option("--auto-resolve/--no-auto-resolve", default=None, help="Resolve conflicts without asking")
@click.pass_obj
def set_strategy(store: YamlConfigStore, strategy: str, service: Optional[str], auto_resolve: Optional[bool]):
    """Set the conflict resolution strategy."""
    settings = store.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings)

    updates: Dict[str, Any] = {}
    if service:
        per_service = dict(settings.per_service_strategy)
        per_service[ExternalService(service)] = ResolutionStrategy(strategy)
        updates["per_service_strategy"] = per_service
    else:
        updates["default_strategy"] = ResolutionStrategy(strategy)
    if auto_resolve is not None:
        updates["auto_resolve"] = auto_resolve

    settings = apply_updates(settings, updates)
    store.save(CONFLICT_CONFIG_KEY, settings)

    scope = service or "all services"
    console.print(f"[green]✅ Conflicts for {scope} resolve with {strategy}[/green]")
    if auto_resolve is not None:
        console.print(f"Auto-resolve: {'on' if auto_resolve else 'off'}")


@cli.command("diff")
@click.argument("local", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("remote", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--type", "entity_type", type=click.Choice([t.value for t in EntityType]),
              default=EntityType.TASK.value, show_default=True, help="Entity type of LOCAL")
@click.option("--service", type=click.Choice([s.value for s in ExternalService]),
              default=ExternalService.GOOGLE_TASKS.value, show_default=True, help="Service REMOTE came from")
@click.option("--last-synced", help="Last successful sync (ISO-8601)")
@click.option("--app-modified", help="Last local modification (ISO-8601)")
@click.option("--external-modified", help="Last remote modification (ISO-8601)")
@click.option("--strategy", type=click.Choice([s.value for s in ResolutionStrategy]),
              help="Preview the resolution with this strategy")
@click.pass_obj
def diff(store: YamlConfigStore, local: Path, remote: Path, entity_type: str, service: str,
         last_synced: Optional[str], app_modified: Optional[str], external_modified: Optional[str],
         strategy: Optional[str]):
    """Detect a conflict between a LOCAL snapshot and a REMOTE payload (JSON files)."""
    entity = entity_from_dict(EntityType(entity_type), _load_json(local))
    remote_payload = _load_json(remote)
    metadata = SyncMetadata(
        external_service=ExternalService(service),
        last_synced_at=_parse_time(last_synced, "--last-synced"),
        app_last_modified=_parse_time(app_modified, "--app-modified"),
        external_last_modified=_parse_time(external_modified, "--external-modified"),
    )

    conflict = ConflictDetectionEngine().detect(entity, remote_payload, metadata)
    if conflict is None:
        console.print("[green]No conflict[/green]")
        return

    table = Table(title=f"Conflict ({conflict.priority.value} priority)", show_header=True,
                  header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Mergeable", justify="center")
    for diff_field in conflict.conflict_fields:
        table.add_row(
            diff_field.field,
            str(diff_field.app_value),
            str(diff_field.external_value),
            "✅" if diff_field.can_merge else "❌",
        )
    console.print(table)

    if not strategy:
        return

    resolver = ConflictResolutionEngine(store.load(CONFLICT_CONFIG_KEY, ConflictResolutionSettings))
    try:
        resolution = resolver.resolve(conflict, strategy)
    except ConflictResolutionError as e:
        console.print(f"[yellow]⚠️  {e}[/yellow]")
        return

    console.print(f"[bold]Resolved with {resolution.strategy.value}:[/bold]")
    console.print_json(json.dumps(resolution.final_value, default=str))


def main():
    cli()


if __name__ == "__main__":
    main()
