#!/usr/bin/env python3
import ast
import asyncio
import click
import sys
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table

from quarry.core import (
    ConfigError, ConfigManager, QuarryError, get_logger, handle_exception, log_context, set_config, setup_logging,
)
from quarry.plugins import InstallResult, OperationResult, PluginManager
from quarry import __version__

console = Console()
logger = get_logger("quarry.cli")


def _manager(ctx) -> PluginManager:
    config = ctx.obj["config"]
    valid, errors = config.validate()
    if not valid:
        raise ConfigError("plugins", "; ".join(errors))

    manager = PluginManager(config)
    manager.initialize()
    return manager


def _report_install(result: InstallResult, what: str):
    if result.success:
        action = "Updated" if result.updated else "Installed"
        console.print(f"[green]✓[/green] {action} {result.plugin_id} v{result.version}")
        return

    console.print(f"[red]✗[/red] Failed to install {what} ({result.kind} error):")
    for error in result.errors:
        console.print(f"  - {error}")
    sys.exit(1)


def _report_operation(result: OperationResult, message: str):
    if result.success:
        console.print(f"[green]✓[/green] {message}")
    else:
        console.print(f"[red]✗[/red] {result.reason}")
        sys.exit(1)


def _parse_value(value: str):
    try:
        return ast.literal_eval(value)
    except (ValueError, SyntaxError):
        return value


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True), help='Config file path')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config: Optional[str], debug: bool):
    """Quarry plugin runtime CLI"""
    ctx.ensure_object(dict)

    config_path = Path(config) if config else None
    config_manager = ConfigManager(config_path)
    set_config(config_manager)
    ctx.obj["config"] = config_manager

    setup_logging(config_manager, level="DEBUG" if debug else None)

    if debug:
        console.print(f"[yellow]Debug mode enabled[/yellow]")


@cli.command()
@click.pass_context
def info(ctx):
    """Show runtime information"""
    config = ctx.obj['config']

    table = Table(title="Quarry Plugin Runtime")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Config File", str(config.config_path or "Using defaults"))
    table.add_row("Plugin Store", str(config.get_path("plugins.store_dir")))
    table.add_row("Bundled Dirs", ", ".join(config.get("plugins.bundled_dirs", [])))
    table.add_row("Registry", str(config.get("plugins.registry_url")))
    table.add_row("Public Access", str(config.public_access))
    table.add_row("Auto-disable After", str(config.get("plugins.auto_disable_threshold", 0)))

    console.print(table)


@cli.command('list')
@click.pass_context
def plugin_list(ctx):
    """List installed plugins"""
    manager = _manager(ctx)
    plugins = manager.get_all()

    if not plugins:
        console.print("[yellow]No plugins installed[/yellow]")
        return

    table = Table(title="Installed Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Enabled", style="yellow")
    table.add_column("Bundled")
    table.add_column("Description", style="white")

    for state in plugins:
        description = state.manifest.description
        table.add_row(
            state.id,
            state.manifest.version,
            "yes" if state.enabled else "no",
            "yes" if state.is_bundled else "",
            description[:50] + "..." if len(description) > 50 else description,
        )

    console.print(table)
    manager.shutdown()


@cli.command('install-url')
@click.argument('url')
@click.option('--timeout', '-t', type=float, help='Download timeout in seconds')
@click.pass_context
def install_url(ctx, url: str, timeout: Optional[float]):
    """Install a plugin from a URL"""
    manager = _manager(ctx)

    with console.status(f"Installing plugin from {url}..."), log_context(logger, command="install-url", url=url):
        result = asyncio.run(manager.install_from_url(url, timeout))

    manager.shutdown()
    _report_install(result, url)


@cli.command('install-archive')
@click.argument('archive', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def install_archive(ctx, archive: str):
    """Install a plugin from a zip archive"""
    manager = _manager(ctx)
    path = Path(archive)

    with console.status(f"Installing plugin from {path.name}..."), \
            log_context(logger, command="install-archive", archive=str(path)):
        result = asyncio.run(manager.install_from_archive(path.read_bytes(), path.name))

    manager.shutdown()
    _report_install(result, path.name)


@cli.command('install-registry')
@click.argument('plugin_id')
@click.pass_context
def install_registry(ctx, plugin_id: str):
    """Install a plugin from the registry"""
    manager = _manager(ctx)

    with console.status(f"Installing {plugin_id} from registry..."), \
            log_context(logger, command="install-registry", plugin_id=plugin_id):
        result = asyncio.run(manager.install_from_registry(plugin_id))

    manager.shutdown()
    _report_install(result, plugin_id)


@cli.command()
@click.option('--refresh', is_flag=True, help='Bypass the registry cache')
@click.option('--search', '-s', 'query', help='Filter by id, name, description or tag')
@click.pass_context
def registry(ctx, refresh: bool, query: Optional[str]):
    """Browse the plugin registry"""
    manager = _manager(ctx)

    async def browse():
        if query:
            return await manager.search_registry(query, force=refresh)
        return await manager.fetch_registry(force=refresh)

    try:
        plugins = asyncio.run(browse())
    finally:
        manager.shutdown()

    if not plugins:
        console.print("[yellow]No plugins found[/yellow]")
        return

    table = Table(title="Registry Plugins")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Version")
    table.add_column("Installed", style="yellow")
    table.add_column("Description", style="white")

    for plugin in plugins:
        table.add_row(
            plugin.id,
            plugin.name,
            plugin.version or "",
            "yes" if manager.is_installed(plugin.id) else "",
            plugin.description[:50] + "..." if len(plugin.description) > 50 else plugin.description,
        )

    console.print(table)


@cli.command()
@click.argument('plugin_id')
@click.pass_context
def toggle(ctx, plugin_id: str):
    """Enable or disable a plugin"""
    manager = _manager(ctx)
    result = manager.toggle_plugin(plugin_id)
    state = "enabled" if manager.is_enabled(plugin_id) else "disabled"
    manager.shutdown()
    _report_operation(result, f"Plugin {plugin_id} {state}")


@cli.command()
@click.argument('plugin_id')
@click.option('--reason', '-r', help='Reason recorded in the audit trail')
@click.pass_context
def disable(ctx, plugin_id: str, reason: Optional[str]):
    """Disable a plugin"""
    manager = _manager(ctx)
    result = manager.disable_plugin(plugin_id, reason, trigger="user")
    manager.shutdown()
    _report_operation(result, f"Plugin {plugin_id} disabled")


@cli.command()
@click.argument('plugin_id')
@click.confirmation_option(prompt='Are you sure you want to uninstall this plugin?')
@click.pass_context
def uninstall(ctx, plugin_id: str):
    """Uninstall a plugin"""
    manager = _manager(ctx)
    result = manager.uninstall_plugin(plugin_id)
    manager.shutdown()
    _report_operation(result, f"Plugin {plugin_id} uninstalled")


@cli.group()
@click.pass_context
def settings(ctx):
    """Per-plugin settings"""
    pass


@settings.command('get')
@click.argument('plugin_id')
@click.argument('key', required=False)
@click.pass_context
def settings_get(ctx, plugin_id: str, key: Optional[str]):
    """Show a plugin's settings"""
    manager = _manager(ctx)
    if not manager.is_installed(plugin_id):
        console.print(f"[red]Plugin {plugin_id} is not installed[/red]")
        sys.exit(1)

    values = manager.get_settings(plugin_id)
    manager.shutdown()

    if key:
        console.print(f"{key} = {values.get(key)!r}")
        return

    table = Table(title=f"Settings for {plugin_id}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for name, value in sorted(values.items()):
        table.add_row(name, repr(value))
    console.print(table)


@settings.command('set')
@click.argument('plugin_id')
@click.argument('key')
@click.argument('value')
@click.pass_context
def settings_set(ctx, plugin_id: str, key: str, value: str):
    """Set a plugin setting"""
    manager = _manager(ctx)
    parsed_value = _parse_value(value)

    manager.set_setting(plugin_id, key, parsed_value)
    manager.shutdown()

    console.print(f"[green]✓[/green] Set {plugin_id}.{key} = {parsed_value!r}")


def main():
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(0)
    except QuarryError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)
    except Exception as e:
        error = handle_exception(e, logger, "cli")
        console.print(f"[red]Error: {error.message}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
