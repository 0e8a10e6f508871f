"""CLI commands for battery-warden."""

import click


def _load_config():
    """Load config, exiting with a message if the file is invalid."""
    from battery_warden.config import Config

    try:
        return Config.load()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _setup(config):
    """Configure logging and build the engine for one command."""
    from battery_warden import logging as console
    from battery_warden.enforcer import build_engine

    console.configure(config)
    return build_engine(config)


@click.group()
@click.version_option(package_name="battery-warden")
def main() -> None:
    """Keep an Android app exempt from battery optimization over adb."""
    pass


@main.command()
@click.option("--simple", is_flag=True, help="Silent request plus one short prompt only")
@click.option("--no-interactive", is_flag=True, help="Never prompt, open settings directly")
def force(simple: bool, no_interactive: bool) -> None:
    """Run the exemption cascade now."""
    import asyncio

    from battery_warden.presenter import ConsolePresenter

    config = _load_config()
    engine = _setup(config)
    presenter = ConsolePresenter(attached=False if no_interactive else None)

    async def run():
        task = engine.simple_force(presenter) if simple else engine.force_whitelisting(presenter)
        report = await task
        await presenter.drain()
        return report

    report = asyncio.run(run())

    if report.already_exempt:
        click.echo(f"{config.device.package}: already exempt")
        return
    click.echo(f"Strategy: {report.strategy_used}")
    click.echo(f"Exempt after re-check: {'yes' if report.verified else 'no'}")
    if not report.verified:
        raise SystemExit(1)


@main.command()
def check() -> None:
    """Check the exemption and enforce it silently if missing."""
    import asyncio

    config = _load_config()
    engine = _setup(config)

    async def run():
        return await engine.check_and_update_whitelist()

    report = asyncio.run(run())
    exempt = report.already_exempt or bool(report.verified)
    click.echo(f"{config.device.package}: {'exempt' if exempt else 'not exempt'}")
    if not exempt:
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Quick exemption and ledger summary."""
    config = _load_config()
    engine = _setup(config)

    exempt = engine.is_in_battery_whitelist()
    click.echo(f"Package: {config.device.package}")
    click.echo(f"Exempt: {'yes' if exempt else 'no'}")

    snap = engine.ledger.snapshot()
    click.echo(f"Attempts: {snap.total_attempts} ({snap.successful_attempts} successful)")
    if snap.last_attempt_time is not None:
        result = "success" if snap.last_success else "failed"
        click.echo(
            f"Last attempt: {snap.last_attempt_time:%Y-%m-%d %H:%M} "
            f"({result}, {snap.last_strategy or 'none'})"
        )
    if config.pid_path.exists():
        click.echo(f"Watch: running (pid file {config.pid_path})")
    else:
        click.echo("Watch: stopped")


@main.command()
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
def history(fmt: str) -> None:
    """Show the most recent cascade attempts."""
    import json

    from battery_warden.ledger import AttemptLedger

    config = _load_config()
    ledger = AttemptLedger.from_config(config)
    lines = ledger.history()

    if fmt == "json":
        snap = ledger.snapshot()
        click.echo(
            json.dumps(
                {
                    "total_attempts": snap.total_attempts,
                    "successful_attempts": snap.successful_attempts,
                    "history": lines,
                },
                indent=2,
            )
        )
        return

    if not lines:
        click.echo("No attempts recorded.")
        return
    for line in lines:
        click.echo(line)


@main.command()
@click.option("--copy", "copy_out", is_flag=True, help="Copy to the clipboard as well")
def debug(copy_out: bool) -> None:
    """Print debug info about the device and ledger."""
    from battery_warden.presenter import ConsolePresenter

    config = _load_config()
    engine = _setup(config)

    click.echo(engine.get_debug_info())
    if copy_out and not engine.copy_debug_info_to_clipboard(ConsolePresenter()):
        click.echo("Clipboard unavailable", err=True)
        raise SystemExit(1)


@main.command("reset-prompts")
@click.confirmation_option(prompt="Allow every prompt to be shown again?")
def reset_prompts() -> None:
    """Restore the full prompt budget."""
    from battery_warden.ledger import AttemptLedger

    config = _load_config()
    AttemptLedger.from_config(config).reset_prompts()
    click.echo("Prompt counters reset")


@main.command()
@click.option("--interval", "-i", type=float, default=None, help="Minutes between checks")
def watch(interval: float | None) -> None:
    """Re-check the exemption periodically until interrupted."""
    import asyncio

    from battery_warden import logging as console
    from battery_warden.watcher import run_watch

    if interval is not None and interval <= 0:
        raise click.BadParameter("must be > 0", param_hint="--interval")

    config = _load_config()
    console.configure(config)
    try:
        asyncio.run(run_watch(config, interval))
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[device]")
    click.echo(f"  package = {cfg.device.package}")
    click.echo(f"  serial = {cfg.device.serial or '(any)'}")
    click.echo(f"  adb_path = {cfg.device.adb_path}")
    click.echo(f"  adb_timeout = {cfg.device.adb_timeout}")
    click.echo()
    click.echo("[enforcer]")
    enforcer = cfg.enforcer
    click.echo(f"  verify_delay = {enforcer.verify_delay}")
    click.echo(f"  history_limit = {enforcer.history_limit}")
    click.echo(f"  min_interactive_sdk = {enforcer.min_interactive_sdk}")
    click.echo(f"  standard_dialog_max = {enforcer.standard_dialog_max}")
    click.echo(f"  vendor_guide_max = {enforcer.vendor_guide_max}")
    click.echo(f"  critical_warning_max = {enforcer.critical_warning_max}")
    click.echo(f"  watch_interval_minutes = {enforcer.watch_interval_minutes}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  log_max_bytes = {cfg.system.log_max_bytes}")
    click.echo(f"  log_backup_count = {cfg.system.log_backup_count}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from battery_warden.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
