# archcrypt/cli.py
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from archcrypt import core
from archcrypt.config.models import ProvisioningConfig
from archcrypt.executors.disk import PartitionPlanner
from archcrypt.executors.lvm import VolumeManager
from archcrypt.executors.mounts import MountPlanner
from archcrypt.provision import Provisioner
from archcrypt.utils.exceptions import ProvisioningError
from archcrypt.utils.executor import Executor
from archcrypt.utils.logger import initialize_app_logger

CONFIG_ERROR_EXIT = 2

SECRETS = (
    ("password", "User password"),
    ("luks_passphrase", "LUKS passphrase"),
)

app = typer.Typer(
    help="Provision a disk into an encrypted (LUKS + LVM) UEFI Arch Linux install.",
    no_args_is_help=True,
    add_completion=False,
)


def load_config(path: Path, prompt_secrets: bool = True) -> ProvisioningConfig:
    """
    Loads the TOML config. Secrets missing from the file are asked for with
    hidden, confirmed prompts so they never need to be stored on disk.
    """
    data = ProvisioningConfig.read_config_file(path)
    for key, label in SECRETS:
        if data.get(key):
            continue
        if prompt_secrets:
            data[key] = typer.prompt(label, hide_input=True, confirmation_prompt=True)
        else:
            data[key] = "unset"
    return ProvisioningConfig(**data)


@app.command()
def install(
    config: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="TOML provisioning config."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log every command without executing it."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation before wiping the device."),
    log_dir: Path = typer.Option(Path("logs"), "--log-dir", help="Directory for the run's log file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output on the console."),
):
    """Wipe the configured device and install an encrypted Arch Linux on it."""
    core.app_logger = initialize_app_logger(
        app_name="archcrypt",
        log_directory=str(log_dir),
        console_log_level=logging.DEBUG if verbose else logging.INFO,
    )
    log = core.app_logger

    try:
        cfg = load_config(config)
    except ValueError as e:
        log.critical(f"Invalid configuration {config}: {e}")
        raise typer.Exit(code=CONFIG_ERROR_EXIT)

    typer.echo(cfg.display_summary())

    if not (yes or dry_run):
        typer.confirm(f"ALL DATA ON {cfg.device} WILL BE DESTROYED. Continue?", abort=True)

    executor = Executor(logger_instance=log, chroot_path=cfg.mount_root, dry_run=dry_run)

    try:
        result = Provisioner(executor, cfg).run()
    except ProvisioningError as e:
        log.error(f"Provisioning aborted in stage '{e.stage}' (exit code {e.exit_code}).")
        raise typer.Exit(code=e.exit_code)

    log.info(f"Kernel command line: {result.cmdline}")
    if result.teardown_errors:
        typer.secho("\nTeardown left state behind on the host; check mounts, volume groups and mappings:\n  "
                    + "\n  ".join(result.teardown_errors), fg=typer.colors.YELLOW)
    typer.secho(f"\n{cfg.device} is ready. Remove the install medium and reboot.", fg=typer.colors.GREEN, bold=True)


@app.command()
def plan(
    config: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="TOML provisioning config."),
):
    """Show the partition, volume and mount plan for a config without touching any device."""
    try:
        cfg = load_config(config, prompt_secrets=False)
    except ValueError as e:
        typer.secho(f"Invalid configuration {config}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=CONFIG_ERROR_EXIT)

    console = Console()
    typer.echo(cfg.display_summary())

    layout = PartitionPlanner.plan(cfg.device)
    partitions = Table(title=f"GPT layout of {cfg.device}")
    for column in ("#", "Device", "Type", "Start", "End", "Flags"):
        partitions.add_column(column)
    for p in layout.partitions:
        partitions.add_row(str(p.index), p.path, p.type, p.start, p.end, ",".join(p.flags))
    console.print(partitions)

    group = VolumeManager.plan(cfg, f"/dev/mapper/{cfg.mapper_name}")
    mount_plan = MountPlanner.plan(layout, group)
    mounts = Table(title=f"Mount order under {cfg.mount_root}")
    for column in ("Order", "Source", "Target"):
        mounts.add_column(column)
    for i, binding in enumerate(mount_plan.bindings, start=1):
        mounts.add_row(str(i), binding.source, binding.target)
    mounts.add_row(str(len(mount_plan.bindings) + 1), mount_plan.swap, "swap")
    console.print(mounts)
