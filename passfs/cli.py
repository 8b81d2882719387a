"""
The cli module defines the passfs CLI interface. It does not have any domain logic of its own. It is
dedicated to parsing, resolving arguments, and delegating to the appropriate module.
"""

import dataclasses
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import click

from passfs.common import VERSION, PassfsExpectedError
from passfs.config import Config

logger = logging.getLogger(__name__)

MOUNT_DIR_PERMISSIONS = 0o700
UNMOUNT_RETRY_SECONDS = 5


class MountDirError(PassfsExpectedError):
    pass


@dataclass
class Context:
    config: Config


# fmt: off
@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Emit verbose logging.")
@click.option("--config", "-c", type=click.Path(path_type=Path), help="Override the config file location.")
@click.version_option(VERSION, prog_name="passfs")
@click.pass_context
# fmt: on
def cli(cc: click.Context, verbose: bool, config: Path | None = None) -> None:
    """Serve a password store as a read-only filesystem."""
    cc.obj = Context(
        config=Config.parse(config_path_override=config),
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("passfs").setLevel(logging.DEBUG)


@cli.group()
def fs() -> None:
    """Manage the virtual filesystem."""


# fmt: off
@fs.command()
@click.option("--foreground", "-f", is_flag=True, help="Run the FUSE controller in the foreground (default: daemon).")
@click.option("--store-dir", "-s", type=click.Path(path_type=Path), help="Password store to mount.")
@click.option("--prefix", "-p", type=str, help="Only mount the part of the store under this path.")
@click.option("--mount-dir", "-m", type=click.Path(path_type=Path), help="Directory to mount the filesystem at.")
@click.option("--content-files/--no-content-files", default=None, help="Expose <name>.contents files.")
@click.option("--first-line-files/--no-first-line-files", default=None, help="Expose <name>.first-line files.")
@click.option("--unmount-after", "-u", type=click.IntRange(min=0), help="Unmount after this many seconds.")
@click.pass_obj
# fmt: on
def mount(
    ctx: Context,
    foreground: bool,
    store_dir: Path | None,
    prefix: str | None,
    mount_dir: Path | None,
    content_files: bool | None,
    first_line_files: bool | None,
    unmount_after: int | None,
) -> None:
    """Mount the virtual filesystem."""
    from passfs.virtualfs import VirtualFS, mount_virtualfs

    c = apply_mount_overrides(
        ctx.config,
        store_dir=store_dir,
        prefix=prefix,
        mount_dir=mount_dir,
        content_files=content_files,
        first_line_files=first_line_files,
        unmount_after=unmount_after,
    )
    prepare_mount_dir(c)
    # Read the store before forking so that a broken store fails in the foreground.
    vfs = VirtualFS(c)

    if not foreground:
        daemonize()

    if c.unmount_after > 0:
        schedule_unmount(c, c.unmount_after)

    debug = logging.getLogger("passfs").getEffectiveLevel() == logging.DEBUG
    mount_virtualfs(c, debug=debug, fs=vfs)


@fs.command()
@click.pass_obj
def unmount(ctx: Context) -> None:
    """Unmount the virtual filesystem."""
    from passfs.virtualfs import unmount_virtualfs

    if not unmount_virtualfs(ctx.config):
        raise click.exceptions.Exit(1)


@cli.command()
@click.option("--prefix", "-p", type=str, help="Only list the part of the store under this path.")
@click.pass_obj
def tree(ctx: Context, prefix: str | None) -> None:
    """Print the files the virtual filesystem would contain."""
    from passfs.store import read_secret_tree
    from passfs.virtualfs import INodeTable, TreeBuilder

    c = apply_mount_overrides(ctx.config, prefix=prefix)
    table = INodeTable()
    TreeBuilder(
        table,
        content_files=c.content_files,
        first_line_files=c.first_line_files,
    ).build(read_secret_tree(c.store_dir, c.prefix))
    for path, inode in table.walk():
        click.echo(f"{path}/" if inode.is_dir else path)


def apply_mount_overrides(
    c: Config,
    *,
    store_dir: Path | None = None,
    prefix: str | None = None,
    mount_dir: Path | None = None,
    content_files: bool | None = None,
    first_line_files: bool | None = None,
    unmount_after: int | None = None,
) -> Config:
    """Overrides configuration values with the command line flags that were passed."""
    overrides = {
        "store_dir": store_dir.expanduser() if store_dir is not None else None,
        "prefix": prefix.strip("/") if prefix is not None else None,
        "mount_dir": mount_dir.expanduser() if mount_dir is not None else None,
        "content_files": content_files,
        "first_line_files": first_line_files,
        "unmount_after": unmount_after,
    }
    return dataclasses.replace(c, **{k: v for k, v in overrides.items() if v is not None})


def prepare_mount_dir(c: Config) -> None:
    """
    Make sure the mount directory exists and is only accessible to us. Creates it when missing if the
    configuration allows.
    """
    if not c.mount_dir.exists():
        if not c.create_mount_dir:
            raise MountDirError(f"Mount directory {c.mount_dir} does not exist")
        logger.debug(f"Creating mount directory {c.mount_dir}")
        c.mount_dir.mkdir(mode=MOUNT_DIR_PERMISSIONS, parents=True)
    elif not c.mount_dir.is_dir():
        raise MountDirError(f"Mount directory {c.mount_dir} is not a directory")
    c.mount_dir.chmod(MOUNT_DIR_PERMISSIONS)


def schedule_unmount(c: Config, delay_sec: float) -> threading.Thread:
    """Unmount after `delay_sec` seconds, retrying until the filesystem is no longer busy."""
    from passfs.virtualfs import unmount_virtualfs

    def run() -> None:
        time.sleep(delay_sec)
        logger.info(f"Unmounting {c.mount_dir} after {delay_sec} seconds")
        while not unmount_virtualfs(c):
            logger.info(f"Unmount failed, retrying in {UNMOUNT_RETRY_SECONDS} seconds")
            time.sleep(UNMOUNT_RETRY_SECONDS)

    thread = threading.Thread(target=run, name="passfs-unmount", daemon=True)
    thread.start()
    return thread


def daemonize() -> None:
    """Forks into a background daemon and exits the foreground process."""
    pid = os.fork()
    if pid == 0:
        # Child process. Detach and keep going!
        os.setsid()
        return
    # Parent process, let's exit now!
    logger.debug(f"Forked filesystem daemon into process {pid}")
    os._exit(0)
