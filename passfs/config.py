"""
The config module provides the config spec and parsing logic.

Every option has a default, so a missing configuration file at the default location is fine. Invalid
values produce detailed errors that name the offending key, and unrecognized keys emit a warning.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import tomllib
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import appdirs

from passfs.common import PassfsExpectedError

XDG_CONFIG_PASSFS = Path(appdirs.user_config_dir("passfs"))
CONFIG_PATH = XDG_CONFIG_PASSFS / "config.toml"

DEFAULT_STORE_DIR = "~/.password-store"
DEFAULT_MOUNT_DIR = "~/.mnt/passfs"

logger = logging.getLogger(__name__)


class ConfigNotFoundError(PassfsExpectedError):
    pass


class ConfigDecodeError(PassfsExpectedError):
    pass


class InvalidConfigValueError(PassfsExpectedError, ValueError):
    pass


@dataclass(frozen=True)
class Config:
    store_dir: Path
    # Only expose the part of the store under this path. May name a single secret.
    prefix: str
    mount_dir: Path
    create_mount_dir: bool

    # Which projections of each secret are exposed: `<name>.contents` and `<name>.first-line`.
    content_files: bool
    first_line_files: bool

    # Seconds after mounting to unmount automatically. Zero disables.
    unmount_after: int
    # Worker threads serving FUSE requests. Defaults to nproc/2.
    max_workers: int
    # How long the kernel may cache attributes and lookups, in seconds.
    attr_timeout: int
    # The command used to decrypt a secret; the secret name is appended.
    pass_command: list[str]

    @classmethod
    def parse(cls, config_path_override: Path | None = None) -> Config:
        # As we parse, delete consumed values from the data dictionary. If any are left over at the
        # end of the config, warn that unknown config keys were found.
        cfgpath = config_path_override or CONFIG_PATH
        try:
            with cfgpath.open("r") as fp:
                data = tomllib.loads(fp.read())
        except FileNotFoundError as e:
            if config_path_override:
                raise ConfigNotFoundError(f"Configuration file not found ({cfgpath})") from e
            logger.debug(f"No configuration file at {cfgpath}, using defaults")
            data = {}
        except tomllib.TOMLDecodeError as e:
            raise ConfigDecodeError(f"Failed to decode configuration file: invalid TOML: {e}") from e

        try:
            store_dir = Path(
                data.get("store_dir", os.environ.get("PASSWORD_STORE_DIR", DEFAULT_STORE_DIR))
            ).expanduser()
            data.pop("store_dir", None)
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for store_dir in configuration file ({cfgpath}): must be a path"
            ) from e

        try:
            prefix = data.pop("prefix", "")
            if not isinstance(prefix, str):
                raise ValueError(f"Must be a str: got {type(prefix)}")
            prefix = prefix.strip("/")
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for prefix in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            mount_dir = Path(data.get("mount_dir", DEFAULT_MOUNT_DIR)).expanduser()
            data.pop("mount_dir", None)
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for mount_dir in configuration file ({cfgpath}): must be a path"
            ) from e

        create_mount_dir = _parse_bool(cfgpath, data, "create_mount_dir", True)
        content_files = _parse_bool(cfgpath, data, "content_files", True)
        first_line_files = _parse_bool(cfgpath, data, "first_line_files", False)

        try:
            unmount_after = data.pop("unmount_after", 0)
            if isinstance(unmount_after, bool) or not isinstance(unmount_after, int):
                raise ValueError(f"Must be an int: got {type(unmount_after)}")
            if unmount_after < 0:
                raise ValueError(f"Must be zero or a positive integer: got {unmount_after}")
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for unmount_after in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            max_workers = int(data["max_workers"])
            del data["max_workers"]
            if max_workers <= 0:
                raise ValueError(f"must be a positive integer: got {max_workers}")
        except KeyError:
            max_workers = max(1, multiprocessing.cpu_count() // 2)
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for max_workers in configuration file ({cfgpath}): must be a positive integer"
            ) from e

        try:
            attr_timeout = int(data["attr_timeout"])
            del data["attr_timeout"]
            if attr_timeout <= 0:
                raise ValueError(f"must be a positive integer: got {attr_timeout}")
        except KeyError:
            attr_timeout = 60 * 60
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for attr_timeout in configuration file ({cfgpath}): must be a positive integer"
            ) from e

        try:
            pass_command = data.pop("pass_command", ["pass", "show"])
            if not isinstance(pass_command, list) or not pass_command:
                raise ValueError(f"Must be a non-empty list[str]: got {pass_command!r}")
            for s in pass_command:
                if not isinstance(s, str):
                    raise ValueError(f"Each argument must be of type str: got {type(s)}")
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for pass_command in configuration file ({cfgpath}): {e}"
            ) from e

        if data:
            unrecognized_accessors: list[str] = []
            # Do a DFS over the data keys to assemble the map of unknown keys. State is a tuple of
            # ("accessor", node).
            dfs_state: deque[tuple[str, Any]] = deque([("", data)])
            while dfs_state:
                accessor, node = dfs_state.pop()
                if isinstance(node, dict):
                    for k, v in node.items():
                        child_accessor = k if not accessor else f"{accessor}.{k}"
                        dfs_state.append((child_accessor, v))
                    continue
                unrecognized_accessors.append(accessor)
            if unrecognized_accessors:
                logger.warning(
                    f'Unrecognized options found in configuration file: {", ".join(unrecognized_accessors)}'
                )

        return Config(
            store_dir=store_dir,
            prefix=prefix,
            mount_dir=mount_dir,
            create_mount_dir=create_mount_dir,
            content_files=content_files,
            first_line_files=first_line_files,
            unmount_after=unmount_after,
            max_workers=max_workers,
            attr_timeout=attr_timeout,
            pass_command=pass_command,
        )


def _parse_bool(cfgpath: Path, data: dict[str, Any], key: str, default: bool) -> bool:
    """Pops `key` out of `data`, validating that it is a bool."""
    try:
        value = data.pop(key, default)
        if not isinstance(value, bool):
            raise ValueError(f"Must be a bool: got {type(value)}")
    except ValueError as e:
        raise InvalidConfigValueError(f"Invalid value for {key} in configuration file ({cfgpath}): {e}") from e
    return value
