import logging
import multiprocessing
from pathlib import Path
from typing import Any

import pytest

from passfs.config import Config, ConfigDecodeError, ConfigNotFoundError, InvalidConfigValueError


def test_config_defaults(isolated_dir: Path, monkeypatch: Any) -> None:
    monkeypatch.setattr("passfs.config.CONFIG_PATH", isolated_dir / "lalala.toml")
    monkeypatch.delenv("PASSWORD_STORE_DIR", raising=False)

    c = Config.parse()
    assert c == Config(
        store_dir=Path.home() / ".password-store",
        prefix="",
        mount_dir=Path.home() / ".mnt" / "passfs",
        create_mount_dir=True,
        content_files=True,
        first_line_files=False,
        unmount_after=0,
        max_workers=max(1, multiprocessing.cpu_count() // 2),
        attr_timeout=3600,
        pass_command=["pass", "show"],
    )


def test_config_store_dir_from_environment(isolated_dir: Path, monkeypatch: Any) -> None:
    monkeypatch.setattr("passfs.config.CONFIG_PATH", isolated_dir / "lalala.toml")
    monkeypatch.setenv("PASSWORD_STORE_DIR", str(isolated_dir / "store"))
    assert Config.parse().store_dir == isolated_dir / "store"

    # The configuration file wins over the environment.
    path = isolated_dir / "config.toml"
    path.write_text('store_dir = "~/.other-store"')
    assert Config.parse(config_path_override=path).store_dir == Path.home() / ".other-store"


def test_config_full(isolated_dir: Path) -> None:
    path = isolated_dir / "config.toml"
    path.write_text(
        """
        store_dir = "~/.password-store"
        prefix = "/email/"
        mount_dir = "~/secrets"
        create_mount_dir = false
        content_files = false
        first_line_files = true
        unmount_after = 30
        max_workers = 8
        attr_timeout = 60
        pass_command = ["gopass", "show", "--password"]
        """
    )

    c = Config.parse(config_path_override=path)
    assert c == Config(
        store_dir=Path.home() / ".password-store",
        prefix="email",
        mount_dir=Path.home() / "secrets",
        create_mount_dir=False,
        content_files=False,
        first_line_files=True,
        unmount_after=30,
        max_workers=8,
        attr_timeout=60,
        pass_command=["gopass", "show", "--password"],
    )


def test_config_not_found(isolated_dir: Path) -> None:
    with pytest.raises(ConfigNotFoundError):
        Config.parse(config_path_override=isolated_dir / "lalala.toml")


def test_config_decode_error(isolated_dir: Path) -> None:
    path = isolated_dir / "config.toml"
    path.write_text("store_dir = ")
    with pytest.raises(ConfigDecodeError):
        Config.parse(config_path_override=path)


def test_config_value_validation(isolated_dir: Path) -> None:
    path = isolated_dir / "config.toml"

    def assert_invalid(toml: str, message: str) -> None:
        path.write_text(toml)
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert str(excinfo.value) == f"Invalid value for {message}".replace("{path}", str(path))

    # store_dir
    assert_invalid("store_dir = 123", "store_dir in configuration file ({path}): must be a path")
    # prefix
    assert_invalid("prefix = 123", "prefix in configuration file ({path}): Must be a str: got <class 'int'>")
    # mount_dir
    assert_invalid("mount_dir = 123", "mount_dir in configuration file ({path}): must be a path")
    # create_mount_dir
    assert_invalid(
        'create_mount_dir = "yes"',
        "create_mount_dir in configuration file ({path}): Must be a bool: got <class 'str'>",
    )
    # content_files
    assert_invalid(
        "content_files = 1",
        "content_files in configuration file ({path}): Must be a bool: got <class 'int'>",
    )
    # first_line_files
    assert_invalid(
        'first_line_files = "lalala"',
        "first_line_files in configuration file ({path}): Must be a bool: got <class 'str'>",
    )
    # unmount_after
    assert_invalid(
        'unmount_after = "5"',
        "unmount_after in configuration file ({path}): Must be an int: got <class 'str'>",
    )
    assert_invalid(
        "unmount_after = true",
        "unmount_after in configuration file ({path}): Must be an int: got <class 'bool'>",
    )
    assert_invalid(
        "unmount_after = -1",
        "unmount_after in configuration file ({path}): Must be zero or a positive integer: got -1",
    )
    # max_workers
    assert_invalid(
        'max_workers = "lalala"',
        "max_workers in configuration file ({path}): must be a positive integer",
    )
    assert_invalid("max_workers = 0", "max_workers in configuration file ({path}): must be a positive integer")
    # attr_timeout
    assert_invalid(
        'attr_timeout = "lalala"',
        "attr_timeout in configuration file ({path}): must be a positive integer",
    )
    assert_invalid("attr_timeout = -5", "attr_timeout in configuration file ({path}): must be a positive integer")
    # pass_command
    assert_invalid(
        'pass_command = "pass show"',
        "pass_command in configuration file ({path}): Must be a non-empty list[str]: got 'pass show'",
    )
    assert_invalid(
        "pass_command = []",
        "pass_command in configuration file ({path}): Must be a non-empty list[str]: got []",
    )
    assert_invalid(
        'pass_command = ["pass", 123]',
        "pass_command in configuration file ({path}): Each argument must be of type str: got <class 'int'>",
    )


def test_config_unrecognized_keys(isolated_dir: Path, caplog: Any) -> None:
    path = isolated_dir / "config.toml"
    path.write_text(
        """
        lalala = 1
        content_files = true

        [hahaha]
        nested = "x"
        """
    )
    with caplog.at_level(logging.WARNING):
        c = Config.parse(config_path_override=path)
    assert c.content_files
    assert "Unrecognized options found in configuration file" in caplog.text
    assert "lalala" in caplog.text
    assert "hahaha.nested" in caplog.text
    assert "content_files" not in caplog.text
