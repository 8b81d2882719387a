import logging
import stat
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from passfs.config import Config

logger = logging.getLogger(__name__)

# Our fake `pass` stores secrets in plaintext. The bytes here are exactly what decryption returns.
SECRETS: dict[str, bytes] = {
    "email/work": b"secret123\nuser@x.com\n",
    "email/personal": b"hunter2\n",
    "servers/db/prod": b"pg-password-without-newline",
    "api-token": b"tok_abc\nscope: all\n",
}

# A stand-in for `pass show NAME` which reads the plaintext "encrypted" files above.
FAKE_PASS_SCRIPT = """\
#!/bin/sh
if [ "$1" = "show" ]; then
    shift
fi
secret="$PASSWORD_STORE_DIR/$1.gpg"
if [ ! -f "$secret" ]; then
    echo "Error: $1 is not in the password store." >&2
    exit 1
fi
cat "$secret"
"""


@pytest.fixture(autouse=True)
def debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)


@pytest.fixture()
def isolated_dir() -> Iterator[Path]:
    with CliRunner().isolated_filesystem():
        yield Path.cwd()


@pytest.fixture()
def store_dir(isolated_dir: Path) -> Path:
    store = isolated_dir / "store"
    store.mkdir()
    for name, body in SECRETS.items():
        path = store / f"{name}.gpg"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(body)
    # Store metadata and stray files, none of which are secrets.
    (store / ".gpg-id").write_text("ABCDEF0123456789\n")
    (store / "email" / ".store-id").write_text("hidden\n")
    (store / ".git").mkdir()
    (store / ".git" / "HEAD.gpg").write_bytes(b"ref: refs/heads/main\n")
    (store / "README.md").write_text("Not a secret.\n")
    return store


@pytest.fixture()
def pass_command(isolated_dir: Path) -> list[str]:
    script = isolated_dir / "bin" / "pass"
    script.parent.mkdir()
    script.write_text(FAKE_PASS_SCRIPT)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return [str(script), "show"]


@pytest.fixture()
def config(isolated_dir: Path, store_dir: Path, pass_command: list[str]) -> Config:
    mount_dir = isolated_dir / "mount"
    mount_dir.mkdir()

    return Config(
        store_dir=store_dir,
        prefix="",
        mount_dir=mount_dir,
        create_mount_dir=True,
        content_files=True,
        first_line_files=True,
        unmount_after=0,
        max_workers=2,
        attr_timeout=3600,
        pass_command=pass_command,
    )


def retry_for_sec(timeout_sec: float) -> Iterator[None]:
    start = time.time()
    while True:
        yield
        time.sleep(0.01)
        if time.time() - start >= timeout_sec:
            break
