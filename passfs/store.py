"""
The store module reads the password store: it walks the on-disk layout of the store into a tree of
secrets, and shells out to `pass` to decrypt individual secrets.

A password store is a directory tree where every secret is a GPG-encrypted file named
`<name>.gpg`. Dotfiles (`.gpg-id`, `.git`, ...) are store metadata and never secrets.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from passfs.common import PassfsError, PassfsExpectedError

logger = logging.getLogger(__name__)

SECRET_SUFFIX = ".gpg"


class SecretTreeError(PassfsExpectedError):
    pass


class SecretRetrievalError(PassfsError):
    pass


class EmptySecretError(SecretRetrievalError):
    pass


@dataclass(frozen=True)
class SecretNode:
    # The last path component: a directory name, or a secret's filename including `.gpg`.
    segment: str
    is_leaf: bool
    # Path of the node relative to the store root. For leaves, this includes the `.gpg` suffix.
    secret: str
    children: tuple[SecretNode, ...] = field(default_factory=tuple)


def read_secret_tree(store_dir: Path, prefix: str = "") -> SecretNode:
    """
    Walk the store under `prefix` and return the root of the secret tree. The root is always a
    directory. If `prefix` names a single secret rather than a directory, the root contains just that
    secret.

    Raises SecretTreeError if any part of the store cannot be read. There's no sense in serving a
    partial tree.
    """
    prefix = prefix.strip("/")
    single_secret = store_dir / f"{prefix}{SECRET_SUFFIX}"
    if prefix and single_secret.is_file():
        logger.debug(f"Prefix {prefix} names a single secret, mounting only {single_secret}")
        parent, _, name = prefix.rpartition("/")
        leaf = SecretNode(
            segment=f"{name}{SECRET_SUFFIX}",
            is_leaf=True,
            secret=f"{prefix}{SECRET_SUFFIX}",
        )
        return SecretNode(segment=parent.rpartition("/")[2], is_leaf=False, secret=parent, children=(leaf,))

    root = _read_directory(store_dir, prefix)
    logger.debug(f"Read secret tree of {store_dir / prefix}")
    return root


def _read_directory(
    store_dir: Path,
    relpath: str,
    ancestors: frozenset[tuple[int, int]] = frozenset(),
) -> SecretNode:
    """`ancestors` holds the (device, inode) of every directory above this one."""
    dirpath = store_dir / relpath
    try:
        st = dirpath.stat()
        entries = sorted(os.scandir(dirpath), key=lambda e: e.name)
    except OSError as e:
        raise SecretTreeError(f"Failed to read password store directory {dirpath}: {e}") from e
    # Symlinked directories are followed, so a symlink to an ancestor would recurse forever.
    key = (st.st_dev, st.st_ino)
    if key in ancestors:
        raise SecretTreeError(f"Symlink loop in password store: {dirpath} links back to one of its parents")
    ancestors = ancestors | {key}

    children: list[SecretNode] = []
    for entry in entries:
        if entry.name.startswith("."):
            continue
        child_relpath = f"{relpath}/{entry.name}" if relpath else entry.name
        try:
            is_dir = entry.is_dir()
        except OSError as e:
            raise SecretTreeError(f"Failed to read password store entry {entry.path}: {e}") from e
        if is_dir:
            children.append(_read_directory(store_dir, child_relpath, ancestors))
            continue
        if not entry.name.endswith(SECRET_SUFFIX):
            logger.debug(f"Skipping {entry.path}: not a {SECRET_SUFFIX} file")
            continue
        children.append(SecretNode(segment=entry.name, is_leaf=True, secret=child_relpath))

    return SecretNode(
        segment=relpath.rpartition("/")[2],
        is_leaf=False,
        secret=relpath,
        children=tuple(children),
    )


def secret_name(secret: str) -> str:
    """The name `pass` knows a secret by: its store path without the `.gpg` suffix."""
    return secret.removesuffix(SECRET_SUFFIX)


def decrypt_secret(secret: str, *, store_dir: Path, pass_command: list[str]) -> bytes:
    """
    Decrypt a secret by invoking `pass`. Returns the decrypted bytes verbatim, so that the sizes we
    report match what is read.
    """
    name = secret_name(secret)
    args = [*pass_command, name]
    env = {**os.environ, "PASSWORD_STORE_DIR": str(store_dir)}
    logger.debug(f"Decrypting secret {name} with {pass_command}")
    try:
        result = subprocess.run(args, capture_output=True, env=env, check=False)
    except OSError as e:
        raise SecretRetrievalError(f"Failed to invoke {pass_command[0]} for secret {name}: {e}") from e
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace").strip()
        raise SecretRetrievalError(
            f"Failed to decrypt secret {name}: {pass_command[0]} exited with status {result.returncode}: {stderr}"
        )
    return result.stdout


def first_line(body: bytes) -> bytes:
    """
    The first line of a secret, with its trailing newline if the secret has one. Raises EmptySecretError
    if the first line is empty, since that is no password at all.
    """
    line, newline, _ = body.partition(b"\n")
    if not line:
        raise EmptySecretError("Secret has an empty first line")
    return line + newline
