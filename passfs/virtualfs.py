"""
The virtualfs module serves the password store as a read-only virtual filesystem. It is written in an
Object-Oriented style because that's how the FUSE libraries tend to be implemented.

The whole filesystem is built once, at mount time, from a snapshot of the store. Nothing about the
tree changes afterwards, so most of the serving path is lock-free reads of immutable data. The only
expensive thing we do is decrypt secrets, which we must do to know a file's size: some programs
refuse to read files whose reported size disagrees with their contents.

This module contains 7 classes:

1. INode & Dirent: Records for a virtual file or directory, and for one entry in a directory listing.

2. INodeTable: The map of inode numbers to INodes. Append-only while building, read-only while
   serving.

3. TreeBuilder: Converts the tree of secrets from the store module into INodes. Each directory
   becomes a directory inode, and each secret becomes one file inode per enabled projection
   (`<name>.contents` and `<name>.first-line`).

4. SizeCache: Remembers the exact size of each file, decrypting each secret at most once.

5. FileHandleManager: Generates file handles and keeps the decrypted payload of each open file, so
   that a file read in several chunks is decrypted once.

6. PassLogicalCore: A logical representation of the filesystem operations, freed from the annoying
   implementation details that a low-level library like `llfuse` comes with.

7. VirtualFS: The main Virtual Filesystem class, which manages the annoying implementation details
   of `llfuse` and delegates logic to PassLogicalCore.
"""

from __future__ import annotations

import contextlib
import errno
import functools
import logging
import os
import random
import stat
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Literal

import llfuse

from passfs.common import PassfsError
from passfs.config import Config
from passfs.store import (
    SECRET_SUFFIX,
    SecretNode,
    SecretRetrievalError,
    decrypt_secret,
    first_line,
    read_secret_tree,
)

logger = logging.getLogger(__name__)

INodeKind = Literal["directory", "contents", "first-line"]
DirentType = Literal["directory", "file"]

DIRECTORY_MODE = stat.S_IFDIR | 0o500
FILE_MODE = stat.S_IFREG | 0o400
DIRECTORY_SIZE = 4096

PROJECTION_SUFFIXES: dict[INodeKind, str] = {
    "contents": ".contents",
    "first-line": ".first-line",
}


@dataclass(frozen=True, slots=True)
class Dirent:
    name: str
    inode: int
    type: DirentType
    # 1-based position of the entry in its directory. Passed back to us to resume a listing.
    offset: int


@dataclass(frozen=True, slots=True)
class INode:
    inode: int
    kind: INodeKind
    # Store path of the backing secret, including the `.gpg` suffix. Files only.
    secret: str | None = None
    # Directories only.
    children: tuple[Dirent, ...] = ()

    @property
    def is_dir(self) -> bool:
        return self.kind == "directory"

    @property
    def mode(self) -> int:
        return DIRECTORY_MODE if self.is_dir else FILE_MODE


def display_name(secret_filename: str, kind: INodeKind) -> str:
    """`work.gpg` -> `work.contents` or `work.first-line`."""
    return secret_filename.removesuffix(SECRET_SUFFIX) + PROJECTION_SUFFIXES[kind]


def dirent_size(name: str) -> int:
    """Bytes a directory entry occupies in a FUSE readdir reply."""
    # struct fuse_dirent: ino (8) + off (8) + namelen (4) + type (4) + name, padded to 8 bytes.
    return (24 + len(name.encode()) + 7) & ~7


class INodeTable:
    """
    INodeTable holds every INode of the mount. The root directory is always `llfuse.ROOT_INODE`;
    every other inode number comes from `allocate`, which increments to infinity. Numbers are never
    reused, and nothing is ever removed.
    """

    def __init__(self) -> None:
        self._inodes: dict[int, INode] = {}
        self._next_inode_ctr: int = llfuse.ROOT_INODE + 1
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            cur = self._next_inode_ctr
            self._next_inode_ctr += 1
            return cur

    def insert(self, inode: INode) -> None:
        if inode.inode in self._inodes:
            raise PassfsError(f"Inode {inode.inode} already exists in the inode table")
        self._inodes[inode.inode] = inode

    def get(self, inode_id: int) -> INode:
        """Raises ENOENT if the inode doesn't exist."""
        try:
            return self._inodes[inode_id]
        except KeyError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e

    def lookup_child(self, parent_inode: int, name: str) -> int:
        """Raises ENOENT if the parent isn't a directory or has no child named `name`."""
        parent = self.get(parent_inode)
        if not parent.is_dir:
            raise llfuse.FUSEError(errno.ENOENT)
        for dirent in parent.children:
            if dirent.name == name:
                return dirent.inode
        raise llfuse.FUSEError(errno.ENOENT)

    def walk(self, inode_id: int = llfuse.ROOT_INODE, prefix: str = "") -> Iterator[tuple[str, INode]]:
        """Yields (path, inode) for everything under a directory, depth-first in listing order."""
        for dirent in self.get(inode_id).children:
            path = f"{prefix}{dirent.name}"
            child = self.get(dirent.inode)
            yield path, child
            if child.is_dir:
                yield from self.walk(dirent.inode, f"{path}/")

    def __contains__(self, inode_id: int) -> bool:
        return inode_id in self._inodes

    def __len__(self) -> int:
        return len(self._inodes)


class TreeBuilder:
    """
    TreeBuilder fills an INodeTable from the secret tree, depth-first. Inodes are allocated in the
    order nodes are discovered, and entry offsets count up from 1 within each directory. A secret
    contributes one entry per enabled projection, so one secret may take up two offsets.
    """

    def __init__(self, table: INodeTable, *, content_files: bool, first_line_files: bool):
        self._table = table
        self._kinds: list[INodeKind] = []
        if content_files:
            self._kinds.append("contents")
        if first_line_files:
            self._kinds.append("first-line")

    def build(self, root: SecretNode) -> INode:
        if not self._kinds:
            logger.warning(
                "Neither content files nor first line files are enabled, mount point won't have any files"
            )
        inode = self._build_directory(root, llfuse.ROOT_INODE)
        logger.debug(f"BUILD: Built {len(self._table)} inodes")
        return inode

    def _build_directory(self, node: SecretNode, inode_id: int) -> INode:
        children: list[Dirent] = []
        for child in node.children:
            children.extend(self._build_entries(child, offset=len(children) + 1))
        inode = INode(inode=inode_id, kind="directory", secret=None, children=tuple(children))
        self._table.insert(inode)
        return inode

    def _build_entries(self, node: SecretNode, offset: int) -> list[Dirent]:
        """Returns the directory entries that `node` contributes to its parent."""
        if not node.is_leaf:
            inode_id = self._table.allocate()
            self._build_directory(node, inode_id)
            return [Dirent(name=node.segment, inode=inode_id, type="directory", offset=offset)]

        entries: list[Dirent] = []
        for kind in self._kinds:
            inode_id = self._table.allocate()
            self._table.insert(INode(inode=inode_id, kind=kind, secret=node.secret))
            entries.append(
                Dirent(
                    name=display_name(node.segment, kind),
                    inode=inode_id,
                    type="file",
                    offset=offset + len(entries),
                )
            )
        return entries


class SizeCache:
    """
    SizeCache maps file inodes to their exact size in bytes, measuring each on first access with
    `measure`. Sizes never change for the life of the mount, so entries are never invalidated.

    Each inode is measured at most once, even when several requests race for the same inode. The
    table lock is only held to read and write the dict; measurement happens under a lock specific to
    the inode, so a slow decryption only blocks requests for the same file. Failed measurements are
    not cached.
    """

    def __init__(self, measure: Callable[[int], int]):
        self._measure = measure
        self._sizes: dict[int, int] = {}
        self._inode_locks: dict[int, threading.Lock] = {}
        self._lock = threading.Lock()

    def get(self, inode_id: int) -> int:
        with self._lock:
            with contextlib.suppress(KeyError):
                return self._sizes[inode_id]
            inode_lock = self._inode_locks.setdefault(inode_id, threading.Lock())

        with inode_lock:
            # Another request may have finished measuring while we waited for the inode lock.
            with self._lock:
                with contextlib.suppress(KeyError):
                    return self._sizes[inode_id]
            size = self._measure(inode_id)
            with self._lock:
                self._sizes[inode_id] = size
                self._inode_locks.pop(inode_id, None)
            return size

    def __contains__(self, inode_id: int) -> bool:
        with self._lock:
            return inode_id in self._sizes


class FileHandleManager:
    """
    FileHandleManager generates file handles and keeps per-handle state: the inode behind the handle
    and, after the first read, the decrypted payload. Handles wrap back to 10 after ~10k, skipping any
    that are still open. Opening fails with EMFILE when every handle is open.
    """

    def __init__(self) -> None:
        self._state = 10
        self._lock = threading.Lock()
        self._handles: dict[int, int] = {}
        self._payloads: dict[int, bytes] = {}

    def open(self, inode_id: int) -> int:
        with self._lock:
            # One full cycle visits every handle once.
            for _ in range(10_000):
                self._state = max(10, (self._state + 1) % 10_000)
                if self._state not in self._handles:
                    self._handles[self._state] = inode_id
                    return self._state
        raise llfuse.FUSEError(errno.EMFILE)

    def inode(self, fh: int) -> int:
        try:
            return self._handles[fh]
        except KeyError as e:
            raise llfuse.FUSEError(errno.EBADF) from e

    def payload(self, fh: int) -> bytes | None:
        return self._payloads.get(fh)

    def store_payload(self, fh: int, payload: bytes) -> None:
        with self._lock:
            if fh in self._handles:
                self._payloads[fh] = payload

    def release(self, fh: int) -> None:
        with self._lock:
            self._handles.pop(fh, None)
            self._payloads.pop(fh, None)


class PassLogicalCore:
    """
    The filesystem operations, against inode numbers and plain Python types. Every method is safe to
    call from several threads at once, and none of them hold a lock while decrypting.
    """

    def __init__(
        self,
        table: INodeTable,
        decrypt: Callable[[str], bytes],
        *,
        attr_timeout: int = 60 * 60,
    ):
        self.table = table
        self.decrypt = decrypt
        self.attr_timeout = attr_timeout
        self.fhandler = FileHandleManager()
        self.sizes = SizeCache(lambda inode_id: len(self.payload(inode_id)))

    def payload(self, inode_id: int) -> bytes:
        """Decrypts the bytes served by a file inode. Raises EIO for directories and failures."""
        inode = self.table.get(inode_id)
        if inode.is_dir or inode.secret is None:
            raise llfuse.FUSEError(errno.EIO)
        try:
            body = self.decrypt(inode.secret)
            if inode.kind == "contents":
                return body
            elif inode.kind == "first-line":
                return first_line(body)
            else:
                raise PassfsError(f"LOGICAL: No payload for inode kind {inode.kind}")
        except SecretRetrievalError as e:
            logger.error(f"LOGICAL: Failed to decrypt {inode.secret} for inode {inode_id}: {e}")
            raise llfuse.FUSEError(errno.EIO) from e

    def getattr(self, inode_id: int) -> dict[str, Any]:
        logger.debug(f"LOGICAL: Received getattr for {inode_id=}")
        inode = self.table.get(inode_id)
        attrs: dict[str, Any] = {}
        attrs["st_ino"] = inode.inode
        attrs["st_mode"] = inode.mode
        attrs["st_nlink"] = 1
        attrs["st_uid"] = os.getuid()
        attrs["st_gid"] = os.getgid()
        attrs["st_size"] = DIRECTORY_SIZE if inode.is_dir else self.sizes.get(inode.inode)
        # The store keeps no timestamps for derived files, so everything happens right now.
        now = time.time_ns()
        attrs["st_atime_ns"] = now
        attrs["st_mtime_ns"] = now
        attrs["st_ctime_ns"] = now
        # Attributes are expensive to compute, so let the kernel hold onto them.
        attrs["attr_timeout"] = self.attr_timeout
        attrs["entry_timeout"] = self.attr_timeout
        return attrs

    def lookup(self, parent_inode: int, name: str) -> dict[str, Any]:
        logger.debug(f"LOGICAL: Received lookup for {parent_inode=}/{name=}")
        return self.getattr(self.table.lookup_child(parent_inode, name))

    def opendir(self, inode_id: int) -> int:
        # We hand the inode back as the directory handle; readdir validates it.
        return inode_id

    def readdir(self, inode_id: int, offset: int = 0, max_bytes: int | None = None) -> Iterator[Dirent]:
        """
        Lists a directory, resuming after the entry whose offset is `offset` (0 starts from the
        beginning). When `max_bytes` is given, stops before the first entry that would not fit into a
        FUSE readdir reply of that size.
        """
        logger.debug(f"LOGICAL: Received readdir for {inode_id=} {offset=} {max_bytes=}")
        inode = self.table.get(inode_id)
        if not inode.is_dir:
            raise llfuse.FUSEError(errno.EIO)
        if offset > max((d.offset for d in inode.children), default=0):
            raise llfuse.FUSEError(errno.EIO)
        return self._iter_dirents(inode, offset, max_bytes)

    @staticmethod
    def _iter_dirents(inode: INode, offset: int, max_bytes: int | None) -> Iterator[Dirent]:
        used = 0
        for dirent in inode.children:
            # Offset 0 is a pseudo-entry; handing it out as a cursor would restart the listing.
            if dirent.offset == 0 or dirent.offset <= offset:
                continue
            if max_bytes is not None:
                used += dirent_size(dirent.name)
                if used > max_bytes:
                    return
            yield dirent

    def open(self, inode_id: int, flags: int = os.O_RDONLY) -> int:
        logger.debug(f"LOGICAL: Received open for {inode_id=} {flags=}")
        return self.fhandler.open(inode_id)

    def read(self, fh: int, offset: int, length: int) -> bytes:
        logger.debug(f"LOGICAL: Received read for {fh=} {offset=} {length=}")
        payload = self.fhandler.payload(fh)
        if payload is None:
            payload = self.payload(self.fhandler.inode(fh))
            self.fhandler.store_payload(fh, payload)
        return payload[offset : offset + length]

    def release(self, fh: int) -> None:
        logger.debug(f"LOGICAL: Received release for {fh=}")
        self.fhandler.release(fh)


class VirtualFS(llfuse.Operations):  # type: ignore
    """
    This is the virtual filesystem class, which translates `llfuse` requests into PassLogicalCore
    calls. Construction reads the store and builds every inode, so a VirtualFS that exists is ready
    to serve.

    `llfuse` runs every request handler while holding its global lock. Handlers that may decrypt
    release it for the duration of the logical call; PassLogicalCore does its own locking.

    Operations we do not implement (write, create, unlink, rename, xattrs, ...) fall through to the
    `llfuse.Operations` defaults, which reject them with ENOSYS.
    """

    def __init__(self, config: Config):
        super().__init__()
        table = INodeTable()
        tree = read_secret_tree(config.store_dir, config.prefix)
        TreeBuilder(
            table,
            content_files=config.content_files,
            first_line_files=config.first_line_files,
        ).build(tree)
        decrypt = functools.partial(
            decrypt_secret,
            store_dir=config.store_dir,
            pass_command=config.pass_command,
        )
        self.core = PassLogicalCore(table, decrypt, attr_timeout=config.attr_timeout)
        self.default_attrs = {
            # Inode numbers are only stable within a mount, so pick a new generation every mount.
            "generation": random.randint(0, 1000000),
        }

    def make_entry_attributes(self, attrs: dict[str, Any]) -> llfuse.EntryAttributes:
        for k, v in self.default_attrs.items():
            if k not in attrs:
                attrs[k] = v
        entry = llfuse.EntryAttributes()
        for k, v in attrs.items():
            setattr(entry, k, v)
        return entry

    def statfs(self, _: Any) -> llfuse.StatvfsData:
        logger.debug("FUSE: Received statfs")
        stat_ = llfuse.StatvfsData()
        stat_.f_bsize = 512
        stat_.f_frsize = 512
        stat_.f_blocks = 0
        stat_.f_bfree = 0
        stat_.f_bavail = 0
        stat_.f_files = 0
        stat_.f_ffree = 0
        stat_.f_favail = 0
        stat_.f_namemax = 255
        return stat_

    def getattr(self, inode: int, _: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received getattr for {inode=}")
        with llfuse.lock_released:
            attrs = self.core.getattr(inode)
        return self.make_entry_attributes(attrs)

    def lookup(self, parent_inode: int, name: bytes, _: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received lookup for {parent_inode=}/{name=}")
        try:
            namestr = name.decode()
        except UnicodeDecodeError as e:
            raise llfuse.FUSEError(errno.EINVAL) from e
        with llfuse.lock_released:
            attrs = self.core.lookup(parent_inode, namestr)
        logger.debug(f'FUSE: Resolved lookup {parent_inode=}/{name=} to {attrs["st_ino"]=}')
        return self.make_entry_attributes(attrs)

    def opendir(self, inode: int, _: Any) -> int:
        logger.debug(f"FUSE: Received opendir for {inode=}")
        return self.core.opendir(inode)

    def readdir(self, fh: int, offset: int = 0) -> Iterator[tuple[bytes, llfuse.EntryAttributes, int]]:
        # `llfuse` stops consuming the iterator once its reply buffer is full, and passes the last
        # offset it consumed back to us on the next call.
        logger.debug(f"FUSE: Received readdir for {fh=} {offset=}")
        for dirent in self.core.readdir(fh, offset):
            mode = DIRECTORY_MODE if dirent.type == "directory" else FILE_MODE
            entry = self.make_entry_attributes({"st_ino": dirent.inode, "st_mode": mode})
            yield dirent.name.encode(), entry, dirent.offset

    def releasedir(self, fh: int) -> None:
        logger.debug(f"FUSE: Received releasedir for {fh=}")

    def open(self, inode: int, flags: int, _: Any) -> int:
        logger.debug(f"FUSE: Received open for {inode=} {flags=}")
        return self.core.open(inode, flags)

    def read(self, fh: int, offset: int, length: int) -> bytes:
        logger.debug(f"FUSE: Received read for {fh=} {offset=} {length=}")
        with llfuse.lock_released:
            return self.core.read(fh, offset, length)

    def release(self, fh: int) -> None:
        logger.debug(f"FUSE: Received release for {fh=}")
        self.core.release(fh)


def mount_virtualfs(c: Config, debug: bool = False, fs: VirtualFS | None = None) -> None:
    """
    Mount and serve until unmounted. Pass a prebuilt `fs` to read the store before forking, so that a
    broken store fails in the foreground process.
    """
    # Build the whole tree before mounting: a broken store should fail here, not mid-listing.
    if fs is None:
        fs = VirtualFS(c)
    options = set(llfuse.default_options)
    options.add("fsname=passfs")
    options.add("ro")
    if debug:
        options.add("debug")
    llfuse.init(fs, str(c.mount_dir), options)
    logger.info(f"Mounted password store {c.store_dir} at {c.mount_dir}")
    try:
        llfuse.main(workers=c.max_workers)
    finally:
        llfuse.close()


def unmount_virtualfs(c: Config) -> bool:
    """Returns whether the filesystem was unmounted."""
    result = subprocess.run(["umount", str(c.mount_dir)], capture_output=True)
    if result.returncode != 0:
        logger.warning(f'Failed to unmount {c.mount_dir}: {result.stderr.decode(errors="replace").strip()}')
        return False
    return True
