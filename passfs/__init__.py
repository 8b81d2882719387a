from passfs.common import (
    VERSION,
    PassfsError,
    PassfsExpectedError,
    initialize_logging,
)
from passfs.config import Config
from passfs.store import (
    EmptySecretError,
    SecretNode,
    SecretRetrievalError,
    SecretTreeError,
    decrypt_secret,
    first_line,
    read_secret_tree,
)
from passfs.virtualfs import mount_virtualfs, unmount_virtualfs

__all__ = [
    # Plumbing
    "initialize_logging",
    "VERSION",
    # Errors
    "PassfsError",
    "PassfsExpectedError",
    "SecretTreeError",
    "SecretRetrievalError",
    "EmptySecretError",
    # Configuration
    "Config",
    # Password Store
    "SecretNode",
    "read_secret_tree",
    "decrypt_secret",
    "first_line",
    # Virtual Filesystem
    "mount_virtualfs",
    "unmount_virtualfs",
]

initialize_logging(__name__)
