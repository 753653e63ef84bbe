"""Read-only tree interface and the error taxonomy shared by every layer."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ResourceInfo:
    """Metadata about a node (file or directory)."""
    is_dir: bool
    size: int = 0
    mode: int = 0o644
    inode: int = 0


class BackendError(Exception):
    """Base error for tree operations."""
    pass


class NotFoundError(BackendError):
    """Node does not exist."""
    pass


class ClusterConnectionError(BackendError):
    """A session with the cluster could not be established."""
    pass


class ListError(BackendError):
    """A listing query against the cluster failed."""
    pass


class SerializationError(BackendError):
    """A payload could not be turned into file content."""
    pass


class Backend:
    """Abstract read-only tree interface.

    Paths are lists of segments; the root is the empty list and is
    always a directory.
    """

    def info(self, path: list[str]) -> ResourceInfo:
        """Return metadata for the node at path."""
        raise NotImplementedError

    def list(self, path: list[str]) -> list[str]:
        """Return child names for a directory. Raises NotFoundError if not a directory."""
        raise NotImplementedError

    def get(self, path: list[str]) -> bytes:
        """Return the content of a file. Raises NotFoundError if not a file."""
        raise NotImplementedError

    def read(self, path: list[str], size: int, offset: int) -> bytes:
        """Return up to size bytes of a file starting at offset."""
        return self.get(path)[offset:offset + size]


def parse_path(raw: str) -> list[str]:
    """Split a '/'-separated path into segments, ignoring empty and '.' parts."""
    return [p for p in raw.split("/") if p and p != "."]
