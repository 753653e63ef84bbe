"""Cluster tree: a lazily populated, read-only view of namespaces and resources.

Structure:
    /
      <namespace>/
        namespace.json   the namespace object
        services/        one file per Service
        deployments/     one file per Deployment
        ingresses/       one file per Ingress

Every directory is populated the first time its children are needed and
never again, so each subtree is a snapshot of the cluster at the moment it
was first visited. Nodes live in a single arena indexed by inode number;
directories map child names to inode numbers.
"""

from __future__ import annotations

import enum
import functools
import logging
import threading
from typing import Iterator

from backend import Backend, BackendError, ListError, NotFoundError, ResourceInfo
from cluster import COLLECTIONS, Connection, Namespace, SharedConnection, serialize

logger = logging.getLogger(__name__)

ROOT_INODE = 1
DIR_MODE = 0o755
FILE_MODE = 0o644
NAMESPACE_FILE = "namespace.json"
ERROR_FILE = ".error"


class FailurePolicy(enum.Enum):
    """What a failed resource listing does to the rest of the tree."""
    ABORT = "abort"
    ISOLATE = "isolate"


class State(enum.Enum):
    UNPOPULATED = "unpopulated"
    POPULATING = "populating"
    POPULATED = "populated"
    FAILED = "failed"


class Node:
    is_dir = False
    mode = FILE_MODE

    def __init__(self):
        self.inode = 0


class FileNode(Node):
    """Immutable in-memory file."""

    def __init__(self, data: bytes):
        super().__init__()
        self.data = bytes(data)

    @property
    def size(self) -> int:
        return len(self.data)

    def read(self, size: int, offset: int) -> bytes:
        if offset >= len(self.data):
            return b""
        return self.data[offset:offset + size]


class DirectoryNode(Node):
    """A directory whose children are created by a one-time populate() call."""

    is_dir = True
    mode = DIR_MODE

    def __init__(self, label: str):
        super().__init__()
        self.label = label
        self.children: dict[str, int] = {}
        self.state = State.UNPOPULATED
        self.error: BackendError | None = None
        self._lock = threading.Lock()

    def populate(self, tree: "KubeTree"):
        raise NotImplementedError

    def ensure_populated(self, tree: "KubeTree"):
        """Run populate() once. Concurrent callers wait for the first one to finish."""
        if self.state is State.POPULATED:
            return
        with self._lock:
            if self.state is State.POPULATED:
                return
            if self.state is State.FAILED:
                raise self.error
            self.state = State.POPULATING
            try:
                self.populate(tree)
            except BackendError as e:
                self.state = State.FAILED
                self.error = e
                raise
            except Exception as e:
                self.state = State.FAILED
                self.error = BackendError(f"Populating {self.label} failed: {e!r}")
                raise self.error from e
            self.state = State.POPULATED
            logger.debug("Populated %s with %d entries", self.label, len(self.children))


class ResourceCollectionNode(DirectoryNode):
    """One file per resource returned by a lister bound to a single kind."""

    def __init__(self, label: str, namespace: str, lister):
        super().__init__(label)
        self.namespace = namespace
        self.lister = lister

    def populate(self, tree: "KubeTree"):
        try:
            items = self.lister(self.namespace)
        except ListError as e:
            if tree.policy is not FailurePolicy.ISOLATE:
                raise
            logger.warning("Listing %s failed, leaving it empty: %s", self.label, e)
            self.error = e
            tree.add_child(self, ERROR_FILE, FileNode(f"{e}\n".encode("utf-8")))
            return

        # Serialize everything before registering anything
        files = [(item.name, FileNode(serialize(item.payload))) for item in items]
        for name, node in files:
            tree.add_child(self, name, node)


class NamespaceNode(DirectoryNode):
    """The namespace descriptor plus one collection directory per resource kind."""

    def __init__(self, label: str, namespace: Namespace):
        super().__init__(label)
        self.namespace = namespace

    def populate(self, tree: "KubeTree"):
        tree.add_child(self, NAMESPACE_FILE, FileNode(serialize(self.namespace.payload)))
        connection = tree.connection.get()
        for dirname, kind in COLLECTIONS.items():
            lister = functools.partial(connection.list_resources, kind)
            tree.add_child(self, dirname, ResourceCollectionNode(
                f"{self.label}/{dirname}", self.namespace.name, lister
            ))


class RootNode(DirectoryNode):
    """Top-level directory: one NamespaceNode per namespace in the cluster."""

    def __init__(self):
        super().__init__("/")

    def populate(self, tree: "KubeTree"):
        connection = tree.connection.get()
        for ns in connection.list_namespaces():
            tree.add_child(self, ns.name, NamespaceNode(f"/{ns.name}", ns))


class KubeTree(Backend):
    """Expose a cluster as a read-only tree.

    Any error that escapes a population step is fatal: it is kept as
    fatal_error and every later operation raises it again. With the
    ISOLATE policy, failed resource listings are contained in their own
    directory instead.
    """

    def __init__(self, connection: SharedConnection | Connection,
                 policy: FailurePolicy = FailurePolicy.ABORT):
        if isinstance(connection, Connection):
            connection = SharedConnection(connection=connection)
        self.connection = connection
        self.policy = policy
        self.fatal_error: BackendError | None = None
        self._nodes: list[Node | None] = [None]
        self._nodes_lock = threading.Lock()
        self.root = RootNode()
        self._register(self.root)

    def _register(self, node: Node) -> int:
        with self._nodes_lock:
            node.inode = len(self._nodes)
            self._nodes.append(node)
        return node.inode

    def add_child(self, parent: DirectoryNode, name: str, node: Node) -> bool:
        """Register node under parent. A name already taken keeps its first node."""
        if name in parent.children:
            logger.warning("Duplicate entry %r in %s, keeping the first one", name, parent.label)
            return False
        parent.children[name] = self._register(node)
        return True

    def node(self, inode: int) -> Node:
        if inode <= 0 or inode >= len(self._nodes):
            raise NotFoundError(f"No such inode: {inode}")
        return self._nodes[inode]

    def _populate(self, node: DirectoryNode):
        try:
            node.ensure_populated(self)
        except BackendError as e:
            if self.fatal_error is None:
                logger.error("Populating %s failed: %s", node.label, e)
                self.fatal_error = e
            raise

    def _resolve(self, path: list[str]) -> Node:
        if self.fatal_error is not None:
            raise self.fatal_error
        node = self.root
        for part in path:
            if not node.is_dir:
                raise NotFoundError(f"Not found: /{'/'.join(path)}")
            self._populate(node)
            inode = node.children.get(part)
            if inode is None:
                raise NotFoundError(f"Not found: /{'/'.join(path)}")
            node = self._nodes[inode]
        return node

    def info(self, path: list[str]) -> ResourceInfo:
        node = self._resolve(path)
        if node.is_dir:
            return ResourceInfo(is_dir=True, mode=node.mode, inode=node.inode)
        return ResourceInfo(is_dir=False, size=node.size, mode=node.mode, inode=node.inode)

    def list(self, path: list[str]) -> list[str]:
        node = self._resolve(path)
        if not node.is_dir:
            raise NotFoundError(f"Not a directory: /{'/'.join(path)}")
        self._populate(node)
        return list(node.children)

    def get(self, path: list[str]) -> bytes:
        node = self._resolve(path)
        if node.is_dir:
            raise NotFoundError(f"Not a file: /{'/'.join(path)}")
        return node.data

    def read(self, path: list[str], size: int, offset: int) -> bytes:
        node = self._resolve(path)
        if node.is_dir:
            raise NotFoundError(f"Not a file: /{'/'.join(path)}")
        return node.read(size, offset)

    def walk(self, path: list[str] | None = None) -> Iterator[tuple[list[str], ResourceInfo]]:
        """Yield (path, info) for path and every node below it, depth first."""
        path = path or []
        info = self.info(path)
        yield path, info
        if info.is_dir:
            for name in self.list(path):
                yield from self.walk(path + [name])

    def prefetch(self) -> int:
        """Populate the whole tree now. Returns the number of nodes visited."""
        return sum(1 for _ in self.walk())
