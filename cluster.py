"""Cluster connections: where the tree gets its namespaces and resources.

A connection answers two questions: which namespaces exist, and which
resources of a given kind live in a namespace. Payloads are plain
JSON-compatible dicts, shaped exactly as the API server returns them.

Two implementations:
    KubernetesConnection  the real cluster, via the kubernetes client
    MemoryConnection      a nested dict, for tests and offline use
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from backend import ClusterConnectionError, ListError, SerializationError

logger = logging.getLogger(__name__)

SERVICE = "Service"
DEPLOYMENT = "Deployment"
INGRESS = "Ingress"

# Directory name under each namespace -> resource kind, in listing order
COLLECTIONS = {
    "services": SERVICE,
    "deployments": DEPLOYMENT,
    "ingresses": INGRESS,
}

JSON_INDENT = 1


@dataclass
class Namespace:
    name: str
    payload: Any = field(default_factory=dict)


@dataclass
class ResourceItem:
    name: str
    payload: Any = field(default_factory=dict)


def serialize(payload: Any) -> bytes:
    """Render a payload as indented JSON bytes."""
    try:
        text = json.dumps(payload, indent=JSON_INDENT, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot serialize payload: {e}") from e
    return text.encode("utf-8")


class Connection:
    """Abstract cluster connection."""

    def list_namespaces(self) -> list[Namespace]:
        """Return every namespace, in the order the cluster reports them."""
        raise NotImplementedError

    def list_resources(self, kind: str, namespace: str) -> list[ResourceItem]:
        """Return the resources of one kind in a namespace. Raises ListError."""
        raise NotImplementedError


class KubernetesConnection(Connection):
    """Connection backed by the typed kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self._api = api_client
        self._core = client.CoreV1Api(api_client)
        self._apps = client.AppsV1Api(api_client)
        self._networking = client.NetworkingV1Api(api_client)

    def _listers(self) -> dict[str, Callable]:
        return {
            SERVICE: self._core.list_namespaced_service,
            DEPLOYMENT: self._apps.list_namespaced_deployment,
            INGRESS: self._networking.list_namespaced_ingress,
        }

    def _to_payload(self, obj) -> Any:
        return self._api.sanitize_for_serialization(obj)

    def list_namespaces(self) -> list[Namespace]:
        try:
            items = self._core.list_namespace().items
        except (ApiException, HTTPError, OSError, ValueError) as e:
            raise ListError(f"Cannot list namespaces: {e}") from e
        try:
            return [Namespace(ns.metadata.name, self._to_payload(ns)) for ns in items]
        except (AttributeError, TypeError, ValueError) as e:
            raise ListError(f"Malformed namespace list: {e}") from e

    def list_resources(self, kind: str, namespace: str) -> list[ResourceItem]:
        lister = self._listers().get(kind)
        if lister is None:
            raise ListError(f"Unsupported resource kind: {kind}")
        try:
            items = lister(namespace=namespace).items
        except (ApiException, HTTPError, OSError, ValueError) as e:
            raise ListError(f"Cannot list {kind} in {namespace}: {e}") from e
        try:
            return [ResourceItem(r.metadata.name, self._to_payload(r)) for r in items]
        except (AttributeError, TypeError, ValueError) as e:
            raise ListError(f"Malformed {kind} list in {namespace}: {e}") from e


class MemoryConnection(Connection):
    """In-memory connection backed by a nested dict.

    Top-level keys are namespace names. Each namespace maps "namespace" to
    its descriptor payload and a collection directory name to a dict of
    resource name -> payload. Missing entries mean empty.

    Example:
        MemoryConnection({
            "default": {
                "namespace": {"metadata": {"name": "default"}},
                "services": {"svc-a": {"spec": {"type": "ClusterIP"}}},
            },
        })
    """

    def __init__(self, cluster: dict):
        self._cluster = cluster
        self._dirs = {kind: name for name, kind in COLLECTIONS.items()}

    def list_namespaces(self) -> list[Namespace]:
        return [
            Namespace(name, ns.get("namespace", {"metadata": {"name": name}}))
            for name, ns in self._cluster.items()
        ]

    def list_resources(self, kind: str, namespace: str) -> list[ResourceItem]:
        if kind not in self._dirs:
            raise ListError(f"Unsupported resource kind: {kind}")
        resources = self._cluster.get(namespace, {}).get(self._dirs[kind], {})
        return [ResourceItem(name, payload) for name, payload in resources.items()]


def default_kubeconfig_path() -> str:
    """$KUBECONFIG if set, otherwise ~/.kube/config ("" without a home directory)."""
    env = os.environ.get("KUBECONFIG")
    if env:
        return env
    home = os.path.expanduser("~")
    if not home or home == "~":
        return ""
    return os.path.join(home, ".kube", "config")


def bootstrap_connection(config_path: str | None = None, context: str | None = None,
                         in_cluster: bool = False) -> KubernetesConnection:
    """Build a connection from a kubeconfig file or the in-cluster service account."""
    if in_cluster:
        try:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
        except ConfigException as e:
            raise ClusterConnectionError(f"Cannot load in-cluster config: {e}") from e
        logger.info("Using in-cluster service account")
        return KubernetesConnection(client.ApiClient(configuration=configuration))

    path = config_path or default_kubeconfig_path()
    if not path:
        raise ClusterConnectionError("No kubeconfig path: set --kubeconfig or $KUBECONFIG")
    try:
        api_client = config.new_client_from_config(config_file=path, context=context)
    except (ConfigException, OSError, ValueError, yaml.YAMLError) as e:
        raise ClusterConnectionError(f"Cannot load kubeconfig {path}: {e}") from e
    logger.info("Loaded kubeconfig %s", path)
    return KubernetesConnection(api_client)


class SharedConnection:
    """A connection built at most once, on first use, and shared by all nodes."""

    def __init__(self, factory: Callable[[], Connection] | None = None,
                 connection: Connection | None = None):
        if factory is None and connection is None:
            raise ValueError("SharedConnection needs a factory or a connection")
        self._factory = factory
        self._connection = connection
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._connection is not None

    def get(self) -> Connection:
        with self._lock:
            if self._connection is None:
                self._connection = self._factory()
            return self._connection
