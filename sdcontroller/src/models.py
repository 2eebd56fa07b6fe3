from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any

from sdcontroller.src.errors import KeyDerivationError

FEWER_NODES_MARKER = "fewer nodes issue"
SELECTIVE_DEPLOYMENT_KIND = "SelectiveDeployment"


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DeploymentState(StrEnum):
    FAILURE = "Failure"
    PARTIAL = "Running Partially"
    RUNNING = "Running"


class WorkloadKind(Enum):
    """The workload controller kinds a selective deployment can own.

    Each member carries the Kubernetes ``kind`` and the ``AppsV1Api`` method
    suffix, so list/replace/create calls are resolved from the variant instead
    of a per-kind branch.
    """

    DEPLOYMENT = ("Deployment", "deployment")
    DAEMONSET = ("DaemonSet", "daemon_set")
    STATEFULSET = ("StatefulSet", "stateful_set")

    def __init__(self, kind: str, api_suffix: str) -> None:
        self.kind = kind
        self.api_suffix = api_suffix

    @property
    def list_method(self) -> str:
        return f"list_{self.api_suffix}_for_all_namespaces"

    @property
    def replace_method(self) -> str:
        return f"replace_namespaced_{self.api_suffix}"

    @property
    def create_method(self) -> str:
        return f"create_namespaced_{self.api_suffix}"

    @classmethod
    def from_kind(cls, kind: str) -> WorkloadKind:
        for member in cls:
            if member.kind.lower() == kind.strip().lower():
                return member
        raise ValueError(f"unsupported workload kind: {kind!r}")


@dataclass(frozen=True)
class ControllerRef:
    """A ``{Type, Name}`` entry of a selective deployment's controller list."""

    type: str
    name: str


@dataclass(frozen=True)
class Selector:
    """Node-selection predicate plus the expected node count.

    ``quantity == 0`` means every matching node; a positive value means
    exactly that many matching nodes are expected.
    """

    name: str
    value: tuple[str, ...]
    operator: str
    quantity: int


@dataclass(frozen=True)
class SelectiveDeploymentStatus:
    state: str = ""
    message: str = ""
    fewer_nodes: bool = False

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> SelectiveDeploymentStatus:
        raw = raw or {}
        message = raw.get("message") or ""
        if isinstance(message, list):
            message = "; ".join(str(part) for part in message)
        message = str(message)

        # Older dispatchers only report the condition in the message text.
        fewer_nodes = raw.get("fewerNodes")
        if fewer_nodes is None:
            fewer_nodes = FEWER_NODES_MARKER in message.lower()

        return cls(
            state=str(raw.get("state") or ""),
            message=message,
            fewer_nodes=bool(fewer_nodes),
        )


@dataclass(frozen=True)
class SelectiveDeployment:
    """Parsed view of a ``SelectiveDeployment`` custom object."""

    namespace: str
    name: str
    uid: str = ""
    api_version: str = ""
    type: str = ""
    controllers: tuple[ControllerRef, ...] = ()
    selectors: tuple[Selector, ...] = ()
    status: SelectiveDeploymentStatus = field(default_factory=SelectiveDeploymentStatus)
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SelectiveDeployment:
        metadata = raw.get("metadata") or {}
        spec = raw.get("spec") or {}

        controllers = tuple(
            ControllerRef(type=str(entry.get("type", "")), name=str(entry.get("name", "")))
            for entry in spec.get("controller") or []
            if isinstance(entry, Mapping)
        )
        selectors = tuple(
            Selector(
                name=str(entry.get("name", "")),
                value=tuple(str(v) for v in entry.get("value") or []),
                operator=str(entry.get("operator", "")),
                quantity=int(entry.get("quantity") or entry.get("count") or 0),
            )
            for entry in spec.get("selector") or []
            if isinstance(entry, Mapping)
        )

        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            uid=str(metadata.get("uid") or ""),
            api_version=str(raw.get("apiVersion") or ""),
            type=str(spec.get("type") or ""),
            controllers=controllers,
            selectors=selectors,
            status=SelectiveDeploymentStatus.from_dict(raw.get("status")),
            resource_version=str(metadata.get("resourceVersion") or ""),
        )

    def needs_recovery_on_node_ready(self) -> bool:
        """Return True when a node becoming ready may let this deployment grow.

        Only ``Running`` and ``Running Partially`` deployments qualify. The
        first selector that asks for all nodes, or that asks for a fixed count
        while the status reports too few nodes, decides the answer.
        """
        if self.status.state not in {DeploymentState.PARTIAL, DeploymentState.RUNNING}:
            return False
        for selector in self.selectors:
            if selector.quantity == 0 or self.status.fewer_nodes:
                return True
        return False


@dataclass(frozen=True)
class Envelope:
    """A queued unit of work: which resource changed and how."""

    key: str
    operation: Operation
    delta: str = ""


def _metadata_fields(obj: Any) -> tuple[str | None, str | None, str | None]:
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata") or {}
        return (
            metadata.get("namespace"),
            metadata.get("name"),
            metadata.get("resourceVersion"),
        )
    if isinstance(obj, SelectiveDeployment):
        return obj.namespace, obj.name, obj.resource_version
    metadata = getattr(obj, "metadata", None)
    return (
        getattr(metadata, "namespace", None),
        getattr(metadata, "name", None),
        getattr(metadata, "resource_version", None),
    )


def object_key(obj: Any) -> str:
    """Return ``namespace/name`` for namespaced objects and ``name`` otherwise."""
    namespace, name, _ = _metadata_fields(obj)
    if not name:
        raise KeyDerivationError(f"object has no metadata.name: {type(obj).__name__}")
    return f"{namespace}/{name}" if namespace else str(name)


def resource_version(obj: Any) -> str | None:
    return _metadata_fields(obj)[2]


def node_ready_status(node: Any) -> str:
    """Return the node's Ready condition status (``True``/``False``/``Unknown``)."""
    conditions = getattr(getattr(node, "status", None), "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "Ready":
            return str(getattr(condition, "status", "Unknown") or "Unknown")
    return "Unknown"


def node_unschedulable(node: Any) -> bool:
    return bool(getattr(getattr(node, "spec", None), "unschedulable", False))


def node_addresses(node: Any) -> frozenset[tuple[str, str]]:
    addresses = getattr(getattr(node, "status", None), "addresses", None) or []
    return frozenset(
        (str(entry.type), str(entry.address))
        for entry in addresses
        if getattr(entry, "type", None) in {"InternalIP", "ExternalIP"}
    )


def addresses_changed(old: Any, new: Any) -> bool:
    return node_addresses(old) != node_addresses(new)
