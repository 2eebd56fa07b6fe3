from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

from kubernetes.client import ApiException

from sdcontroller.src.errors import KeyDerivationError, LookupFailure
from sdcontroller.src.informer import EventHandlers
from sdcontroller.src.kube import create_workload, owner_reference_for, replace_workload
from sdcontroller.src.metrics import METRICS
from sdcontroller.src.models import (
    Envelope,
    Operation,
    SelectiveDeployment,
    WorkloadKind,
    addresses_changed,
    node_ready_status,
    node_unschedulable,
    object_key,
    resource_version,
)

if TYPE_CHECKING:
    from sdcontroller.src.engine import ReconciliationEngine

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


def _name_of(obj: Any) -> str:
    try:
        return object_key(obj)
    except KeyDerivationError:
        return "<unknown>"


class RecoveryTrigger:
    """Reacts to node and workload signals on behalf of the engine.

    Node transitions re-queue the selective deployments that may now be
    stale as synthetic ``create`` envelopes. Out-of-band changes to owned
    workload controllers are corrected directly: a drifted object is written
    back with its previous pod affinity, and a deleted one is recreated with
    its owner references restored. Corrective writes are not retried; the
    next drift or delete event runs the same path again.
    """

    def __init__(self, engine: ReconciliationEngine, logger: logging.Logger | None = None) -> None:
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)

    def _requeue(self, sd: SelectiveDeployment, signal: str, source: str) -> None:
        self.logger.info("SD %s: %s, recovery started for: %s", signal, source, sd.key)
        METRICS.recovery_triggers_total.labels(signal=signal).inc()
        self.engine.enqueue(Envelope(key=sd.key, operation=Operation.CREATE), source=signal)

    # Nodes

    def node_handlers(self) -> EventHandlers:
        return EventHandlers(
            on_add=self.on_node_add,
            on_update=self.on_node_update,
            on_delete=self.on_node_delete,
        )

    def on_node_add(self, node: Any) -> None:
        if node_ready_status(node) == "True":
            self._recover_after_node_ready(node, signal="node_added")

    def on_node_update(self, old: Any, new: Any) -> None:
        old_ready = node_ready_status(old)
        new_ready = node_ready_status(new)
        old_unschedulable = node_unschedulable(old)
        new_unschedulable = node_unschedulable(new)

        if (old_ready in {"False", "Unknown"} and new_ready == "True") or (
            old_unschedulable and not new_unschedulable
        ):
            self._recover_after_node_ready(new, signal="node_ready")
        elif (
            (old_ready == "True" and new_ready in {"False", "Unknown"})
            or (not old_unschedulable and new_unschedulable)
            or (not new_unschedulable and new_ready == "True" and addresses_changed(old, new))
        ):
            self._recover_node_owners(new, signal="node_unhealthy")

    def on_node_delete(self, node: Any) -> None:
        self._recover_node_owners(node, signal="node_deleted")

    def _recover_after_node_ready(self, node: Any, signal: str) -> None:
        node_name = _name_of(node)
        for sd in self.engine.selective_deployments.list():
            if sd.needs_recovery_on_node_ready():
                self._requeue(sd, signal=signal, source=node_name)

    def _recover_node_owners(self, node: Any, signal: str) -> None:
        node_name = _name_of(node)
        owners, found = self.engine.dispatcher.get_selective_deployments(node_name)
        if not found:
            return

        for namespace, name in owners:
            key = f"{namespace}/{name}" if namespace else name
            try:
                sd, exists = self.engine.selective_deployments.get_by_key(key)
            except LookupFailure:
                self.logger.exception("Cannot resolve owner %s of node %s", key, node_name)
                continue
            if not exists:
                self.logger.warning(
                    "Owner %s of node %s is not in the cache; skipping recovery", key, node_name
                )
                continue
            self._requeue(sd, signal=signal, source=node_name)

    # Workload controllers

    def workload_handlers(self, kind: WorkloadKind) -> EventHandlers:
        return EventHandlers(
            on_add=lambda obj: self.on_workload_add(kind, obj),
            on_update=lambda old, new: self.on_workload_update(kind, old, new),
            on_delete=lambda obj: self.on_workload_delete(kind, obj),
        )

    def on_workload_add(self, kind: WorkloadKind, obj: Any) -> None:
        owners, matched = self.engine.dispatcher.check_controller_status(
            None, obj, Operation.CREATE
        )
        if not matched:
            return
        for sd in owners:
            self._requeue(sd, signal=f"{kind.kind.lower()}_added", source=_name_of(obj))

    def on_workload_update(self, kind: WorkloadKind, old: Any, new: Any) -> None:
        # Re-lists report every object again; a new version always has a new
        # resourceVersion.
        if resource_version(new) == resource_version(old):
            return

        _, matched = self.engine.dispatcher.check_controller_status(old, new, Operation.UPDATE)
        if not matched:
            return

        key = _name_of(new)
        self.logger.info("SD %s updated, recovery started: %s", kind.kind, key)
        METRICS.recovery_triggers_total.labels(signal=f"{kind.kind.lower()}_drift").inc()

        restored = copy.deepcopy(new)
        restored.spec.template.spec.affinity = copy.deepcopy(old.spec.template.spec.affinity)
        annotations = restored.metadata.annotations
        if annotations:
            annotations.pop(LAST_APPLIED_ANNOTATION, None)
        restored.metadata.resource_version = None

        try:
            replace_workload(self.engine.apps_api, kind, restored)
        except ApiException:
            self.logger.exception(
                "Failed to restore %s %s after drift (operation=replace)", kind.kind, key
            )
            METRICS.self_heal_total.labels(kind=kind.kind, action="replace", result="error").inc()
            return
        METRICS.self_heal_total.labels(kind=kind.kind, action="replace", result="ok").inc()

    def on_workload_delete(self, kind: WorkloadKind, obj: Any) -> None:
        owners, matched = self.engine.dispatcher.check_controller_status(
            None, obj, Operation.DELETE
        )
        if not matched or not owners:
            return

        key = _name_of(obj)
        self.logger.info("SD %s deleted, recovery started: %s", kind.kind, key)
        METRICS.recovery_triggers_total.labels(signal=f"{kind.kind.lower()}_deleted").inc()

        recreated = copy.deepcopy(obj)
        metadata = recreated.metadata
        metadata.resource_version = None
        metadata.uid = None
        metadata.creation_timestamp = None
        metadata.deletion_timestamp = None
        metadata.managed_fields = None
        metadata.owner_references = [
            owner_reference_for(sd, self.engine.config.sd_api_version) for sd in owners
        ]
        recreated.status = None

        try:
            create_workload(self.engine.apps_api, kind, recreated)
        except ApiException:
            self.logger.exception(
                "Failed to recreate %s %s after deletion (operation=create)", kind.kind, key
            )
            METRICS.self_heal_total.labels(kind=kind.kind, action="create", result="error").inc()
            return
        METRICS.self_heal_total.labels(kind=kind.kind, action="create", result="ok").inc()
