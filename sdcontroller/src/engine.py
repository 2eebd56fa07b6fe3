from __future__ import annotations

import logging
import threading
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi

from sdcontroller.src.config import EngineConfig
from sdcontroller.src.dispatcher import Dispatcher
from sdcontroller.src.errors import CacheSyncError, LookupFailure, report_error
from sdcontroller.src.informer import EventHandlers, Informer, Store
from sdcontroller.src.metrics import METRICS
from sdcontroller.src.models import Envelope, Operation, SelectiveDeployment, WorkloadKind
from sdcontroller.src.normalizer import EventNormalizer
from sdcontroller.src.recovery import RecoveryTrigger
from sdcontroller.src.workqueue import RateLimitingQueue


class ReconciliationEngine:
    """Single owner of the work queue, the five caches and the worker.

    Five :class:`Informer` subscriptions (selective deployments, nodes and
    the three workload controller kinds) produce envelopes into one
    :class:`RateLimitingQueue`; one worker thread consumes them and calls the
    :class:`Dispatcher`.

    Shutdown is best-effort: once the stop event fires, subscriptions are
    interrupted and the queue is shut down. Envelopes still queued or being
    retried at that point are abandoned.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        dispatcher: Dispatcher,
        config: EngineConfig | None = None,
        queue: RateLimitingQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.apps_api = apps_api
        self.dispatcher = dispatcher
        self.logger = logger or logging.getLogger(__name__)
        self.queue = queue or RateLimitingQueue(
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_delay_seconds=self.config.retry_max_delay_seconds,
        )
        self.ready = threading.Event()

        self.normalizer = EventNormalizer()
        self.recovery = RecoveryTrigger(self)

        self.sd_informer = Informer(
            self.config.sd_plural,
            custom_api.list_cluster_custom_object,
            list_kwargs={
                "group": self.config.sd_group,
                "version": self.config.sd_version,
                "plural": self.config.sd_plural,
            },
            transform=SelectiveDeployment.from_dict,
            watch_timeout_seconds=self.config.watch_timeout_seconds,
        )
        self.sd_informer.add_event_handlers(
            EventHandlers(
                on_add=self._on_selective_deployment_add,
                on_update=self._on_selective_deployment_update,
                on_delete=self._on_selective_deployment_delete,
            )
        )

        self.node_informer = Informer(
            "nodes",
            core_api.list_node,
            watch_timeout_seconds=self.config.watch_timeout_seconds,
        )
        self.node_informer.add_event_handlers(self.recovery.node_handlers())

        self.workload_informers: dict[WorkloadKind, Informer] = {}
        for kind in WorkloadKind:
            informer = Informer(
                f"{kind.kind.lower()}s",
                getattr(apps_api, kind.list_method),
                watch_timeout_seconds=self.config.watch_timeout_seconds,
            )
            informer.add_event_handlers(self.recovery.workload_handlers(kind))
            self.workload_informers[kind] = informer

    @property
    def informers(self) -> list[Informer]:
        return [self.sd_informer, self.node_informer, *self.workload_informers.values()]

    @property
    def selective_deployments(self) -> Store:
        return self.sd_informer.store

    def cache_status(self) -> dict[str, bool]:
        return {informer.resource: informer.has_synced() for informer in self.informers}

    def enqueue(self, envelope: Envelope, source: str) -> None:
        METRICS.events_enqueued_total.labels(
            source=source, operation=envelope.operation.value
        ).inc()
        self.queue.add(envelope)

    def _on_selective_deployment_add(self, sd: SelectiveDeployment) -> None:
        envelope = self.normalizer.on_add(sd)
        if envelope is not None:
            self.enqueue(envelope, source="selectivedeployment")

    def _on_selective_deployment_update(
        self, old: SelectiveDeployment, new: SelectiveDeployment
    ) -> None:
        envelope = self.normalizer.on_update(old, new)
        if envelope is not None:
            self.enqueue(envelope, source="selectivedeployment")

    def _on_selective_deployment_delete(self, sd: SelectiveDeployment) -> None:
        envelope = self.normalizer.on_delete(sd)
        if envelope is not None:
            self.enqueue(envelope, source="selectivedeployment")

    def _dispatch(self, envelope: Envelope, item: Any, exists: bool) -> None:
        key = envelope.key
        if not exists:
            if envelope.operation is Operation.DELETE:
                self.logger.info("Object deleted detected: %s", key)
                self.dispatcher.object_deleted(item, envelope.delta)
                METRICS.dispatch_total.labels(operation=envelope.operation.value).inc()
            else:
                self.logger.debug("Skipping %s for %s: no longer cached", envelope.operation, key)
            return

        if envelope.operation is Operation.CREATE:
            self.logger.info("Object created detected: %s", key)
            self.dispatcher.object_created(item)
        elif envelope.operation is Operation.UPDATE:
            self.logger.info("Object updated detected: %s", key)
            self.dispatcher.object_updated(item, envelope.delta)
        else:
            self.logger.debug("Skipping delete for %s: object is cached again", key)
            return
        METRICS.dispatch_total.labels(operation=envelope.operation.value).inc()

    def _process(self, envelope: Envelope) -> None:
        key = envelope.key
        try:
            item, exists = self.selective_deployments.get_by_key(key)
        except LookupFailure as exc:
            if self.queue.num_requeues(key) < self.config.max_lookup_retries:
                self.logger.error("Failed processing item with key %s: %s, retrying", key, exc)
                METRICS.lookup_retries_total.inc()
                self.queue.add_rate_limited(envelope)
            else:
                self.logger.error(
                    "Failed processing item with key %s: %s, no more retries", key, exc
                )
                self.queue.forget(key)
                METRICS.dropped_items_total.inc()
                report_error(exc, context="lookup")
            return

        try:
            self._dispatch(envelope, item, exists)
        except Exception:
            self.logger.exception(
                "Dispatcher failed handling %s for %s", envelope.operation.value, key
            )
            METRICS.dispatch_errors_total.inc()
        self.queue.forget(key)

        if len(self.queue) == 0:
            try:
                self.dispatcher.configure_controllers()
            except Exception:
                self.logger.exception("configure_controllers failed")
                METRICS.dispatch_errors_total.inc()

    def process_next_item(self) -> bool:
        """Handle one envelope; return False once the queue has shut down."""
        envelope, shutting_down = self.queue.get()
        if shutting_down or envelope is None:
            return False
        try:
            self._process(envelope)
        finally:
            self.queue.done(envelope)
        return True

    def run_worker(self) -> None:
        self.logger.debug("Worker starting")
        while self.process_next_item():
            pass
        self.logger.debug("Worker completed")

    def _run_worker_until(self, stop: threading.Event) -> None:
        while not stop.is_set() and not self.queue.shutting_down:
            try:
                self.run_worker()
            except Exception:
                self.logger.exception("Worker crashed; restarting")
            stop.wait(timeout=1.0)

    def wait_for_cache_sync(self, stop: threading.Event, poll_seconds: float = 0.1) -> bool:
        """Block until every cache has synced; False when stopped or a cache failed."""
        while not stop.is_set():
            if all(informer.has_synced() for informer in self.informers):
                return True
            if any(informer.failed.is_set() for informer in self.informers):
                return False
            stop.wait(timeout=poll_seconds)
        return False

    def _failed_subscriptions(self) -> list[str]:
        return [informer.resource for informer in self.informers if informer.failed.is_set()]

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Start the subscriptions and the worker, then block until stopped.

        Raises :class:`CacheSyncError` when a subscription fails before or
        after the initial sync; the worker is never started against caches
        that have not finished their initial listing.
        """
        stop = stop_event or threading.Event()
        self.logger.info("Engine initiating")
        self.dispatcher.init()

        for informer in self.informers:
            threading.Thread(
                target=informer.run,
                kwargs={"stop_event": stop},
                name=f"informer-{informer.resource}",
                daemon=True,
            ).start()

        try:
            if not self.wait_for_cache_sync(stop):
                if stop.is_set():
                    return
                error = CacheSyncError(
                    f"error syncing cache: {', '.join(self._failed_subscriptions())}"
                )
                report_error(error, context="cache_sync")
                raise error

            self.ready.set()
            self.logger.info("Cache sync complete")
            threading.Thread(
                target=self._run_worker_until,
                args=(stop,),
                name="worker",
                daemon=True,
            ).start()

            while not stop.wait(timeout=1.0):
                failed = self._failed_subscriptions()
                if failed:
                    error = CacheSyncError(f"subscriptions stopped: {', '.join(failed)}")
                    report_error(error, context="cache_sync")
                    raise error
        finally:
            self.ready.clear()
            for informer in self.informers:
                informer.request_stop()
            self.queue.shutdown()
            self.logger.info("Engine stopped")
