from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from sdcontroller.src.errors import KeyDerivationError, LookupFailure
from sdcontroller.src.metrics import METRICS
from sdcontroller.src.models import object_key


@dataclass
class EventHandlers:
    """Callbacks invoked by an :class:`Informer` after its store was updated."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class Store:
    """Thread-safe local cache keyed by ``namespace/name`` (or ``name``)."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get_by_key(self, key: str) -> tuple[Any, bool]:
        parts = key.split("/")
        if not key or len(parts) > 2 or not all(parts):
            raise LookupFailure(f"unexpected key format: {key!r}")
        with self._lock:
            if key in self._items:
                return self._items[key], True
            return None, False

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def put(self, key: str, obj: Any) -> Any:
        """Store *obj* and return whatever was cached under *key* before."""
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
            return previous

    def pop(self, key: str) -> Any:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, items: Mapping[str, Any]) -> dict[str, Any]:
        """Swap the whole content and return the previous content."""
        with self._lock:
            previous = self._items
            self._items = dict(items)
            return previous

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _list_items(result: Any) -> list[Any]:
    if isinstance(result, Mapping):
        return list(result.get("items") or [])
    return list(getattr(result, "items", None) or [])


def _list_resource_version(result: Any) -> str | None:
    if isinstance(result, Mapping):
        return (result.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(result, "metadata", None), "resource_version", None)


def _event_resource_version(obj: Any) -> str | None:
    if isinstance(obj, Mapping):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch subscription for one resource kind.

    Keeps :attr:`store` consistent with the API server and calls the
    registered :class:`EventHandlers` for every change. The loop:

    1. Lists the resource, retrying with jittered exponential backoff
       (1 s doubling to 30 s) until it succeeds or the stop event fires.
    2. Replaces the store with the listing and notifies handlers of the
       difference. Objects present before and after are reported as updates,
       so handlers see re-list noise with an unchanged ``resourceVersion``.
    3. Sets :attr:`synced` and watches from the list's ``resourceVersion``.
    4. On ``410 Gone`` re-lists and resumes; on other errors backs off.

    ``401`` / ``403`` responses are configuration errors (RBAC): the
    subscription sets :attr:`failed`, clears :attr:`synced` and returns.

    Objects the transform rejects are logged and left out of the store. Any
    other unexpected exit from the loop also sets :attr:`failed`.
    """

    def __init__(
        self,
        resource: str,
        list_func: Callable[..., Any],
        *,
        list_kwargs: Mapping[str, Any] | None = None,
        transform: Callable[[Any], Any] | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.list_func = list_func
        self.list_kwargs = dict(list_kwargs or {})
        self.transform = transform or (lambda obj: obj)
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(f"{__name__}.{resource}")

        self.store = Store()
        self.synced = threading.Event()
        self.failed = threading.Event()
        self._handlers: list[EventHandlers] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handlers(self, handlers: EventHandlers) -> None:
        self._handlers.append(handlers)

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _notify(self, callback_name: str, *args: Any) -> None:
        for handlers in self._handlers:
            callback = getattr(handlers, callback_name)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                self.logger.exception("%s handler failed for %s", callback_name, self.resource)

    def _transform(self, raw: Any) -> Any:
        """Return the cached form of *raw*, or ``None`` when it cannot be parsed."""
        try:
            return self.transform(raw)
        except Exception:
            self.logger.warning(
                "Skipping malformed %s object %s", self.resource, object_key(raw), exc_info=True
            )
            METRICS.events_suppressed_total.labels(reason="malformed").inc()
            return None

    def _replace_from_list(self, result: Any) -> None:
        fresh: dict[str, Any] = {}
        for raw in _list_items(result):
            try:
                key = object_key(raw)
            except KeyDerivationError:
                self.logger.warning("Skipping %s list item without a name", self.resource)
                continue
            obj = self._transform(raw)
            if obj is not None:
                fresh[key] = obj

        previous = self.store.replace(fresh)
        for key, old in previous.items():
            if key not in fresh:
                self._notify("on_delete", old)
        for key, new in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_add", new)
            else:
                self._notify("on_update", old, new)

    def handle_watch_event(self, event_type: str, raw: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        METRICS.watch_events_total.labels(resource=self.resource, type=event_type).inc()
        if event_type == "BOOKMARK":
            return
        if event_type == "ERROR":
            code = raw.get("code") if isinstance(raw, Mapping) else None
            raise ApiException(status=code or 500, reason="watch error event")

        try:
            key = object_key(raw)
        except KeyDerivationError:
            self.logger.warning("Ignoring %s %s event without a name", self.resource, event_type)
            return

        obj = self._transform(raw)
        if obj is None:
            # A malformed tombstone still removes whatever was cached.
            if event_type == "DELETED":
                old = self.store.pop(key)
                if old is not None:
                    self._notify("on_delete", old)
            return
        if event_type in {"ADDED", "MODIFIED"}:
            old = self.store.put(key, obj)
            if old is None:
                self._notify("on_add", obj)
            else:
                self._notify("on_update", old, obj)
        elif event_type == "DELETED":
            self.store.pop(key)
            self._notify("on_delete", obj)

    def _list(self) -> Any:
        return self.list_func(**self.list_kwargs)

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        self.failed.clear()
        try:
            self._run(stop)
        except Exception:
            self.logger.exception("Subscription to %s stopped unexpectedly", self.resource)
            METRICS.watch_errors_total.labels(resource=self.resource).inc()
            self.failed.set()
            self.synced.clear()

    def _run(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list()
                resource_version = _list_resource_version(initial)
                self._replace_from_list(initial)
                self.synced.set()
                self.logger.info(
                    "Cache for %s synced (%d objects), watching from resourceVersion %s",
                    self.resource,
                    len(self.store),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    self.failed.set()
                    self.synced.clear()
                    return
                self.logger.exception("Initial list of %s failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.synced.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    event_resource_version = _event_resource_version(obj)
                    if event_resource_version:
                        resource_version = event_resource_version

                    self.handle_watch_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # etcd compacted past our resourceVersion; only a fresh list
                # gives a usable starting point again.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.resource)
                    try:
                        fresh = self._list()
                        resource_version = _list_resource_version(fresh)
                        self._replace_from_list(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.resource,
                                relist_exc.status,
                            )
                            self.failed.set()
                            self.synced.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    except Exception:
                        self.logger.exception(
                            "Unexpected error re-listing %s after 410", self.resource
                        )
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch of %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    self.failed.set()
                    self.synced.clear()
                    return

                self.logger.exception("Kubernetes API watch error for %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
