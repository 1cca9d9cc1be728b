from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from reloader.src.metrics import METRICS
from reloader.src.resources import ResourceKind, WatchedResource, snapshot

UpdateHandler = Callable[[WatchedResource, WatchedResource], Any]


class ResourceWatcher:
    """Keeps a cluster-wide local mirror of one resource kind and dispatches updates.

    The watcher performs list-then-watch against the ``*_for_all_namespaces``
    endpoint of its kind.  Every ``MODIFIED`` event for a known object calls
    ``on_update(old, new)`` synchronously, so updates of one kind are handled
    strictly in arrival order.  ADDED and DELETED events only maintain the
    mirror.

    Key internal state:
        ``_cache``
            Maps ``(namespace, name)`` to the latest :class:`WatchedResource`.
            The previous snapshot is replaced as soon as it has been handed
            to ``on_update``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        resource_kind: ResourceKind,
        on_update: UpdateHandler,
        logger: logging.Logger | None = None,
        watch_timeout_seconds: int = 300,
    ) -> None:
        self.core_api = core_api
        self.resource_kind = resource_kind
        self.on_update = on_update
        self.logger = logger or logging.getLogger(__name__)
        self.watch_timeout_seconds = watch_timeout_seconds

        self._cache: dict[tuple[str, str], WatchedResource] = {}
        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def kind(self) -> str:
        return self.resource_kind.name

    def get(self, namespace: str, name: str) -> WatchedResource | None:
        return self._cache.get((namespace, name))

    def __len__(self) -> int:
        return len(self._cache)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> Any:
        return getattr(self.core_api, self.resource_kind.list_method)()

    def _dispatch_update(self, old: WatchedResource, new: WatchedResource) -> None:
        """Invoke the update handler; failures are logged and never end the watch."""
        try:
            self.on_update(old, new)
        except Exception:
            METRICS.handler_errors_total.labels(kind=self.kind).inc()
            self.logger.exception(
                "Update handler failed for %s %s/%s", self.kind, new.namespace, new.name
            )

    def replace_cache(self, listing: Any, notify: bool = False) -> None:
        """Replace the local mirror with a full listing.

        Called at startup (``notify=False``) to seed the mirror, and after a
        ``410 Gone`` re-list (``notify=True``) to dispatch updates for objects
        that changed while the watch was disconnected.  Objects absent from
        the listing are dropped.
        """
        items = getattr(listing, "items", None) or []
        fresh: dict[tuple[str, str], WatchedResource] = {}
        for obj in items:
            resource = snapshot(self.resource_kind, obj)
            if resource is not None:
                fresh[resource.key] = resource

        previous = self._cache
        self._cache = fresh
        if not notify:
            return

        for key, new in fresh.items():
            old = previous.get(key)
            if old is None or old.resource_version == new.resource_version:
                continue
            self.logger.info(
                "Detected %s %s/%s change after re-list", self.kind, new.namespace, new.name
            )
            self._dispatch_update(old, new)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply a single watch event to the mirror, dispatching updates for known objects."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return

        resource = snapshot(self.resource_kind, obj)
        if resource is None:
            return

        if event_type == "DELETED":
            self._cache.pop(resource.key, None)
            return

        old = self._cache.get(resource.key)
        self._cache[resource.key] = resource
        if old is None:
            return
        if event_type == "ADDED" and old.resource_version == resource.resource_version:
            return
        self._dispatch_update(old, resource)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch the resource kind until shutdown.

        1. Retries the initial list with exponential backoff so transient API
           startup failures do not crash-loop the controller.
        2. Seeds the mirror from the list and sets ``synced``.
        3. Opens a streaming watch from the list's ``resourceVersion`` and
           reconnects from the last seen version when the stream times out.
        4. On ``410 Gone`` (etcd compaction), re-lists and dispatches updates
           for objects that changed in the gap.
        5. On transient errors, applies exponential backoff with jitter
           (capped at 30 s).

        ``401`` / ``403`` responses are treated as configuration errors
        (RBAC/auth) and end the loop immediately.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list()
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self.replace_cache(initial, notify=False)
                self.synced.set()
                self.logger.info(
                    "Starting %s watch (%d objects) from resourceVersion %s",
                    self.kind,
                    len(self._cache),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self.synced.clear()
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

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
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    getattr(self.core_api, self.resource_kind.list_method),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_event(event_type=str(event.get("type", "")), obj=obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        fresh = self._list()
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self.replace_cache(fresh, notify=True)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.kind,
                                relist_exc.status,
                            )
                            self.synced.clear()
                            return
                        self.logger.exception("Failed to re-list %ss after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    self.synced.clear()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()
