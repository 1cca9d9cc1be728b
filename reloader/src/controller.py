from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from kubernetes.client import AppsV1Api, CoreV1Api

from reloader.src.config import ReloaderConfig
from reloader.src.detector import ChangeDetector
from reloader.src.kube import utc_now_rfc3339
from reloader.src.resources import CONFIG_MAP, SECRET, WatchedResource
from reloader.src.rollout import RolloutCoordinator, RolloutResult
from reloader.src.watcher import ResourceWatcher


class ConfigReloader:
    """Restarts workloads when the ConfigMaps or Secrets they are labeled with change.

    Runs one :class:`ResourceWatcher` per resource kind, each on its own
    thread.  Both feed :meth:`handle_update`, which asks the
    :class:`ChangeDetector` whether the update matters and hands the
    resulting event to the :class:`RolloutCoordinator`.  The two pipelines
    share only the read-only configuration, the API clients and one stop
    event used to interrupt watch streams and retry back-off on shutdown.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        settings: ReloaderConfig,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        stop_join_timeout_seconds: float = 45.0,
    ) -> None:
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.stop_join_timeout_seconds = stop_join_timeout_seconds
        self.ready = threading.Event()
        self._stop = threading.Event()

        self.detector = ChangeDetector(match_label=settings.match_label)
        self.coordinator = RolloutCoordinator(
            apps_api=apps_api,
            match_label=settings.match_label,
            retry_attempts=settings.retry_attempts,
            stop_event=self._stop,
            now_fn=now_fn,
        )
        self.watchers = [
            ResourceWatcher(core_api=core_api, resource_kind=kind, on_update=self.handle_update)
            for kind in (CONFIG_MAP, SECRET)
        ]

    def handle_update(self, old: WatchedResource, new: WatchedResource) -> RolloutResult | None:
        """Run one update through change detection and, if needed, a rollout."""
        event = self.detector.detect(old, new)
        if event is None:
            return None
        result = self.coordinator.rollout(event)
        self.logger.info(
            "Rollout for %s=%s in namespace %s: matched=%d restarted=%d failed=%d",
            self.settings.match_label,
            result.label_value,
            result.namespace,
            result.matched,
            result.restarted,
            result.failed,
        )
        return result

    def request_stop(self) -> None:
        """Signal every watcher and in-flight retry to stop."""
        self._stop.set()
        for watcher in self.watchers:
            watcher.request_stop()

    def _all_synced(self) -> bool:
        return all(watcher.synced.is_set() for watcher in self.watchers)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start both watch loops and block until shutdown.

        A watch loop that exits without a stop request (for example after an
        RBAC denial) stops the whole controller so the process can exit and
        be restarted rather than silently running half its pipeline.
        """
        shutdown = shutdown_event or threading.Event()
        self._stop.clear()
        self.logger.info("starting cre, match-label: %s", self.settings.match_label)

        threads: list[threading.Thread] = []
        for watcher in self.watchers:

            def _run(watcher: ResourceWatcher = watcher) -> None:
                try:
                    watcher.run_forever(shutdown_event=self._stop)
                except Exception:
                    self.logger.exception("%s watch loop crashed", watcher.kind)
                if not self._stop.is_set():
                    self.logger.error(
                        "%s watch loop exited without a stop signal; stopping controller",
                        watcher.kind,
                    )
                    shutdown.set()

            thread = threading.Thread(
                target=_run, name=f"{watcher.kind.lower()}-watcher", daemon=True
            )
            thread.start()
            threads.append(thread)

        while not shutdown.wait(timeout=1.0):
            if self._all_synced():
                self.ready.set()
            else:
                self.ready.clear()

        self.ready.clear()
        self.request_stop()
        for thread in threads:
            thread.join(timeout=self.stop_join_timeout_seconds)
            if thread.is_alive():
                self.logger.error(
                    "Thread %s did not stop within %ss", thread.name, self.stop_join_timeout_seconds
                )


def build_reloader(
    core_api: CoreV1Api, apps_api: AppsV1Api, settings: ReloaderConfig
) -> ConfigReloader:
    """Construct a :class:`ConfigReloader` sharing one pair of API clients."""
    return ConfigReloader(core_api=core_api, apps_api=apps_api, settings=settings)
