from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from kubernetes.client import ApiException, AppsV1Api

from reloader.src.detector import RolloutEvent
from reloader.src.kube import (
    WORKLOAD_KINDS,
    WorkloadKind,
    list_workloads,
    patch_workload_restart,
    utc_now_rfc3339,
)
from reloader.src.metrics import METRICS

T = TypeVar("T")

# Client errors that a retry cannot fix (bad request, auth, object gone, invalid patch).
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 422})


class RetryAbortedError(RuntimeError):
    """Raised when a retry wait is interrupted by a shutdown request."""


def call_with_retry(
    operation: Callable[[], T],
    *,
    description: str,
    attempts: int,
    stop_event: threading.Event,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 30.0,
    logger: logging.Logger | None = None,
) -> T:
    """Call *operation* until it succeeds, retrying ``ApiException`` with bounded backoff.

    Delays double from *base_delay_seconds* up to *max_delay_seconds* and are
    jittered to 50-150% so concurrent callers do not reconnect in lockstep.
    Non-retryable statuses and the final failed attempt re-raise the
    ``ApiException``.  Waiting uses *stop_event* so a shutdown interrupts the
    backoff immediately with :class:`RetryAbortedError`.
    """
    log = logger or logging.getLogger(__name__)
    attempt = 1
    while True:
        try:
            return operation()
        except ApiException as exc:
            if exc.status in NON_RETRYABLE_STATUSES or attempt >= attempts:
                raise
            delay = min(max_delay_seconds, base_delay_seconds * 2 ** (attempt - 1))
            jittered = delay * (0.5 + random.random())  # noqa: S311
            METRICS.retry_total.inc()
            log.warning(
                "%s failed (status=%s); retry attempt %d/%d in %.1fs",
                description,
                exc.status,
                attempt + 1,
                attempts,
                jittered,
            )
            if stop_event.wait(timeout=jittered):
                raise RetryAbortedError(f"{description} aborted by shutdown") from exc
            attempt += 1


@dataclass(frozen=True)
class Workload:
    """A Deployment, StatefulSet or DaemonSet listed for a single rollout decision."""

    kind: str
    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RolloutResult:
    """Immutable record of one rollout event.

    Returned by every rollout so callers can inspect outcomes without
    querying the Kubernetes API again.
    """

    namespace: str
    label_value: str
    matched: int
    restarted: int
    failed: int


class RolloutCoordinator:
    """Restarts every workload in a namespace whose match-label value equals the event's.

    For each workload kind the coordinator lists workloads carrying the match
    label key (server-side selector on key presence), keeps those whose value
    is exactly the event's label value, and patches each one's pod template.
    Failures are scoped: a listing failure skips that kind and a patch
    failure skips that workload; the remaining kinds and workloads proceed.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        match_label: str,
        *,
        retry_attempts: int = 5,
        retry_base_delay_seconds: float = 1.0,
        retry_max_delay_seconds: float = 30.0,
        stop_event: threading.Event | None = None,
        workload_kinds: Sequence[WorkloadKind] = WORKLOAD_KINDS,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.apps_api = apps_api
        self.match_label = match_label
        self.retry_attempts = retry_attempts
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.stop_event = stop_event or threading.Event()
        self.workload_kinds = tuple(workload_kinds)
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _retry(self, operation: Callable[[], T], description: str) -> T:
        return call_with_retry(
            operation,
            description=description,
            attempts=self.retry_attempts,
            stop_event=self.stop_event,
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
            logger=self.logger,
        )

    @staticmethod
    def _to_workload(kind: WorkloadKind, namespace: str, item: Any) -> Workload | None:
        metadata = getattr(item, "metadata", None)
        name = getattr(metadata, "name", None)
        if not name:
            return None
        labels = getattr(metadata, "labels", None)
        return Workload(
            kind=kind.name,
            namespace=getattr(metadata, "namespace", None) or namespace,
            name=name,
            labels=dict(labels) if isinstance(labels, dict) else {},
        )

    def matching_workloads(self, kind: WorkloadKind, event: RolloutEvent) -> list[Workload]:
        """List workloads of *kind* in the event namespace whose label value matches exactly.

        Raises ``ApiException`` or :class:`RetryAbortedError` when the listing
        cannot be obtained.
        """
        items = self._retry(
            lambda: list_workloads(
                self.apps_api,
                kind,
                namespace=event.namespace,
                label_selector=self.match_label,
            ),
            description=f"list {kind.name}s in namespace {event.namespace}",
        )
        matched: list[Workload] = []
        for item in items:
            workload = self._to_workload(kind, event.namespace, item)
            if workload is None:
                self.logger.error(
                    "Encountered %s with missing metadata.name in namespace %s",
                    kind.name,
                    event.namespace,
                )
                continue
            if workload.labels.get(self.match_label) == event.label_value:
                matched.append(workload)
        return matched

    def restart(self, kind: WorkloadKind, workload: Workload, label_value: str) -> bool:
        """Trigger a rolling restart of *workload*; return ``False`` once retries are exhausted."""
        description = f"restart {kind.name} {workload.namespace}/{workload.name}"
        try:
            self._retry(
                lambda: patch_workload_restart(
                    self.apps_api,
                    kind,
                    namespace=workload.namespace,
                    name=workload.name,
                    timestamp=self.now_fn(),
                ),
                description=description,
            )
        except (ApiException, RetryAbortedError):
            METRICS.restart_errors_total.labels(workload_kind=kind.name).inc()
            self.logger.exception(
                "Failed to trigger rollout of %s %s in namespace %s (%s=%s)",
                kind.name,
                workload.name,
                workload.namespace,
                self.match_label,
                label_value,
            )
            return False

        METRICS.restarts_total.labels(workload_kind=kind.name).inc()
        self.logger.info(
            "Triggered rolling restart for %s %s in namespace %s",
            kind.name,
            workload.name,
            workload.namespace,
        )
        return True

    def rollout(self, event: RolloutEvent) -> RolloutResult:
        """Restart every matching workload of every kind for *event*."""
        METRICS.rollouts_total.inc()
        matched = 0
        restarted = 0
        failed = 0

        for kind in self.workload_kinds:
            try:
                workloads = self.matching_workloads(kind, event)
            except (ApiException, RetryAbortedError):
                failed += 1
                METRICS.list_errors_total.labels(workload_kind=kind.name).inc()
                self.logger.exception(
                    "Failed to list %ss in namespace %s for %s=%s",
                    kind.name,
                    event.namespace,
                    self.match_label,
                    event.label_value,
                )
                continue

            matched += len(workloads)
            for workload in workloads:
                if self.restart(kind, workload, event.label_value):
                    restarted += 1
                else:
                    failed += 1

        if matched == 0 and failed == 0:
            self.logger.warning(
                "%s changed, but no workloads in namespace %s are labeled %s=%s",
                event.source or "resource",
                event.namespace,
                self.match_label,
                event.label_value,
            )

        return RolloutResult(
            namespace=event.namespace,
            label_value=event.label_value,
            matched=matched,
            restarted=restarted,
            failed=failed,
        )
