from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from hashlib import sha256

from reloader.src.metrics import METRICS
from reloader.src.resources import SECRET, WatchedResource


@dataclass(frozen=True)
class RolloutEvent:
    """Request to restart every workload in *namespace* labeled with *label_value*."""

    namespace: str
    label_value: str
    source: str = ""


def _mask(value: str) -> str:
    return "sha256:" + sha256(value.encode("utf-8")).hexdigest()[:12]


def payload_diff(
    old: Mapping[str, str],
    new: Mapping[str, str],
    *,
    mask_values: bool = False,
) -> str:
    """Return a value-level diff of two payload mappings, one line per changed key.

    With ``mask_values`` every value is replaced by a short SHA-256 digest so
    Secret material never reaches the logs while changes stay visible.
    """

    def show(value: str) -> str:
        return _mask(value) if mask_values else repr(value)

    lines: list[str] = []
    for key in sorted(set(old) | set(new)):
        if key not in old:
            lines.append(f"added: [{key!r}] = {show(new[key])}")
        elif key not in new:
            lines.append(f"removed: [{key!r}] = {show(old[key])}")
        elif old[key] != new[key]:
            lines.append(f"modified: [{key!r}] = {show(old[key])} -> {show(new[key])}")
    return "\n".join(lines)


class ChangeDetector:
    """Decides whether an update of a watched resource must trigger a rollout.

    The relevance gate is evaluated on the *previous* snapshot: an update is
    only considered when the old object carries the match label, and the old
    object's label value selects the workloads.  A resource that gains the
    label in the same update is ignored until its next change.
    """

    def __init__(
        self,
        match_label: str,
        logger: logging.Logger | None = None,
        diff_fn: Callable[..., str] = payload_diff,
    ) -> None:
        self.match_label = match_label
        self.logger = logger or logging.getLogger(__name__)
        self.diff_fn = diff_fn

    def changed_fields(self, old: WatchedResource, new: WatchedResource) -> list[str]:
        """Return the payload fields whose contents differ between *old* and *new*."""
        fields = list(old.payloads) + [f for f in new.payloads if f not in old.payloads]
        return [f for f in fields if old.payload(f) != new.payload(f)]

    def _log_diff(self, old: WatchedResource, new: WatchedResource, field_name: str) -> None:
        try:
            diff = self.diff_fn(
                old.payload(field_name),
                new.payload(field_name),
                mask_values=old.kind == SECRET.name,
            )
        except Exception:
            self.logger.debug(
                "Failed to compute %s diff for %s %s/%s",
                field_name,
                old.kind,
                old.namespace,
                old.name,
                exc_info=True,
            )
            return
        self.logger.info(
            "%s %s/%s %s diff:\n%s", old.kind, old.namespace, old.name, field_name, diff
        )

    def detect(self, old: WatchedResource, new: WatchedResource) -> RolloutEvent | None:
        """Return a :class:`RolloutEvent` for a relevant, payload-changing update, else ``None``."""
        METRICS.updates_total.labels(kind=old.kind).inc()

        label_value = old.labels.get(self.match_label)
        if label_value is None:
            self.logger.debug(
                "Ignoring %s %s/%s update: previous version has no %s label",
                old.kind,
                old.namespace,
                old.name,
                self.match_label,
            )
            METRICS.ignored_updates_total.labels(kind=old.kind, reason="unlabeled").inc()
            return None

        changed = self.changed_fields(old, new)
        if not changed:
            self.logger.debug(
                "Ignoring %s %s/%s update: payload unchanged", old.kind, old.namespace, old.name
            )
            METRICS.ignored_updates_total.labels(kind=old.kind, reason="unchanged").inc()
            return None

        for field_name in changed:
            self._log_diff(old, new, field_name)

        new_value = new.labels.get(self.match_label)
        if new_value != label_value:
            self.logger.info(
                "%s %s/%s label %s changed from %r to %r; using previous value",
                old.kind,
                old.namespace,
                old.name,
                self.match_label,
                label_value,
                new_value,
            )

        self.logger.info(
            "going to rollout resources labeled with %s:%s in namespace %s",
            self.match_label,
            label_value,
            old.namespace,
        )
        return RolloutEvent(
            namespace=old.namespace,
            label_value=label_value,
            source=f"{old.kind}/{old.namespace}/{old.name}",
        )
