from __future__ import annotations

import time
from dataclasses import replace
from threading import Thread
from typing import Any, Callable

from .errors import Conflict
from .models import ConfigVersion, WorkloadSpec, template_hash
from .settings import settings
from .store import Store


class ConfigPropagator:
    """Turns ConfigVersion changes into new instance template hashes.

    It only rewrites WorkloadSpecs (new hash, generation + 1); moving instances
    is left entirely to the workload controller's rollout path.
    """

    def __init__(
        self,
        store: Store,
        on_change: Callable[[str], Any] | None = None,
        interval_s: float | None = None,
    ):
        self.store = store
        self.on_change = on_change
        self.interval_s = settings.config_sync_interval_s if interval_s is None else interval_s
        self._stop = False
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, name="wac-config", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        while not self._stop:
            try:
                self.sync_once()
            except Exception as e:
                self.store.log_event("ERROR", f"Config sync failed: {type(e).__name__}: {e}")
            time.sleep(max(0.1, self.interval_s))

    def on_config_change(self, version: ConfigVersion) -> list[WorkloadSpec]:
        """Store ``version`` and roll every workload that references it.

        Reapplying an unchanged version is a no-op and returns [].
        """
        if not self.store.put_config(version):
            return []
        self.store.log_event(
            "INFO", f"ConfigVersion {version.namespace}/{version.name} is now {version.version_id}", namespace=version.namespace
        )
        changed: list[WorkloadSpec] = []
        for spec in self.store.list_workloads(version.namespace):
            if spec.config_ref != version.name:
                continue
            try:
                updated = self._rehash(spec, version)
            except Conflict:
                # Concurrent spec update; the periodic sync picks it up.
                continue
            if updated is not None:
                changed.append(updated)
        return changed

    def sync_once(self) -> list[WorkloadSpec]:
        """Detect drift between each workload's hash and its current config."""
        changed: list[WorkloadSpec] = []
        for spec in self.store.list_workloads():
            config = self.store.get_config(spec.namespace, spec.config_ref) if spec.config_ref else None
            updated = self._rehash(spec, config)
            if updated is not None:
                changed.append(updated)
        return changed

    def _rehash(self, spec: WorkloadSpec, config: ConfigVersion | None) -> WorkloadSpec | None:
        new_hash = template_hash(spec, config)
        if new_hash == spec.instance_template_hash:
            return None
        updated = self.store.update_workload(replace(spec, instance_template_hash=new_hash), spec.generation)
        version = config.version_id if config else "none"
        self.store.log_event(
            "INFO",
            f"Template {spec.instance_template_hash} -> {new_hash} (config {version}), generation {updated.generation}",
            namespace=spec.namespace,
            workload=spec.name,
        )
        if self.on_change is not None:
            self.on_change(updated.key)
        return updated
