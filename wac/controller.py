from __future__ import annotations

import secrets
import time
from threading import Lock, Thread
from typing import Callable

from .alerts import alert_degraded, alert_instance_failed
from .drivers import DriverError, InstanceDriver
from .models import Instance, Phase, RolloutState, WorkloadSpec, WorkloadStatus, split_key
from .registry import RegistrySet
from .settings import settings
from .store import Store
from .workqueue import WorkQueue


def termination_order(inst: Instance) -> tuple[int, float, str]:
    """Least-ready first, then oldest, then id."""
    return (0 if inst.phase == Phase.PENDING else 1, inst.created_at, inst.id)


class WorkloadController:
    """Continuously reconciles each workload's instance set with its spec.

    Every reconcile re-derives what to do from persisted Instance records, so a
    restarted controller picks up where the previous one stopped. Reconciles of
    the same workload never overlap: triggers go through a coalescing work
    queue and each workload has its own lock.
    """

    def __init__(
        self,
        store: Store,
        registries: RegistrySet,
        driver: InstanceDriver,
        clock: Callable[[], float] = time.time,
        interval_s: float | None = None,
        workers: int | None = None,
        failure_threshold: int | None = None,
        startup_timeout_s: float | None = None,
        degraded_after: int | None = None,
        degraded_retry_s: float | None = None,
        drain_grace_s: float | None = None,
    ):
        self.store = store
        self.registries = registries
        self.driver = driver
        self.clock = clock
        self.interval_s = settings.reconcile_interval_s if interval_s is None else interval_s
        self.workers = max(1, settings.reconcile_workers if workers is None else int(workers))
        self.failure_threshold = max(1, settings.failure_threshold if failure_threshold is None else failure_threshold)
        self.startup_timeout_s = settings.startup_timeout_s if startup_timeout_s is None else startup_timeout_s
        self.degraded_after = max(1, settings.degraded_after if degraded_after is None else degraded_after)
        self.degraded_retry_s = settings.degraded_retry_s if degraded_retry_s is None else degraded_retry_s
        self.drain_grace_s = settings.drain_grace_s if drain_grace_s is None else drain_grace_s

        self.queue = WorkQueue()
        self._locks_guard = Lock()
        self._locks: dict[str, Lock] = {}
        self._stop = False
        self._threads: list[Thread] = []

    # -- loop ----------------------------------------------------------------

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop = False
        self._threads = [Thread(target=self._ticker, name="wac-reconcile-tick", daemon=True)]
        for n in range(self.workers):
            self._threads.append(Thread(target=self.run_worker, name=f"wac-reconcile-{n}", daemon=True))
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop = True
        self.queue.shutdown()

    def trigger(self, key: str) -> bool:
        return self.queue.add(key)

    def _ticker(self) -> None:
        self.store.log_event("INFO", "Workload controller started")
        while not self._stop:
            try:
                keys = {s.key for s in self.store.list_workloads()}
                # instances whose workload was deleted still need a teardown pass
                keys.update(i.key for i in self.store.list_all_instances())
                for key in sorted(keys):
                    self.trigger(key)
            except Exception as e:
                self.store.log_event("ERROR", f"Reconcile tick failed: {type(e).__name__}: {e}")
            time.sleep(max(0.1, self.interval_s))

    def run_worker(self) -> None:
        while not self._stop:
            key = self.queue.get(timeout=0.5)
            if key is None:
                continue
            try:
                self.reconcile(key)
            except Exception as e:
                namespace, name = split_key(key)
                self.store.log_event(
                    "ERROR", f"Reconcile failed: {type(e).__name__}: {e}", namespace=namespace, workload=name
                )
            finally:
                self.queue.done(key)

    def _lock_for(self, key: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = Lock()
            return lock

    # -- reconcile -----------------------------------------------------------

    def reconcile(self, key: str) -> WorkloadStatus | None:
        with self._lock_for(key):
            spec = self.store.get_workload(key)
            if spec is None:
                self._teardown(key)
                return None
            return self._reconcile(spec)

    def _reconcile(self, spec: WorkloadSpec) -> WorkloadStatus:
        key = spec.key
        now = self.clock()
        status = self.store.get_status(key) or WorkloadStatus(desired_replicas=spec.min_replicas)

        if status.failing_template and status.failing_template != spec.instance_template_hash:
            # A newer template supersedes whatever was failing.
            status = self.store.update_status(
                key,
                creation_failures=0,
                failing_template="",
                rollout_state=RolloutState.PROGRESSING.value,
                message="Superseded by a new template",
            )

        # 1. Finish terminations, clear failed instances, expire stuck starts.
        for inst in self.store.list_instances(key):
            if inst.phase == Phase.PENDING and now - inst.created_at > self.startup_timeout_s:
                self.store.update_instance(inst.id, phase=Phase.FAILED)
                self._log(spec, "ERROR", f"Instance {inst.id} did not become ready within {self.startup_timeout_s:g}s")
                status = self._record_creation_failure(spec, status, now, f"{inst.id} never became ready")
                inst.phase = Phase.FAILED
            if inst.phase == Phase.FAILED:
                self._terminate(spec, inst, now, "failed")
            elif inst.phase == Phase.TERMINATING:
                self._finish_termination(spec, inst, now)

        instances = self.store.list_instances(key)
        live = [i for i in instances if i.live]
        new = [i for i in live if i.template_hash == spec.instance_template_hash]
        old = [i for i in live if i.template_hash != spec.instance_template_hash]
        desired = spec.clamp(status.desired_replicas)
        surge = spec.rollout.max_surge
        unavailable = spec.rollout.max_unavailable

        # 2. Scale up / surge new-template instances, at most max(maxSurge, 1) per tick.
        room = desired + surge - len(live)
        to_create = max(0, min(desired - len(new), room, max(surge, 1)))
        if status.degraded:
            retry_due = status.last_creation_failure is None or now - status.last_creation_failure >= self.degraded_retry_s
            to_create = min(to_create, 1 if retry_due else 0)
        for _ in range(to_create):
            inst, status = self._create(spec, status, now)
            if inst is None:
                break

        # 3. Replace old-template instances within the unavailability budget.
        ready_total = sum(1 for i in live if i.phase == Phase.READY)
        budget = ready_total - max(desired - unavailable, 0)
        for inst in sorted(old, key=termination_order):
            if inst.phase == Phase.PENDING:
                self._terminate(spec, inst, now, "stale template")
            elif not status.degraded and budget > 0:
                self._terminate(spec, inst, now, "rolled out")
                budget -= 1
                ready_total -= 1

        # 4. Scale down surplus new-template instances.
        surplus = len(new) - desired
        if surplus > 0:
            ready_budget = ready_total - max(spec.min_replicas - unavailable, 0)
            for inst in sorted(new, key=termination_order):
                if surplus <= 0:
                    break
                if inst.phase == Phase.PENDING:
                    self._terminate(spec, inst, now, "scale down")
                    surplus -= 1
                elif ready_budget > 0:
                    self._terminate(spec, inst, now, "scale down")
                    ready_budget -= 1
                    surplus -= 1

        return self._update_status(spec, status, desired)

    def _update_status(self, spec: WorkloadSpec, status: WorkloadStatus, desired: int) -> WorkloadStatus:
        instances = self.store.list_instances(spec.key)
        live = [i for i in instances if i.live]
        ready = [i for i in live if i.phase == Phase.READY]
        updated = [i for i in ready if i.template_hash == spec.instance_template_hash]
        stale = [i for i in instances if i.phase != Phase.TERMINATING and i.template_hash != spec.instance_template_hash]

        fields: dict = {
            "desired_replicas": desired,
            "current_replicas": len(live),
            "ready_replicas": len(ready),
            "updated_replicas": len(updated),
        }
        if not stale:
            fields["observed_generation"] = spec.generation
        converged = not stale and len(updated) == desired and len(live) == desired
        if not status.degraded:
            if converged and status.rollout_state != RolloutState.COMPLETE.value:
                self._log(spec, "INFO", f"Workload converged: {desired} ready at template {spec.instance_template_hash}")
            fields["rollout_state"] = (RolloutState.COMPLETE if converged else RolloutState.PROGRESSING).value
            fields["message"] = "" if converged else f"{len(updated)}/{desired} updated and ready, {len(stale)} stale"
        return self.store.update_status(spec.key, **fields)

    # -- instance lifecycle --------------------------------------------------

    def _instance_env(self, spec: WorkloadSpec, instance_id: str) -> dict[str, str]:
        env: dict[str, str] = {}
        if spec.config_ref:
            cfg = self.store.get_config(spec.namespace, spec.config_ref)
            if cfg is not None:
                env.update({str(k): str(v) for k, v in cfg.data.items()})
                env["WAC_CONFIG_VERSION"] = cfg.version_id
        env["WAC_INSTANCE_ID"] = instance_id
        env["WAC_WORKLOAD"] = spec.key
        env["WAC_TEMPLATE_HASH"] = spec.instance_template_hash
        return env

    def _create(self, spec: WorkloadSpec, status: WorkloadStatus, now: float) -> tuple[Instance | None, WorkloadStatus]:
        instance_id = f"{spec.name}-{spec.instance_template_hash[:6]}-{secrets.token_hex(3)}"
        inst = Instance(
            id=instance_id,
            namespace=spec.namespace,
            workload=spec.name,
            template_hash=spec.instance_template_hash,
            phase=Phase.PENDING,
            address=None,
            created_at=now,
        )
        # Record first so a crash between create and insert cannot orphan an instance.
        self.store.insert_instance(inst)
        try:
            address = self.driver.create(instance_id, spec, self._instance_env(spec, instance_id))
        except DriverError as e:
            self.store.delete_instance(instance_id)
            self._log(spec, "ERROR", f"Instance creation failed: {e}")
            return None, self._record_creation_failure(spec, status, now, str(e))
        self.store.update_instance(instance_id, address=address)
        inst.address = address
        self._log(spec, "INFO", f"Created instance {instance_id} at {address}")
        return inst, status

    def _record_creation_failure(self, spec: WorkloadSpec, status: WorkloadStatus, now: float, detail: str) -> WorkloadStatus:
        failures = status.creation_failures + 1 if status.failing_template == spec.instance_template_hash else 1
        fields: dict = {
            "creation_failures": failures,
            "last_creation_failure": now,
            "failing_template": spec.instance_template_hash,
        }
        if failures >= self.degraded_after and not status.degraded:
            msg = f"{failures} consecutive creation failures; surge halted ({detail})"
            fields["rollout_state"] = RolloutState.DEGRADED.value
            fields["message"] = msg
            self._log(spec, "ERROR", f"Rollout degraded: {msg}")
            alert_degraded(spec.key, msg)
        return self.store.update_status(spec.key, **fields)

    def _terminate(self, spec: WorkloadSpec, inst: Instance, now: float, reason: str) -> None:
        """Deregister first, then mark Terminating; destruction follows after the drain grace."""
        if self.registries.for_workload(spec.key).deregister(inst.id):
            self._log(spec, "INFO", f"Endpoint {inst.id} deregistered ({reason})")
        self.store.update_instance(inst.id, phase=Phase.TERMINATING, terminating_since=now)
        inst.phase = Phase.TERMINATING
        inst.terminating_since = now
        self._finish_termination(spec, inst, now)

    def _finish_termination(self, spec: WorkloadSpec | None, inst: Instance, now: float) -> None:
        if inst.terminating_since is not None and now - inst.terminating_since < self.drain_grace_s:
            return
        try:
            self.driver.destroy(inst.id)
        except DriverError as e:
            self._log(spec, "WARN", f"Destroy of {inst.id} failed, will retry: {e}", inst=inst)
            return
        self.store.delete_instance(inst.id)
        self._log(spec, "INFO", f"Instance {inst.id} terminated", inst=inst)

    def _teardown(self, key: str) -> None:
        registry = self.registries.get(key)
        now = self.clock()
        for inst in self.store.list_instances(key):
            if registry is not None:
                registry.deregister(inst.id)
            inst.terminating_since = None
            self._finish_termination(None, inst, now)
        self.registries.drop(key)

    # -- probe results -------------------------------------------------------

    def handle_probe_result(self, inst: Instance, ok: bool) -> None:
        """Apply one health-probe outcome (called from the prober loop)."""
        key = inst.key
        with self._lock_for(key):
            cur = self.store.get_instance(inst.id)
            spec = self.store.get_workload(key)
            if cur is None or spec is None or not cur.live or not cur.address:
                return
            registry = self.registries.for_workload(key)
            now = self.clock()

            if ok:
                if cur.phase == Phase.PENDING:
                    self.store.update_instance(cur.id, phase=Phase.READY, ready_at=now, fail_count=0)
                    registry.register(cur.id, cur.address)
                    self._log(spec, "INFO", f"Instance {cur.id} ready; endpoint registered")
                    if cur.template_hash == spec.instance_template_hash:
                        self._clear_failures(spec)
                    self.trigger(key)
                    return
                if cur.fail_count:
                    self.store.update_instance(cur.id, fail_count=0)
                if cur.id not in registry:
                    registry.register(cur.id, cur.address)
                elif not registry.get(cur.id).healthy:
                    registry.mark_healthy(cur.id)
                    self._log(spec, "INFO", f"Instance {cur.id} recovered")
                return

            fails = cur.fail_count + 1
            if cur.phase == Phase.PENDING:
                # Starting instances are bounded by the startup timeout instead.
                self.store.update_instance(cur.id, fail_count=fails)
                return
            registry.mark_unhealthy(cur.id)
            if fails == 1:
                self._log(spec, "WARN", f"Instance {cur.id} failed a health check")
            if fails >= self.failure_threshold:
                registry.deregister(cur.id)
                self.store.update_instance(cur.id, phase=Phase.FAILED, fail_count=fails)
                msg = f"Instance {cur.id} failed {fails} consecutive health checks; replacing"
                self._log(spec, "ERROR", msg)
                alert_instance_failed(spec.key, cur.id, msg)
                self.trigger(key)
            else:
                self.store.update_instance(cur.id, fail_count=fails)

    def _clear_failures(self, spec: WorkloadSpec) -> None:
        status = self.store.get_status(spec.key)
        if status is None or (not status.creation_failures and not status.degraded):
            return
        fields: dict = {"creation_failures": 0, "failing_template": ""}
        if status.degraded:
            fields["rollout_state"] = RolloutState.PROGRESSING.value
            fields["message"] = "Recovered from degraded rollout"
            self._log(spec, "INFO", "Rollout recovered: a new-template instance became ready")
        self.store.update_status(spec.key, **fields)

    def restore_endpoints(self) -> int:
        """Rebuild endpoint registries from persisted Ready instances (after a restart)."""
        count = 0
        for inst in self.store.list_all_instances():
            if inst.phase == Phase.READY and inst.address:
                self.registries.for_workload(inst.key).register(inst.id, inst.address)
                count += 1
        return count

    def _log(self, spec: WorkloadSpec | None, level: str, message: str, inst: Instance | None = None) -> None:
        if spec is not None:
            self.store.log_event(level, message, namespace=spec.namespace, workload=spec.name)
        elif inst is not None:
            self.store.log_event(level, message, namespace=inst.namespace, workload=inst.workload)
        else:
            self.store.log_event(level, message)
