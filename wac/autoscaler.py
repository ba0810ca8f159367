from __future__ import annotations

import math
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from threading import Lock, Thread
from typing import Any, Callable

from .errors import ControlPlaneError
from .models import Instance, MetricSample, Phase, ScalingDecision, WorkloadSpec, WorkloadStatus
from .settings import settings
from .sources import MetricSource
from .store import Store


def desired_replicas(current: int, average_utilization: float, target_utilization: float, tolerance: float = 0.0) -> int:
    """ceil(current * average / target), unchanged inside the tolerance band."""
    ratio = average_utilization / target_utilization
    if abs(ratio - 1.0) <= tolerance:
        return current
    # round() absorbs float noise such as 3 * 0.7 / 0.7 == 3.0000000000000004
    return int(math.ceil(round(current * ratio, 9)))


class MetricsWindow:
    """Most recent samples per instance, bounded in count and age."""

    def __init__(self, per_instance: int = 10):
        self._lock = Lock()
        self._samples: dict[str, deque[MetricSample]] = {}
        self.per_instance = per_instance

    def add(self, sample: MetricSample) -> None:
        with self._lock:
            self._samples.setdefault(sample.instance_id, deque(maxlen=self.per_instance)).append(sample)

    def latest(self, instance_ids: set[str], resource_kind: str, since: float) -> dict[str, MetricSample]:
        out: dict[str, MetricSample] = {}
        with self._lock:
            for iid in instance_ids:
                for s in reversed(self._samples.get(iid, ())):
                    if s.resource_kind != resource_kind:
                        continue
                    if s.observed_at >= since:
                        out[iid] = s
                    break
        return out

    def prune(self, keep: set[str], older_than: float) -> None:
        with self._lock:
            for iid in list(self._samples):
                if iid not in keep:
                    del self._samples[iid]
                    continue
                q = self._samples[iid]
                while q and q[0].observed_at < older_than:
                    q.popleft()


class Autoscaler:
    """Computes desired replicas from utilization and submits them to the controller.

    Scale-up is applied at once, limited to ``scale_up_percent`` growth per
    ``scale_up_period_s``. Scale-down waits until no scale event of either
    direction happened within the stabilization window, takes the highest
    recommendation seen in that window and shrinks by at most
    ``scale_down_percent`` per ``scale_down_period_s``. Rate limits are derived
    from the persisted decision log, so a restart does not reset them.
    """

    def __init__(
        self,
        store: Store,
        metric_source: MetricSource,
        on_scale: Callable[[str], Any] | None = None,
        clock: Callable[[], float] = time.time,
        interval_s: float | None = None,
        metric_timeout_s: float | None = None,
        max_workers: int = 8,
    ):
        self.store = store
        self.metric_source = metric_source
        self.on_scale = on_scale
        self.clock = clock
        self.interval_s = settings.autoscale_interval_s if interval_s is None else interval_s
        self.metric_timeout_s = settings.metric_timeout_s if metric_timeout_s is None else metric_timeout_s
        self.window = MetricsWindow()
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="wac-metrics")
        self._stop = False
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, name="wac-autoscaler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _loop(self) -> None:
        self.store.log_event("INFO", "Autoscaler started")
        while not self._stop:
            try:
                self.tick_all()
            except Exception as e:
                self.store.log_event("ERROR", f"Autoscaler tick failed: {type(e).__name__}: {e}")
            time.sleep(max(0.1, self.interval_s))

    def tick_all(self) -> dict[str, ScalingDecision | None]:
        out: dict[str, ScalingDecision | None] = {}
        for spec in self.store.list_workloads():
            try:
                out[spec.key] = self.tick(spec.key)
            except ControlPlaneError as e:
                self.store.log_event(
                    "WARN", f"Autoscaling skipped: {e.kind}: {e}", namespace=spec.namespace, workload=spec.name
                )
                out[spec.key] = None
        return out

    # -- sampling -------------------------------------------------------------

    def _fetch(self, inst: Instance, resource_kind: str, now: float) -> MetricSample:
        ratio = self.metric_source.get_utilization(inst.id, inst.address, resource_kind, self.interval_s)
        return MetricSample(instance_id=inst.id, resource_kind=resource_kind, utilization_ratio=float(ratio), observed_at=now)

    def sample(self, spec: WorkloadSpec, ready: list[Instance], now: float) -> int:
        """Query every ready instance in parallel. Timeouts and errors are skipped samples."""
        kind = spec.scaling.resource_kind
        futures = [self._pool.submit(self._fetch, inst, kind, now) for inst in ready]
        done, _ = wait(futures, timeout=self.metric_timeout_s)
        count = 0
        for f in done:
            if f.exception() is None:
                self.window.add(f.result())
                count += 1
        return count

    # -- decision -------------------------------------------------------------

    def tick(self, key: str) -> ScalingDecision | None:
        spec = self.store.get_workload(key)
        status = self.store.get_status(key)
        if spec is None or status is None:
            return None
        now = self.clock()
        ready = [i for i in self.store.list_instances(key) if i.phase == Phase.READY]
        ready_ids = {i.id for i in ready}
        self.window.prune(ready_ids, older_than=now - self.interval_s)
        self.sample(spec, ready, now)

        fresh = self.window.latest(ready_ids, spec.scaling.resource_kind, since=now - self.interval_s)
        if not fresh:
            self.store.log_event(
                "WARN",
                f"No recent {spec.scaling.resource_kind} metrics for any ready instance; "
                f"keeping {status.desired_replicas} replicas",
                namespace=spec.namespace,
                workload=spec.name,
            )
            return None

        average = sum(s.utilization_ratio for s in fresh.values()) / len(fresh)
        current = status.current_replicas or len(ready)
        previous = spec.clamp(status.desired_replicas)
        recommendation = spec.clamp(
            desired_replicas(current, average, spec.scaling.target_utilization, spec.scaling.tolerance)
        )
        desired, note = self._gate(spec, status, previous, recommendation, now)
        reason = (
            f"avg {spec.scaling.resource_kind} {average:.2f} over {len(fresh)}/{len(ready)} ready "
            f"(target {spec.scaling.target_utilization:.2f}); recommend {recommendation}; {note}"
        )
        decision = ScalingDecision(
            desired_replicas=desired,
            reason=reason,
            decided_at=now,
            recommendation=recommendation,
            previous_replicas=previous,
            applied=desired != previous,
        )
        self.store.append_decision(key, decision)

        if decision.applied:
            fields: dict[str, Any] = {"desired_replicas": desired}
            if desired > previous:
                fields["last_scale_up_time"] = now
            else:
                fields["last_scale_down_time"] = now
            self.store.update_status(key, **fields)
            self.store.log_event(
                "INFO", f"Scaled {previous} -> {desired}: {reason}", namespace=spec.namespace, workload=spec.name
            )
            if self.on_scale is not None:
                self.on_scale(key)
        elif recommendation != previous:
            self.store.log_event("INFO", f"Scaling held at {previous}: {reason}", namespace=spec.namespace, workload=spec.name)
        return decision

    def _gate(
        self, spec: WorkloadSpec, status: WorkloadStatus, previous: int, recommendation: int, now: float
    ) -> tuple[int, str]:
        p = spec.scaling
        if recommendation == previous:
            return previous, "no change"
        lookback = max(p.scale_up_period_s, p.scale_down_period_s, p.scale_up_stabilization_s, p.scale_down_stabilization_s)
        history = self.store.list_decisions(spec.key, since=now - lookback)

        def recent_recommendations(window_s: float) -> list[int]:
            return [
                d.recommendation for d in history if d.recommendation is not None and d.decided_at >= now - window_s
            ] + [recommendation]

        if recommendation > previous:
            target = min(recent_recommendations(p.scale_up_stabilization_s)) if p.scale_up_stabilization_s else recommendation
            if target <= previous:
                return previous, "scale-up held by stabilization window"
            added = sum(
                d.desired_replicas - (d.previous_replicas or 0)
                for d in history
                if d.applied and d.decided_at > now - p.scale_up_period_s and d.desired_replicas > (d.previous_replicas or 0)
            )
            base = max(previous - added, 1)
            limit = max(base + 1, int(math.ceil(base * (1 + p.scale_up_percent / 100.0))))
            if target > limit:
                target = limit
                note = f"scale up limited to {p.scale_up_percent}% per {p.scale_up_period_s:g}s"
            else:
                note = "scale up"
            if target <= previous:
                return previous, f"scale-up rate limit reached ({p.scale_up_percent}% per {p.scale_up_period_s:g}s)"
            return target, note

        last_event = max((t for t in (status.last_scale_up_time, status.last_scale_down_time) if t is not None), default=None)
        if last_event is not None and now - last_event < p.scale_down_stabilization_s:
            return previous, f"scale-down held: last scale event {now - last_event:.0f}s ago (window {p.scale_down_stabilization_s:g}s)"
        target = max(recent_recommendations(p.scale_down_stabilization_s))
        if target >= previous:
            return previous, "scale-down held by stabilization window"
        removed = sum(
            (d.previous_replicas or 0) - d.desired_replicas
            for d in history
            if d.applied and d.decided_at > now - p.scale_down_period_s and d.desired_replicas < (d.previous_replicas or 0)
        )
        base = previous + removed
        floor = int(math.ceil(base * (1 - p.scale_down_percent / 100.0)))
        if target < floor:
            target = floor
            note = f"scale down limited to {p.scale_down_percent}% per {p.scale_down_period_s:g}s"
        else:
            note = "scale down"
        if target >= previous:
            return previous, f"scale-down rate limit reached ({p.scale_down_percent}% per {p.scale_down_period_s:g}s)"
        return spec.clamp(target), note
