from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from threading import RLock
from typing import Any, Iterator

from .errors import Conflict, InvalidSpec, NotFound
from .logging_setup import logger
from .models import (
    ConfigVersion,
    Instance,
    Phase,
    Route,
    ScalingDecision,
    WorkloadSpec,
    WorkloadStatus,
    split_key,
    validate_workload,
)
from .settings import settings


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}
STATUS_FIELDS = set(WorkloadStatus.__dataclass_fields__)
INSTANCE_FIELDS = {"phase", "address", "ready_at", "terminating_since", "fail_count"}

SCHEMA = """
CREATE TABLE IF NOT EXISTS counters (
  name TEXT PRIMARY KEY,
  value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS workloads (
  namespace TEXT NOT NULL,
  name TEXT NOT NULL,
  spec TEXT NOT NULL,
  status TEXT NOT NULL,
  generation INTEGER NOT NULL,
  resource_version INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY(namespace, name)
);

CREATE TABLE IF NOT EXISTS instances (
  id TEXT PRIMARY KEY,
  namespace TEXT NOT NULL,
  workload TEXT NOT NULL,
  template_hash TEXT NOT NULL,
  phase TEXT NOT NULL, -- Pending|Ready|Terminating|Failed
  address TEXT,
  created_at REAL NOT NULL,
  ready_at REAL,
  terminating_since REAL,
  fail_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS config_versions (
  namespace TEXT NOT NULL,
  name TEXT NOT NULL,
  version_id TEXT NOT NULL,
  data TEXT NOT NULL,
  resource_version INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY(namespace, name)
);

CREATE TABLE IF NOT EXISTS routes (
  namespace TEXT NOT NULL,
  name TEXT NOT NULL,
  host_pattern TEXT NOT NULL,
  path_prefix TEXT NOT NULL,
  target_workload TEXT NOT NULL,
  resource_version INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY(namespace, name)
);

CREATE TABLE IF NOT EXISTS decisions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  namespace TEXT NOT NULL,
  workload TEXT NOT NULL,
  decided_at REAL NOT NULL,
  desired_replicas INTEGER NOT NULL,
  recommendation INTEGER,
  previous_replicas INTEGER,
  applied INTEGER NOT NULL,
  reason TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  namespace TEXT,
  workload TEXT,
  message TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
CREATE INDEX IF NOT EXISTS idx_instances_workload ON instances(namespace, workload);
CREATE INDEX IF NOT EXISTS idx_decisions_workload ON decisions(namespace, workload, decided_at);
"""


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist is often created as a directory by
    Docker; in that case the DB file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "wac.db")
    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def _row_to_instance(row: sqlite3.Row) -> Instance:
    d = dict(row)
    d["phase"] = Phase(d["phase"])
    return Instance(**d)


def _row_to_config(row: sqlite3.Row) -> ConfigVersion:
    return ConfigVersion(
        namespace=row["namespace"], name=row["name"], version_id=row["version_id"], data=json.loads(row["data"])
    )


def _row_to_route(row: sqlite3.Row) -> Route:
    return Route(
        namespace=row["namespace"],
        name=row["name"],
        host_pattern=row["host_pattern"],
        path_prefix=row["path_prefix"],
        target_workload=row["target_workload"],
    )


class Store:
    """Durable desired/actual state shared by every controller loop.

    Each public method is one transaction; a store-wide lock serializes writers
    so read-modify-write sequences (generation checks, status patches) are atomic.
    """

    def __init__(self, path: str | None = None):
        self.path = _resolve_db_path(path or settings.db_path)
        self._lock = RLock()
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.connect()
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._tx() as conn:
            conn.executescript(SCHEMA)
            conn.execute("INSERT OR IGNORE INTO counters (name, value) VALUES ('resource_version', 0)")

    def _next_rv(self, conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE counters SET value=value+1 WHERE name='resource_version'")
        return int(conn.execute("SELECT value FROM counters WHERE name='resource_version'").fetchone()[0])

    # -- events ------------------------------------------------------------

    def log_event(self, level: str, message: str, namespace: str | None = None, workload: str | None = None) -> None:
        level = level.upper()
        where = f"{namespace}/{workload}: " if workload else ""
        logger.log(_LEVELS.get(level, logging.INFO), f"{where}{message}")
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, namespace, workload, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, namespace, workload, message),
            )

    def latest_events(
        self, limit: int = 100, namespace: str | None = None, workload: str | None = None
    ) -> list[dict[str, Any]]:
        with self._tx() as conn:
            if workload:
                rows = conn.execute(
                    "SELECT * FROM events WHERE namespace=? AND workload=? ORDER BY id DESC LIMIT ?",
                    (namespace, workload, limit),
                ).fetchall()
            elif namespace:
                rows = conn.execute(
                    "SELECT * FROM events WHERE namespace=? ORDER BY id DESC LIMIT ?", (namespace, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    # -- workloads ---------------------------------------------------------

    def create_workload(self, spec: WorkloadSpec) -> WorkloadSpec:
        spec = replace(spec, generation=1)
        status = WorkloadStatus(desired_replicas=spec.min_replicas)
        with self._tx() as conn:
            exists = conn.execute(
                "SELECT 1 FROM workloads WHERE namespace=? AND name=?", (spec.namespace, spec.name)
            ).fetchone()
            if exists:
                raise Conflict(f"Workload {spec.key} already exists")
            conn.execute(
                """
                INSERT INTO workloads (namespace, name, spec, status, generation, resource_version, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    spec.namespace,
                    spec.name,
                    json.dumps(spec.to_dict()),
                    json.dumps(status.to_dict()),
                    spec.generation,
                    self._next_rv(conn),
                    utc_now(),
                ),
            )
        return spec

    def update_workload(self, spec: WorkloadSpec, expected_generation: int | None = None) -> WorkloadSpec:
        """Replace a workload spec, incrementing its generation.

        ``expected_generation`` enables optimistic concurrency: a mismatch with
        the stored generation raises Conflict and leaves state unchanged.
        """
        with self._tx() as conn:
            row = conn.execute(
                "SELECT generation, status FROM workloads WHERE namespace=? AND name=?", (spec.namespace, spec.name)
            ).fetchone()
            if not row:
                raise NotFound(f"Workload {spec.key} not found")
            current = int(row["generation"])
            if expected_generation is not None and expected_generation != current:
                raise Conflict(
                    f"Workload {spec.key} is at generation {current}, update was based on {expected_generation}"
                )
            spec = replace(spec, generation=current + 1)
            status = WorkloadStatus.from_dict(json.loads(row["status"]))
            status.desired_replicas = spec.clamp(status.desired_replicas)
            conn.execute(
                """
                UPDATE workloads SET spec=?, status=?, generation=?, resource_version=?
                WHERE namespace=? AND name=?
                """,
                (
                    json.dumps(spec.to_dict()),
                    json.dumps(status.to_dict()),
                    spec.generation,
                    self._next_rv(conn),
                    spec.namespace,
                    spec.name,
                ),
            )
        return spec

    def get_workload(self, key: str) -> WorkloadSpec | None:
        namespace, name = split_key(key)
        with self._tx() as conn:
            row = conn.execute("SELECT spec FROM workloads WHERE namespace=? AND name=?", (namespace, name)).fetchone()
            return WorkloadSpec.from_dict(json.loads(row["spec"])) if row else None

    def list_workloads(self, namespace: str | None = None) -> list[WorkloadSpec]:
        with self._tx() as conn:
            if namespace:
                rows = conn.execute(
                    "SELECT spec FROM workloads WHERE namespace=? ORDER BY name", (namespace,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT spec FROM workloads ORDER BY namespace, name").fetchall()
            return [WorkloadSpec.from_dict(json.loads(r["spec"])) for r in rows]

    def delete_workload(self, key: str) -> bool:
        namespace, name = split_key(key)
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM workloads WHERE namespace=? AND name=?", (namespace, name))
            conn.execute("DELETE FROM decisions WHERE namespace=? AND workload=?", (namespace, name))
            return cur.rowcount > 0

    def get_status(self, key: str) -> WorkloadStatus | None:
        namespace, name = split_key(key)
        with self._tx() as conn:
            row = conn.execute(
                "SELECT status FROM workloads WHERE namespace=? AND name=?", (namespace, name)
            ).fetchone()
            return WorkloadStatus.from_dict(json.loads(row["status"])) if row else None

    def update_status(self, key: str, **fields: Any) -> WorkloadStatus:
        unknown = set(fields) - STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unknown status fields: {sorted(unknown)}")
        namespace, name = split_key(key)
        with self._tx() as conn:
            row = conn.execute(
                "SELECT status FROM workloads WHERE namespace=? AND name=?", (namespace, name)
            ).fetchone()
            if not row:
                raise NotFound(f"Workload {key} not found")
            status = WorkloadStatus.from_dict(json.loads(row["status"]))
            for k, v in fields.items():
                setattr(status, k, v)
            conn.execute(
                "UPDATE workloads SET status=?, resource_version=? WHERE namespace=? AND name=?",
                (json.dumps(status.to_dict()), self._next_rv(conn), namespace, name),
            )
            return status

    def resource_version(self, kind: str, namespace: str, name: str) -> int | None:
        table = {"Workload": "workloads", "ConfigVersion": "config_versions", "Route": "routes"}[kind]
        with self._tx() as conn:
            row = conn.execute(
                f"SELECT resource_version FROM {table} WHERE namespace=? AND name=?", (namespace, name)
            ).fetchone()
            return int(row[0]) if row else None

    def validate_persisted(self) -> None:
        """Fail fast on a schema-invalid persisted workload (fatal at startup)."""
        with self._tx() as conn:
            rows = conn.execute("SELECT namespace, name, spec, status FROM workloads").fetchall()
        for r in rows:
            try:
                spec = WorkloadSpec.from_dict(json.loads(r["spec"]))
                WorkloadStatus.from_dict(json.loads(r["status"]))
            except (TypeError, ValueError, KeyError) as e:
                raise InvalidSpec(f"Persisted workload {r['namespace']}/{r['name']} is unreadable: {e}") from e
            validate_workload(spec)

    # -- instances ---------------------------------------------------------

    def insert_instance(self, inst: Instance) -> Instance:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO instances (id, namespace, workload, template_hash, phase, address, created_at, ready_at,
                                       terminating_since, fail_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    inst.id,
                    inst.namespace,
                    inst.workload,
                    inst.template_hash,
                    inst.phase.value,
                    inst.address,
                    inst.created_at,
                    inst.ready_at,
                    inst.terminating_since,
                    inst.fail_count,
                ),
            )
        return inst

    def update_instance(self, instance_id: str, **fields: Any) -> Instance | None:
        unknown = set(fields) - INSTANCE_FIELDS
        if unknown:
            raise ValueError(f"Unknown instance fields: {sorted(unknown)}")
        if "phase" in fields:
            fields["phase"] = Phase(fields["phase"]).value
        with self._tx() as conn:
            if fields:
                assignments = ", ".join(f"{k}=?" for k in fields)
                conn.execute(f"UPDATE instances SET {assignments} WHERE id=?", (*fields.values(), instance_id))
            row = conn.execute("SELECT * FROM instances WHERE id=?", (instance_id,)).fetchone()
            return _row_to_instance(row) if row else None

    def get_instance(self, instance_id: str) -> Instance | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM instances WHERE id=?", (instance_id,)).fetchone()
            return _row_to_instance(row) if row else None

    def delete_instance(self, instance_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM instances WHERE id=?", (instance_id,))

    def list_instances(self, key: str) -> list[Instance]:
        namespace, name = split_key(key)
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM instances WHERE namespace=? AND workload=? ORDER BY created_at, id", (namespace, name)
            ).fetchall()
            return [_row_to_instance(r) for r in rows]

    def list_all_instances(self) -> list[Instance]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM instances ORDER BY namespace, workload, created_at, id").fetchall()
            return [_row_to_instance(r) for r in rows]

    # -- config versions ---------------------------------------------------

    def put_config(self, version: ConfigVersion) -> bool:
        """Store a ConfigVersion. Returns False when it is identical to the stored one."""
        data = json.dumps(version.data, sort_keys=True)
        with self._tx() as conn:
            row = conn.execute(
                "SELECT version_id, data FROM config_versions WHERE namespace=? AND name=?",
                (version.namespace, version.name),
            ).fetchone()
            if row and row["version_id"] == version.version_id and row["data"] == data:
                return False
            conn.execute(
                """
                INSERT INTO config_versions (namespace, name, version_id, data, resource_version, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(namespace, name) DO UPDATE SET
                  version_id=excluded.version_id,
                  data=excluded.data,
                  resource_version=excluded.resource_version
                """,
                (version.namespace, version.name, version.version_id, data, self._next_rv(conn), utc_now()),
            )
            return True

    def get_config(self, namespace: str, name: str) -> ConfigVersion | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM config_versions WHERE namespace=? AND name=?", (namespace, name)
            ).fetchone()
            return _row_to_config(row) if row else None

    def list_configs(self, namespace: str | None = None) -> list[ConfigVersion]:
        with self._tx() as conn:
            if namespace:
                rows = conn.execute(
                    "SELECT * FROM config_versions WHERE namespace=? ORDER BY name", (namespace,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM config_versions ORDER BY namespace, name").fetchall()
            return [_row_to_config(r) for r in rows]

    def delete_config(self, namespace: str, name: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM config_versions WHERE namespace=? AND name=?", (namespace, name))
            return cur.rowcount > 0

    # -- routes ------------------------------------------------------------

    def put_route(self, route: Route) -> Route:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO routes (namespace, name, host_pattern, path_prefix, target_workload, resource_version,
                                    created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(namespace, name) DO UPDATE SET
                  host_pattern=excluded.host_pattern,
                  path_prefix=excluded.path_prefix,
                  target_workload=excluded.target_workload,
                  resource_version=excluded.resource_version
                """,
                (
                    route.namespace,
                    route.name,
                    route.host_pattern,
                    route.path_prefix,
                    route.target_workload,
                    self._next_rv(conn),
                    utc_now(),
                ),
            )
        return route

    def get_route(self, namespace: str, name: str) -> Route | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM routes WHERE namespace=? AND name=?", (namespace, name)).fetchone()
            return _row_to_route(row) if row else None

    def list_routes(self, namespace: str | None = None) -> list[Route]:
        with self._tx() as conn:
            if namespace:
                rows = conn.execute("SELECT * FROM routes WHERE namespace=? ORDER BY name", (namespace,)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM routes ORDER BY namespace, name").fetchall()
            return [_row_to_route(r) for r in rows]

    def delete_route(self, namespace: str, name: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM routes WHERE namespace=? AND name=?", (namespace, name))
            return cur.rowcount > 0

    # -- scaling decisions -------------------------------------------------

    def append_decision(self, key: str, decision: ScalingDecision, retention_s: float | None = None) -> None:
        namespace, name = split_key(key)
        retention = settings.decision_retention_s if retention_s is None else retention_s
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO decisions (namespace, workload, decided_at, desired_replicas, recommendation,
                                       previous_replicas, applied, reason)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    namespace,
                    name,
                    decision.decided_at,
                    decision.desired_replicas,
                    decision.recommendation,
                    decision.previous_replicas,
                    int(decision.applied),
                    decision.reason,
                ),
            )
            conn.execute(
                "DELETE FROM decisions WHERE namespace=? AND workload=? AND decided_at < ?",
                (namespace, name, decision.decided_at - retention),
            )

    def list_decisions(self, key: str, since: float | None = None) -> list[ScalingDecision]:
        namespace, name = split_key(key)
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM decisions
                WHERE namespace=? AND workload=? AND decided_at >= ?
                ORDER BY decided_at, id
                """,
                (namespace, name, since if since is not None else -1e18),
            ).fetchall()
        return [
            ScalingDecision(
                desired_replicas=r["desired_replicas"],
                reason=r["reason"],
                decided_at=r["decided_at"],
                recommendation=r["recommendation"],
                previous_replicas=r["previous_replicas"],
                applied=bool(r["applied"]),
            )
            for r in rows
        ]
