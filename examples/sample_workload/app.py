from __future__ import annotations

import os
import random
import time
from threading import Lock

from fastapi import FastAPI, HTTPException

INSTANCE_ID = os.getenv("WAC_INSTANCE_ID", "local")
TEMPLATE_HASH = os.getenv("WAC_TEMPLATE_HASH", "dev")
BASE_LOAD = float(os.getenv("BASE_LOAD", "0.3"))
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1

app = FastAPI(title=f"Sample workload {INSTANCE_ID}")

_lock = Lock()
_load: dict[str, float] = {}


def _injected_env() -> dict[str, str]:
    # WAC_* plus the ConfigVersion keys the controller injected
    skip = {"PATH", "HOME", "HOSTNAME", "LANG", "GPG_KEY", "PYTHON_VERSION", "PYTHON_SHA256"}
    return {k: v for k, v in sorted(os.environ.items()) if k not in skip and not k.startswith("PYTHON")}


@app.get("/")
def read_root() -> dict:
    return {
        "instance": INSTANCE_ID,
        "template": TEMPLATE_HASH,
        "config_version": os.getenv("WAC_CONFIG_VERSION", ""),
        "env": _injected_env(),
    }


@app.get("/health")
def health() -> dict[str, str]:
    # Optional fault injection to demo self-healing and degraded rollouts.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    return {"status": "healthy", "instance": INSTANCE_ID}


@app.get("/utilization")
def utilization(resource: str = "cpu", window: float = 15) -> dict:
    with _lock:
        ratio = _load.get(resource, BASE_LOAD)
    return {"resource": resource, "window": window, "utilization": ratio}


@app.post("/simulate/load/{ratio}")
def simulate_load(ratio: float, resource: str = "cpu") -> dict:
    if ratio < 0:
        raise HTTPException(status_code=422, detail="ratio must be >= 0")
    with _lock:
        _load[resource] = ratio
    return {"resource": resource, "utilization": ratio}


@app.post("/simulate/reset")
def simulate_reset() -> dict:
    with _lock:
        _load.clear()
    return {"utilization": BASE_LOAD}
