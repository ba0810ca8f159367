import importlib.util
import os

from fastapi.testclient import TestClient


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("wac_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


def test_main_exposes_api_and_gateway(monkeypatch, tmp_path):
    project_root = os.path.dirname(os.path.dirname(__file__))
    # the default state file is relative to the working directory
    monkeypatch.chdir(tmp_path)
    main = _import_main_module(project_root)

    assert main.app.state.control_plane is main.control_plane
    assert main.gateway.state.control_plane is main.control_plane
    assert os.path.exists(tmp_path / "wac.db")

    client = TestClient(main.app)
    assert client.get("/healthz").json()["running"] is False
    paths = {r.path for r in main.app.routes}
    assert {"/apply", "/events", "/objects/{kind}/{namespace}/{name}/watch"} <= paths


def test_control_plane_start_and_stop(cp, store):
    cp.start()
    try:
        assert cp.running
        assert any("Control plane starting" in e["message"] for e in store.latest_events(limit=20))
    finally:
        cp.stop()
    assert not cp.running


def test_alerts_disabled_without_smtp_settings():
    from wac.alerts import alert_degraded, alert_instance_failed

    assert alert_degraded("default/web", "3 failures") is False
    assert alert_instance_failed("default/web", "web-1", "probe failed") is False
