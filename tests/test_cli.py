import json

import pytest

import cli


class _Resp:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._body


class _Calls(list):
    """Recorded (method, url, kwargs) calls plus the canned replies to hand out."""


@pytest.fixture()
def api(monkeypatch):
    recorded = _Calls()
    recorded.replies = []

    def fake(method):
        def _call(url, **kwargs):
            recorded.append((method, url, kwargs))
            return recorded.replies.pop(0)

        return _call

    for method in ("get", "post", "delete"):
        monkeypatch.setattr(cli.requests, method, fake(method))
    return recorded


def test_apply_posts_manifest_with_namespace(api, tmp_path, capsys):
    manifest = tmp_path / "web.json"
    manifest.write_text(json.dumps({"kind": "Workload", "name": "web", "minReplicas": 1, "maxReplicas": 3}))
    api.replies.append(_Resp(200, {"action": "created"}))

    assert cli.main(["--api", "http://cp:8000", "-n", "shop", "apply", "-f", str(manifest)]) == 0
    method, url, kwargs = api[0]
    assert (method, url) == ("post", "http://cp:8000/apply")
    assert kwargs["json"]["namespace"] == "shop"
    assert "created" in capsys.readouterr().out


def test_apply_list_manifest_returns_first_error(api, tmp_path):
    manifest = tmp_path / "all.json"
    manifest.write_text(json.dumps([{"kind": "ConfigVersion", "name": "c", "versionId": "v1"}, {"kind": "Workload"}]))
    api.replies.extend([_Resp(200, {"action": "configured"}), _Resp(422, {"error": "InvalidSpec", "detail": "name"})])
    assert cli.main(["apply", "-f", str(manifest)]) == 5
    assert len(api) == 2


def test_apply_unreadable_file_is_invalid_spec(api, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert cli.main(["apply", "-f", str(bad)]) == 5
    assert api == []


@pytest.mark.parametrize(
    "status,error,code",
    [(404, "NotFound", 3), (409, "Conflict", 4), (422, "InvalidSpec", 5), (500, "Error", 1)],
)
def test_exit_codes_follow_error_kind(api, status, error, code, capsys):
    api.replies.append(_Resp(status, {"error": error, "detail": "boom"}))
    assert cli.main(["get", "workload", "web"]) == code
    assert f"{error}: boom" in capsys.readouterr().err


def test_get_without_name_lists_kind(api):
    api.replies.append(_Resp(200, []))
    assert cli.main(["-n", "shop", "get", "routes"]) == 0
    method, url, kwargs = api[0]
    assert url == "http://localhost:8000/objects/routes"
    assert kwargs["params"] == {"namespace": "shop"}


def test_describe_and_delete_urls(api):
    api.replies.extend([_Resp(200, {"kind": "Workload"}), _Resp(200, {"deleted": True})])
    assert cli.main(["describe", "workload", "web"]) == 0
    assert cli.main(["delete", "workload", "web"]) == 0
    assert api[0][1].endswith("/objects/workload/default/web/describe")
    assert api[1][0] == "delete"


def test_watch_stops_after_count(api, capsys):
    api.replies.extend(
        [
            _Resp(200, {"changed": True, "resource_version": 5}),
            _Resp(200, {"changed": False, "resource_version": 5}),
            _Resp(200, {"changed": True, "resource_version": 9}),
        ]
    )
    assert cli.main(["watch", "workload", "web", "--count", "2", "--timeout-s", "1"]) == 0
    afters = [kwargs["params"]["after"] for _, _, kwargs in api]
    assert afters == [0, 5, 5]


def test_events(api):
    api.replies.append(_Resp(200, [{"message": "hi"}]))
    assert cli.main(["events", "--limit", "5", "--workload", "web"]) == 0
    assert api[0][2]["params"] == {"limit": 5, "namespace": "default", "workload": "web"}


def test_unreachable_api_exits_1(monkeypatch):
    def refuse(url, **kwargs):
        raise cli.requests.ConnectionError("refused")

    monkeypatch.setattr(cli.requests, "get", refuse)
    assert cli.main(["get", "workload"]) == 1
