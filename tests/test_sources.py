import httpx
import pytest

from wac.errors import TransientInfra
from wac.sources import HttpMetricSource, HttpProbe, StaticMetricSource, StaticProbe, check_health


def _transport(handler):
    return httpx.MockTransport(handler)


def test_check_health_ok_and_down():
    ok = _transport(lambda request: httpx.Response(200, json={"status": "healthy"}))
    assert check_health("http://web-1:8080/health", transport=ok)[:2] == (True, "Healthy")

    sick = _transport(lambda request: httpx.Response(200, json={"status": "starting"}))
    assert check_health("http://web-1:8080/health", transport=sick)[0] is False

    err = _transport(lambda request: httpx.Response(500))
    assert check_health("http://web-1:8080/health", transport=err)[1] == "HTTP 500"

    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    assert check_health("http://web-1:8080/health", transport=_transport(timeout))[:2] == (False, "No response")


def test_http_probe_uses_health_path():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json={"status": "healthy"})

    probe = HttpProbe(timeout_s=1, transport=_transport(handler))
    assert probe.probe("http://web-1:8080/", "/ready") is True
    assert paths == ["/ready"]


def test_http_metric_source_errors_are_transient():
    def timeout(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(TransientInfra):
        HttpMetricSource(transport=_transport(timeout)).get_utilization("web-1", "http://web-1:8080", "cpu", 15)

    garbage = _transport(lambda request: httpx.Response(200, json={"load": "high"}))
    with pytest.raises(TransientInfra):
        HttpMetricSource(transport=garbage).get_utilization("web-1", "http://web-1:8080", "cpu", 15)

    with pytest.raises(TransientInfra):
        HttpMetricSource().get_utilization("web-1", None, "cpu", 15)


def test_http_metric_source_sends_resource_and_window():
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return httpx.Response(200, json={"utilization": 0.42})

    source = HttpMetricSource(transport=_transport(handler))
    assert source.get_utilization("web-1", "http://web-1:8080", "memory", 30) == 0.42
    assert seen == [{"resource": "memory", "window": "30"}]


def test_static_sources():
    probe = StaticProbe()
    probe.set("http://a", False)
    assert probe.probe("http://a") is False
    assert probe.probe("http://b") is True

    metrics = StaticMetricSource(default=0.3)
    metrics.set("a", 0.9)
    assert metrics.get_utilization("a", None, "cpu", 15) == 0.9
    assert metrics.get_utilization("b", None, "cpu", 15) == 0.3
    metrics.set_all(None)
    with pytest.raises(TransientInfra):
        metrics.get_utilization("a", None, "cpu", 15)
