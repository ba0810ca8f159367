import pytest

from wac.errors import NotFound, ServiceUnavailable
from wac.models import Endpoint, Route
from wac.registry import EndpointRegistry, RegistrySet
from wac.router import (
    IngressRequest,
    IngressRouter,
    LeastOutstanding,
    RouterSet,
    ServiceRouter,
    normalize_host,
    prefix_matches,
)


def _registry(*ids):
    reg = EndpointRegistry("default/web")
    for i in ids:
        reg.register(i, f"http://{i}:8080")
    return reg


def test_round_robin_cycles_healthy_endpoints():
    router = ServiceRouter(_registry("a", "b", "c"), "round_robin")
    picks = [router.route().instance_id for _ in range(6)]
    assert picks == ["a", "b", "c", "a", "b", "c"]


def test_unhealthy_endpoints_are_skipped():
    reg = _registry("a", "b")
    reg.mark_unhealthy("a")
    router = ServiceRouter(reg, "round_robin")
    assert {router.route().instance_id for _ in range(4)} == {"b"}


def test_no_healthy_endpoint_is_service_unavailable():
    reg = _registry("a")
    reg.mark_unhealthy("a")
    with pytest.raises(ServiceUnavailable):
        ServiceRouter(reg).route()


def test_least_outstanding_prefers_idle_endpoint():
    router = ServiceRouter(_registry("a", "b"), LeastOutstanding())
    first = router.route()
    second = router.route()
    assert {first.instance_id, second.instance_id} == {"a", "b"}
    router.release(first)
    assert router.route().instance_id == first.instance_id
    assert router.strategy.outstanding(first.instance_id) == 1


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError):
        ServiceRouter(_registry("a"), "random")


def test_router_set_follows_registry_replacement():
    regs = RegistrySet()
    routers = RouterSet(regs)
    regs.for_workload("default/web")
    r1 = routers.for_workload("default/web")
    assert routers.for_workload("default/web") is r1
    regs.drop("default/web")
    regs.for_workload("default/web")
    assert routers.for_workload("default/web") is not r1


def test_router_set_never_creates_registries():
    regs = RegistrySet()
    routers = RouterSet(regs)
    with pytest.raises(ServiceUnavailable):
        routers.for_workload("default/gone")
    assert regs.keys() == []
    # releasing against an unknown workload is a no-op
    routers.release("default/gone", Endpoint("web-1", "http://web-1:8080"))


def test_host_normalization_and_prefix_segments():
    assert normalize_host("Shop.Example.com:8443") == "shop.example.com"
    assert prefix_matches("/api", "/api")
    assert prefix_matches("/api", "/api/items")
    assert not prefix_matches("/api", "/apix")
    assert prefix_matches("/", "/anything")


def _route(name, host, prefix, target):
    return Route("default", name, host, prefix, target)


def test_ingress_longest_prefix_wins():
    ingress = IngressRouter(
        [
            _route("root", "shop.example.com", "/", "web"),
            _route("api", "shop.example.com", "/api", "api"),
            _route("v2", "shop.example.com", "/api/v2", "api-v2"),
        ]
    )
    assert ingress.match("shop.example.com", "/api/v2/items").name == "v2"
    assert ingress.match("shop.example.com", "/api/v1").name == "api"
    assert ingress.match("SHOP.example.com:80", "/apiary").name == "root"


def test_ingress_exact_host_beats_wildcard():
    ingress = IngressRouter(
        [
            _route("any", "*", "/", "fallback"),
            _route("shop", "shop.example.com", "/cart", "cart"),
        ]
    )
    assert ingress.match("shop.example.com", "/cart").name == "shop"
    assert ingress.match("other.example.com", "/cart").name == "any"
    # the host has routes, none of them match: no fallback to '*'
    with pytest.raises(NotFound):
        ingress.match("shop.example.com", "/checkout")


def test_ingress_unknown_host_is_not_found():
    ingress = IngressRouter([_route("shop", "shop.example.com", "/", "web")])
    with pytest.raises(NotFound):
        ingress.match("nope.example.com", "/")


def test_ingress_routes_to_target_endpoint():
    regs = RegistrySet()
    regs.for_workload("default/web").register("web-1", "http://web-1:8080")
    routers = RouterSet(regs)
    ingress = IngressRouter([_route("shop", "shop.example.com", "/", "web")], service_routers=routers.for_workload)

    route, endpoint = ingress.route(IngressRequest(host="shop.example.com", path="/index.html"))
    assert route.target_key == "default/web"
    assert endpoint.instance_id == "web-1"

    regs.for_workload("default/web").deregister("web-1")
    with pytest.raises(ServiceUnavailable):
        ingress.route(IngressRequest(host="shop.example.com", path="/"))
