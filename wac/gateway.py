"""Ingress gateway: Host + path -> Route -> healthy endpoint -> upstream."""
from __future__ import annotations

from typing import Mapping

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from .errors import ControlPlaneError
from .manager import ControlPlane
from .router import IngressRequest
from .settings import settings

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade",
}
# The body is re-sent decoded, so the upstream framing headers no longer apply.
_BODY_HEADERS = {"content-length", "content-encoding"}

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def strip_hop_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP}


def _forwarded(req: Request, headers: dict[str, str]) -> dict[str, str]:
    client_ip = req.client.host if req.client else "unknown"
    prior = headers.get("x-forwarded-for")
    headers["x-forwarded-for"] = f"{prior}, {client_ip}" if prior else client_ip
    headers.setdefault("x-forwarded-proto", req.url.scheme)
    headers.setdefault("x-forwarded-host", req.headers.get("host", ""))
    return headers


def create_gateway_app(
    cp: ControlPlane,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout_s: float | None = None,
) -> FastAPI:
    """Build the data-plane app. It does not own the control plane's loops."""
    timeout = settings.gateway_timeout_s if timeout_s is None else timeout_s
    app = FastAPI(title="Workload Autoscaling Controller gateway")
    app.state.control_plane = cp

    @app.api_route("/{path:path}", methods=METHODS)
    async def proxy(path: str, request: Request):
        host = request.headers.get("host", "")
        try:
            route, endpoint = cp.ingress.route(IngressRequest(host=host, path=f"/{path}", method=request.method))
        except ControlPlaneError as e:
            return JSONResponse(status_code=e.status_code, content={"error": e.kind, "detail": str(e)})

        headers = _forwarded(request, strip_hop_headers(dict(request.headers)))
        headers.pop("host", None)
        target = f"{endpoint.address.rstrip('/')}/{path}"
        try:
            async with httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(timeout), follow_redirects=False) as client:
                upstream = await client.request(
                    request.method,
                    target,
                    params=request.query_params,
                    headers=headers,
                    content=await request.body(),
                )
        except httpx.HTTPError as e:
            cp.store.log_event(
                "WARN",
                f"Upstream {endpoint.instance_id} failed for {host}/{path}: {type(e).__name__}",
                namespace=route.namespace,
                workload=route.target_workload,
            )
            return JSONResponse(
                status_code=502,
                content={"error": "BadGateway", "detail": f"Upstream {endpoint.instance_id} failed: {type(e).__name__}"},
            )
        finally:
            cp.routers.release(route.target_key, endpoint)

        resp_headers = {
            k: v for k, v in strip_hop_headers(upstream.headers).items() if k.lower() not in _BODY_HEADERS
        }
        resp_headers["x-wac-instance"] = endpoint.instance_id
        return Response(content=upstream.content, status_code=upstream.status_code, headers=resp_headers)

    return app
