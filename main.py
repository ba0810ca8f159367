"""ASGI entry points.

    uvicorn main:app --port 8000        # control API (owns the control loops)
    python main.py                      # control API on :8000 and gateway on :8080
"""
from __future__ import annotations

import argparse
import asyncio
import os

import uvicorn

from wac.api import create_app
from wac.gateway import create_gateway_app
from wac.manager import ControlPlane

control_plane = ControlPlane()
app = create_app(control_plane)
gateway = create_gateway_app(control_plane)


async def serve(host: str, api_port: int, gateway_port: int) -> None:
    # One process, so the gateway reads the same in-memory endpoint registries.
    servers = [
        uvicorn.Server(uvicorn.Config(app, host=host, port=api_port, log_level="info")),
        uvicorn.Server(uvicorn.Config(gateway, host=host, port=gateway_port, log_level="info")),
    ]
    await asyncio.gather(*(s.serve() for s in servers))


def main(argv: list[str] | None = None) -> None:
    p = argparse.ArgumentParser(description="Workload Autoscaling Controller")
    p.add_argument("--host", default=os.getenv("WAC_HOST", "0.0.0.0"))
    p.add_argument("--api-port", type=int, default=int(os.getenv("WAC_API_PORT", "8000")))
    p.add_argument("--gateway-port", type=int, default=int(os.getenv("WAC_GATEWAY_PORT", "8080")))
    args = p.parse_args(argv)
    asyncio.run(serve(args.host, args.api_port, args.gateway_port))


if __name__ == "__main__":
    main()
