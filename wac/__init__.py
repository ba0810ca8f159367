"""Workload Autoscaling Controller (WAC).

Control plane for a pool of interchangeable, stateless web-serving instances:
 - reconciliation of the running instance set toward a declared workload spec
 - metric-driven autoscaling with stabilization and rate limits
 - rolling replacement when the instance template (config) changes
 - endpoint registry, load distribution and host/path ingress dispatch

State lives in a small sqlite store; every controller is its own periodic loop.
"""

__version__ = "0.1.0"
