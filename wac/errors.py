"""Error taxonomy shared by the controllers, the API and the CLI."""
from __future__ import annotations


class ControlPlaneError(Exception):
    kind = "Error"
    status_code = 500
    exit_code = 1


class TransientInfra(ControlPlaneError):
    """Metric/probe/API timeout. Retried with backoff; never changes state."""

    kind = "TransientInfra"
    status_code = 504


class NotFound(ControlPlaneError):
    kind = "NotFound"
    status_code = 404
    exit_code = 3


class Conflict(ControlPlaneError):
    """Stale generation on update. The caller must re-read and retry."""

    kind = "Conflict"
    status_code = 409
    exit_code = 4


class InvalidSpec(ControlPlaneError):
    kind = "InvalidSpec"
    status_code = 422
    exit_code = 5


class Degraded(ControlPlaneError):
    kind = "Degraded"
    status_code = 503
    exit_code = 6


class ServiceUnavailable(ControlPlaneError):
    """No healthy endpoint is available for the selected workload."""

    kind = "ServiceUnavailable"
    status_code = 503
    exit_code = 7


EXIT_CODES = {
    cls.kind: cls.exit_code
    for cls in (TransientInfra, NotFound, Conflict, InvalidSpec, Degraded, ServiceUnavailable)
}
