from __future__ import annotations

from collections.abc import Iterable

from sandboxer.services.containers import ContainerStatus

DEV_SERVICES = ("preview", "opencode")
PRODUCTION_SERVICES = ("production",)

_HEALTHY = {"", "healthy"}


def service_is_ready(status: ContainerStatus) -> bool:
    return status.state == "running" and status.health in _HEALTHY


def group_is_ready(statuses: Iterable[ContainerStatus], required_services: Iterable[str]) -> bool:
    """True when every required service has a running container that is not unhealthy or starting."""

    ready = {s.service for s in statuses if service_is_ready(s)}
    required = set(required_services)
    return bool(required) and required <= ready


def describe_group(statuses: Iterable[ContainerStatus]) -> str:
    parts = [f"{s.service}={s.state}{'/' + s.health if s.health else ''}" for s in statuses]
    return ",".join(sorted(parts)) or "none"
