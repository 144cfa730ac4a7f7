from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx
from pydantic import ValidationError

from .api_models import ContainerRecord, ServiceRecord
from .eventlog import log_event


HTTP_PORT_TYPES = frozenset({"http", "https"})
RUNNING_SERVICE_STATES = frozenset({"Running", "Partly running"})
ROUTABLE_CONTAINER_STATES = frozenset({"Starting", "Running"})
FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})

_UPSTREAM_RE = re.compile(r"[^A-Za-z0-9_]+")


class DirectoryUnavailable(Exception):
    pass


class MalformedRecord(Exception):
    pass


def _ip_sort_key(ip: str) -> tuple[int, int, int, str]:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return (1, 0, 0, ip)
    return (0, addr.version, int(addr), ip)


@dataclass(frozen=True)
class Container:
    id: str
    private_ip: str | None
    state: str
    env_vars: Mapping[str, str | None] = field(default_factory=dict)

    @classmethod
    def from_record(cls, rec: ContainerRecord) -> "Container":
        return cls(
            id=rec.uuid,
            private_ip=rec.private_ip,
            state=rec.state,
            env_vars={e.key: e.value for e in rec.container_envvars},
        )

    @property
    def routable(self) -> bool:
        return self.state in ROUTABLE_CONTAINER_STATES

    @property
    def virtual_host(self) -> str:
        host = (self.env_vars.get("VIRTUAL_HOST") or "").strip()
        if not host:
            raise MalformedRecord(f"container {self.id} has no VIRTUAL_HOST")
        return host

    @property
    def force_ssl(self) -> bool | None:
        """None when FORCE_SSL is absent, otherwise its parsed value."""
        if "FORCE_SSL" not in self.env_vars:
            return None
        raw = self.env_vars["FORCE_SSL"] or ""
        return raw.strip().lower() not in FALSE_VALUES


@dataclass(frozen=True)
class Service:
    id: str
    name: str
    state: str
    port_types: frozenset[str] = frozenset()
    containers: tuple[Container, ...] = ()

    @property
    def http(self) -> bool:
        return bool(self.port_types & HTTP_PORT_TYPES)

    @property
    def running(self) -> bool:
        return self.state in RUNNING_SERVICE_STATES

    @property
    def container_ips(self) -> list[str]:
        ips = [c.private_ip for c in self.containers if c.routable and c.private_ip]
        return sorted(ips, key=_ip_sort_key)

    def _primary(self) -> Container:
        if not self.containers:
            raise MalformedRecord(f"service {self.name or self.id} has no containers")
        for c in self.containers:
            if c.routable:
                return c
        return self.containers[0]

    @property
    def host(self) -> str:
        return self._primary().virtual_host

    @property
    def ssl(self) -> bool:
        # Absent FORCE_SSL means plain http.
        return bool(self._primary().force_ssl)

    @property
    def upstream(self) -> str:
        slug = _UPSTREAM_RE.sub("_", self.name).strip("_") or "service"
        return f"{slug}_{self.id[:8]}"

    def validate(self) -> None:
        """Raise MalformedRecord unless the service can be routed."""
        self._primary().virtual_host
        if not self.container_ips:
            raise MalformedRecord(f"service {self.name or self.id} has no routable container IPs")


def _resource_id(uri: str) -> str:
    return uri.rstrip("/").split("/")[-1]


class DirectoryClient:
    """Read-only client for the orchestration REST API.

    Every failure to talk to the API surfaces as DirectoryUnavailable; nothing
    is retried here.
    """

    def __init__(
        self,
        base_url: str,
        auth: str,
        timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": auth,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout_s,
            follow_redirects=False,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            resp = self._client.get(url, params=params)
        except httpx.HTTPError as e:
            raise DirectoryUnavailable(f"GET {url} failed: {type(e).__name__}: {e}") from e

        if resp.status_code in (401, 403):
            raise DirectoryUnavailable(f"GET {url} rejected credentials (HTTP {resp.status_code})")
        if resp.status_code == 404:
            raise DirectoryUnavailable(f"GET {url}: not found")
        if not resp.is_success:
            raise DirectoryUnavailable(f"GET {url}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise DirectoryUnavailable(f"GET {url}: invalid JSON") from e
        if not isinstance(data, dict):
            raise DirectoryUnavailable(f"GET {url}: expected a JSON object")
        return data

    # --- raw API ---

    def list_services(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        url: str | None = "/api/v1/service/"
        params = dict(filters or {})
        while url:
            data = self._get_json(url, params=params or None)
            objects = data.get("objects")
            if not isinstance(objects, list):
                raise DirectoryUnavailable("service listing has no 'objects' list")
            out.extend(o for o in objects if isinstance(o, dict))
            next_url = (data.get("meta") or {}).get("next")
            # next links already carry the query string
            url = str(self._client.base_url.join(next_url)) if next_url else None
            params = {}
        return out

    def get_service(self, service_id: str) -> dict[str, Any]:
        return self._get_json(f"/api/v1/service/{service_id}/")

    def get_container(self, container_id: str) -> dict[str, Any]:
        return self._get_json(f"/api/v1/container/{container_id}/")

    # --- resolved topology ---

    def resolve_service(self, raw: dict[str, Any]) -> Service | None:
        """Return the fully resolved service, or None if it is not routable http."""
        listed = _parse(ServiceRecord, raw)
        port_types = frozenset(p.port_name for p in listed.container_ports if p.port_name)
        if not port_types & HTTP_PORT_TYPES:
            return None

        # Listing state may be stale; reload before deciding.
        fresh = _parse(ServiceRecord, self.get_service(listed.uuid))
        if fresh.state not in RUNNING_SERVICE_STATES:
            return None

        containers = tuple(
            Container.from_record(_parse(ContainerRecord, self.get_container(_resource_id(uri))))
            for uri in fresh.containers
        )
        service = Service(
            id=fresh.uuid,
            name=fresh.name or listed.name,
            state=fresh.state,
            port_types=port_types,
            containers=containers,
        )
        service.validate()
        return service

    def list_running_http_services(self, strict: bool = False) -> list[Service]:
        """Services exposing http/https that are currently running, in listing order.

        A service missing routing metadata is skipped (and logged) unless
        strict is set, in which case MalformedRecord propagates.
        """
        services: list[Service] = []
        for raw in self.list_services():
            try:
                service = self.resolve_service(raw)
            except MalformedRecord as e:
                if strict:
                    raise
                log_event("WARN", f"Excluding service from config: {e}", service_id=raw.get("uuid"))
                continue
            if service is not None:
                services.append(service)
        return services


def _parse(model: Any, raw: dict[str, Any]) -> Any:
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise MalformedRecord(f"invalid {model.__name__}: {e.error_count()} error(s)") from e
