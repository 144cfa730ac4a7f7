from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- Orchestration API records ---


class PortRecord(_Record):
    port_name: str | None = Field(None, description="Port kind, e.g. http, https, tcp")
    inner_port: int | None = None
    protocol: str | None = None


class EnvVarRecord(_Record):
    key: str
    value: str | None = None


class ServiceRecord(_Record):
    uuid: str
    name: str = ""
    state: str = ""
    container_ports: list[PortRecord] = Field(default_factory=list)
    containers: list[str] = Field(default_factory=list, description="Container resource URIs")


class ContainerRecord(_Record):
    uuid: str
    private_ip: str | None = None
    state: str = ""
    container_envvars: list[EnvVarRecord] = Field(default_factory=list)


class StreamMessage(_Record):
    type: str | None = None
    uuid: str | None = None
    state: str | None = None
    timestamp: str | None = Field(None, alias="datetime")


# --- Status API ---


class StateResponse(BaseModel):
    connected: bool
    in_flight: list[str]
    dirty: bool
    regeneration_pending: bool
    reload_pending: bool
    events_seen: int
    regenerations: int
    skipped_cycles: int
    reloads: int
    failed_reloads: int
    last_regeneration_at: str | None = None
    last_regeneration_ok: bool | None = None
    last_error: str | None = None
    services: list[str] = Field(default_factory=list)


class EventOut(BaseModel):
    ts: str
    level: str
    service_id: str | None = None
    message: str


class RegenerateResponse(BaseModel):
    queued: bool
