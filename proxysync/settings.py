from __future__ import annotations

import ipaddress
import os
import shlex
from dataclasses import dataclass, field
from urllib.parse import quote


class ConfigurationMissing(Exception):
    pass


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
_LOG_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def _from_env(reader, name: str, *args):
    # Evaluated per Settings() instance, not at import time.
    return field(default_factory=lambda: reader(name, *args))


@dataclass(frozen=True)
class Settings:
    # Orchestration API
    auth: str | None = _from_env(_env_str, "TUTUM_AUTH")
    stream_url: str = _from_env(_env_str, "TUTUM_STREAM_URL", "wss://stream.tutum.co/v1/events")
    api_url: str = _from_env(_env_str, "TUTUM_REST_HOST", "https://dashboard.tutum.co")
    request_timeout_s: float = _from_env(_env_float, "PROXYSYNC_REQUEST_TIMEOUT_S", 10.0)

    # Proxy
    output_path: str = _from_env(_env_str, "NGINX_DEFAULT_CONF", "/etc/nginx/conf.d/default.conf")
    template_path: str | None = _from_env(_env_str, "NGINX_TEMPLATE")
    reload_command: str = _from_env(_env_str, "NGINX_RELOAD_CMD", "nginx -s reload")
    proxy_container: str | None = _from_env(_env_str, "NGINX_CONTAINER")

    # Scheduling
    settle_delay_s: float = _from_env(_env_float, "PROXYSYNC_SETTLE_DELAY_S", 5.0)
    reload_delay_s: float = _from_env(_env_float, "PROXYSYNC_RELOAD_DELAY_S", 3.0)

    # Status API (optional)
    enable_api: bool = _from_env(_env_bool, "PROXYSYNC_ENABLE_API", True)
    api_host: str = _from_env(_env_str, "PROXYSYNC_API_HOST", "127.0.0.1")
    api_port: int = _from_env(_env_int, "PROXYSYNC_API_PORT", 8000)
    admin_user: str | None = _from_env(_env_str, "PROXYSYNC_ADMIN_USER")
    admin_password: str | None = _from_env(_env_str, "PROXYSYNC_ADMIN_PASSWORD")

    log_level: str = _from_env(_env_str, "PROXYSYNC_LOG_LEVEL", "INFO")

    def validate(self) -> None:
        """Fail fast on configuration the process cannot run without."""
        if not self.auth:
            raise ConfigurationMissing(
                "TUTUM_AUTH is not set: the proxy has no access to the orchestration API. "
                "Give this service an API role for automatic backend reconfiguration."
            )

    @property
    def stream_endpoint(self) -> str:
        sep = "&" if "?" in self.stream_url else "?"
        return f"{self.stream_url}{sep}auth={quote(self.auth or '', safe='')}"

    @property
    def reload_argv(self) -> list[str]:
        return shlex.split(self.reload_command)

    @property
    def admin_auth_enabled(self) -> bool:
        return bool(self.admin_user and self.admin_password)

    @property
    def logging_level(self) -> str:
        """Standard level name for PROXYSYNC_LOG_LEVEL; unknown names mean INFO."""
        name = (self.log_level or "").strip().upper()
        name = _LOG_LEVEL_ALIASES.get(name, name)
        return name if name in LOG_LEVELS else "INFO"

    @property
    def uvicorn_log_level(self) -> str:
        return self.logging_level.lower()

    @property
    def api_is_local(self) -> bool:
        if self.api_host == "localhost":
            return True
        try:
            return ipaddress.ip_address(self.api_host).is_loopback
        except ValueError:
            return False
