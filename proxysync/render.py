from __future__ import annotations

import contextlib
import os
import stat
import tempfile
from typing import Any, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template, UndefinedError

from .directory import MalformedRecord, Service


NGINX_TEMPLATE = """\
# Generated by proxysync. Manual edits are replaced on the next regeneration.
{% for service in services %}
# {{ service.name }}
upstream {{ service.upstream }} {
{%- for ip in service.container_ips %}
    server {{ ip }};
{%- endfor %}
}

server {
    listen 80;
    server_name {{ service.host }};
{%- if service.ssl %}
    return 301 https://$host$request_uri;
}

server {
    listen 443 ssl;
    server_name {{ service.host }};
    ssl_certificate /etc/nginx/certs/{{ service.cert_name }}.crt;
    ssl_certificate_key /etc/nginx/certs/{{ service.cert_name }}.key;
{%- endif %}

    location / {
        proxy_pass http://{{ service.upstream }};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }
}
{% endfor %}
"""


def _context(service: Service) -> dict[str, Any]:
    ips = service.container_ips
    if not ips:
        raise MalformedRecord(f"service {service.name or service.id} has no routable container IPs")
    host = service.host
    return {
        "id": service.id,
        "name": service.name,
        "upstream": service.upstream,
        "host": host,
        # server_name may list several names; the certificate is named after the first.
        "cert_name": host.split()[0],
        "ssl": service.ssl,
        "container_ips": ips,
    }


class ConfigRenderer:
    """Render the proxy configuration from resolved services.

    Output depends only on the services passed in, so an unchanged topology
    renders byte-identical text.
    """

    def __init__(self, template_path: str | None = None):
        if template_path:
            path = os.path.abspath(template_path)
            env = Environment(
                loader=FileSystemLoader(os.path.dirname(path)),
                undefined=StrictUndefined,
                keep_trailing_newline=True,
            )
            self.template: Template = env.get_template(os.path.basename(path))
        else:
            env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
            self.template = env.from_string(NGINX_TEMPLATE)

    def render(self, services: Sequence[Service]) -> str:
        views = [_context(s) for s in services]
        try:
            return self.template.render(services=views)
        except UndefinedError as e:
            raise MalformedRecord(f"template references a missing field: {e.message}") from e


def write_atomic(path: str, text: str) -> None:
    """Replace the file at path so readers see either the old or the new content."""
    target = os.path.abspath(path)
    directory = os.path.dirname(target)
    os.makedirs(directory, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=".proxysync-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        try:
            mode = stat.S_IMODE(os.stat(target).st_mode)
        except FileNotFoundError:
            mode = 0o644
        os.chmod(tmp, mode)
        os.replace(tmp, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
