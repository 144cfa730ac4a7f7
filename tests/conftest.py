import os as _os
import sys

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from proxysync.directory import Container, Service  # noqa: E402
from proxysync.eventlog import clear_events  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDirectory:
    def __init__(self, services=None, error=None):
        self.services = list(services or [])
        self.error = error
        self.calls = 0

    def list_running_http_services(self, strict=False):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.services)


class FakeProxy:
    def __init__(self, ok=True):
        self.ok = ok
        self.reloads = 0

    def reload(self):
        self.reloads += 1
        return self.ok


def make_service(sid, name, ips, host="example.com", ssl=None, state="Running", ports=("http",)):
    env = {"VIRTUAL_HOST": host} if host is not None else {}
    if ssl is not None:
        env["FORCE_SSL"] = ssl
    containers = tuple(
        Container(id=f"{sid}-c{i}", private_ip=ip, state="Running", env_vars=dict(env)) for i, ip in enumerate(ips)
    )
    return Service(id=sid, name=name, state=state, port_types=frozenset(ports), containers=containers)


@pytest.fixture(autouse=True)
def _clean_event_log():
    clear_events()
    yield
    clear_events()


@pytest.fixture
def clock():
    return FakeClock(1000.0)
