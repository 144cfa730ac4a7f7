from __future__ import annotations

import secrets
from typing import Any, Protocol

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .api_models import EventOut, RegenerateResponse, StateResponse
from .eventlog import latest_events, log_event
from .settings import Settings


class LoopHandle(Protocol):
    def status(self) -> dict[str, Any]: ...

    def request_regeneration(self) -> None: ...


security = HTTPBasic(auto_error=False)


def create_app(loop: LoopHandle, settings: Settings) -> FastAPI:
    app = FastAPI(title="proxysync", version="1.0.0")
    if not settings.admin_auth_enabled and not settings.api_is_local:
        log_event(
            "WARN",
            f"Status API on {settings.api_host} has no admin credentials; "
            "set PROXYSYNC_ADMIN_USER and PROXYSYNC_ADMIN_PASSWORD",
        )

    def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
        if not settings.admin_auth_enabled:
            return None
        if credentials is None or not (
            secrets.compare_digest(credentials.username, settings.admin_user or "")
            and secrets.compare_digest(credentials.password, settings.admin_password or "")
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/state", response_model=StateResponse)
    def state(_: str | None = Depends(require_admin)) -> dict[str, Any]:
        return loop.status()

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(100, ge=1, le=500), _: str | None = Depends(require_admin)) -> list[dict[str, Any]]:
        return latest_events(limit)

    @app.post("/regenerate", response_model=RegenerateResponse, status_code=status.HTTP_202_ACCEPTED)
    def regenerate(user: str | None = Depends(require_admin)) -> dict[str, bool]:
        log_event("INFO", f"Manual regeneration requested{f' by {user}' if user else ''}")
        loop.request_regeneration()
        return {"queued": True}

    return app
