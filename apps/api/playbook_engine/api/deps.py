"""FastAPI dependencies."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from playbook_engine.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None) -> str:
    """Caller identity, set by the authenticating proxy in front of the API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


ServicesDep = Annotated[Services, Depends(get_services)]
UserIdDep = Annotated[str, Depends(get_user_id)]
