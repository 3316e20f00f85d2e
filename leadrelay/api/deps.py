"""
Shared route dependencies.
"""
from fastapi import HTTPException, Request

from leadrelay.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return container
