import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from chatdesk.config import settings
from chatdesk.services.container import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def get_gateway(services: Services = Depends(get_services)):
    return services.gateway


def get_queue_manager(services: Services = Depends(get_services)):
    return services.queue_manager


def get_dispatcher(services: Services = Depends(get_services)):
    return services.dispatcher


def get_orchestrator(services: Services = Depends(get_services)):
    return services.orchestrator


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")
