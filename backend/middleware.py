"""Request-scoped access to the services built in the server lifespan.

Services live on app.state so tests can swap any of them without patching
module globals.
"""
from fastapi import Request, HTTPException, status
import logging

logger = logging.getLogger(__name__)


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        logger.error("Service %s is not initialized", name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )
    return service


def get_webhook_service(request: Request):
    return _service(request, "webhook_service")


def get_stripe_gateway(request: Request):
    return _service(request, "stripe_gateway")


def get_profile_store(request: Request):
    return _service(request, "profile_store")


def get_analytics(request: Request):
    return _service(request, "analytics")


def get_rate_limiter(request: Request):
    return _service(request, "rate_limiter")
