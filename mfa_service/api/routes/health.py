"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ..models import HealthStatus
from ..deps import get_gateway, get_mfa_service
from ...auth.service import MFAService
from ...gateway import IdentityGateway

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "0.1.0")


@router.get("", response_model=HealthStatus)
def health_check(
    gateway: IdentityGateway = Depends(get_gateway),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Basic health check endpoint.

    The service is unhealthy when the Identity Gateway is; a degraded
    pending store falls back to memory and does not count.
    """
    services = {}

    start = time.time()
    gateway_status = gateway.health_check()
    latency = (time.time() - start) * 1000
    if gateway_status.startswith("healthy"):
        services["identity_gateway"] = f"healthy ({latency:.1f}ms)"
    else:
        services["identity_gateway"] = gateway_status

    services["pending_store"] = service.pending.health()

    overall_healthy = not services["identity_gateway"].startswith("unhealthy")

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )
