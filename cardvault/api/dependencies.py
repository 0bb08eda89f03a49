"""FastAPI dependencies.

Wires infrastructure singletons into the application services and
resolves the authenticated principal handed over by the upstream
authentication layer.
"""

from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.application.checkout_service import CheckoutService
from cardvault.application.expiry_sweeper import ExpirySweeper
from cardvault.application.refund_service import RefundWorkflow
from cardvault.application.webhook_service import WebhookVerifier
from cardvault.domain.principal import Principal, Role
from cardvault.infrastructure.cache import CacheInvalidator, get_cache_invalidator
from cardvault.infrastructure.catalog import Catalog, get_catalog
from cardvault.infrastructure.clock import Clock, SweepThrottle, SystemClock
from cardvault.infrastructure.config import settings
from cardvault.infrastructure.database import async_session_factory
from cardvault.infrastructure.gateway_client import PaymentGatewayClient, get_gateway_client

logger = structlog.get_logger()

_clock = SystemClock()
_sweep_throttle: SweepThrottle | None = None


# ============================================================================
# Infrastructure
# ============================================================================


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


def get_clock() -> Clock:
    return _clock


def get_sweep_throttle() -> SweepThrottle:
    """Get the process-wide sweep throttle."""
    global _sweep_throttle
    if _sweep_throttle is None:
        _sweep_throttle = SweepThrottle(_clock, settings.sweep_interval_seconds)
    return _sweep_throttle


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
ClockDep = Annotated[Clock, Depends(get_clock)]
CacheDep = Annotated[CacheInvalidator, Depends(get_cache_invalidator)]
GatewayDep = Annotated[PaymentGatewayClient, Depends(get_gateway_client)]


# ============================================================================
# Services
# ============================================================================


def get_sweeper(
    session_factory: SessionFactoryDep,
    clock: ClockDep,
    cache: CacheDep,
    throttle: Annotated[SweepThrottle, Depends(get_sweep_throttle)],
) -> ExpirySweeper:
    return ExpirySweeper(session_factory, throttle, clock=clock, cache=cache)


def get_checkout_service(
    session_factory: SessionFactoryDep,
    catalog: Annotated[Catalog, Depends(get_catalog)],
    gateway: GatewayDep,
    sweeper: Annotated[ExpirySweeper, Depends(get_sweeper)],
    clock: ClockDep,
    cache: CacheDep,
) -> CheckoutService:
    return CheckoutService(
        session_factory, catalog, gateway, sweeper, clock=clock, cache=cache
    )


def get_refund_workflow(
    session_factory: SessionFactoryDep,
    gateway: GatewayDep,
    clock: ClockDep,
    cache: CacheDep,
) -> RefundWorkflow:
    return RefundWorkflow(session_factory, gateway, clock=clock, cache=cache)


def get_webhook_verifier(
    session_factory: SessionFactoryDep,
    gateway: GatewayDep,
    clock: ClockDep,
    cache: CacheDep,
) -> WebhookVerifier:
    return WebhookVerifier(session_factory, config=gateway.config, clock=clock, cache=cache)


# ============================================================================
# Principal
# ============================================================================


def get_principal(
    x_principal_id: Annotated[str | None, Header()] = None,
    x_principal_role: Annotated[str | None, Header()] = None,
    x_principal_name: Annotated[str | None, Header()] = None,
) -> Principal:
    """Resolve the caller from headers set by the authentication layer.

    Raises:
        HTTPException: 401 if the caller is not identified.
    """
    if not x_principal_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "UNAUTHENTICATED",
                "message": "Missing X-Principal-Id header",
            },
        )
    try:
        role = Role((x_principal_role or Role.BUYER.value).lower())
    except ValueError:
        logger.warning("Unknown principal role", principal_id=x_principal_id, role=x_principal_role)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "UNAUTHENTICATED",
                "message": "Unknown principal role",
            },
        )
    return Principal(id=x_principal_id, role=role, username=x_principal_name)


PrincipalDep = Annotated[Principal, Depends(get_principal)]
