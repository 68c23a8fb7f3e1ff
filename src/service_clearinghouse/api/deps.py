"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the caller's
identity, unit-of-work factory, payment gateway and configuration. Tests
swap any of them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING

from fastapi import Depends, Header

from service_clearinghouse.config import Settings, get_settings
from service_clearinghouse.domain.actor import Actor
from service_clearinghouse.domain.enums import Role
from service_clearinghouse.domain.exceptions import UnauthorizedError
from service_clearinghouse.logging_config import bind_actor
from service_clearinghouse.services.payment_service import build_payment_gateway
from service_clearinghouse.services.unit_of_work import new_unit_of_work

if TYPE_CHECKING:
    from collections.abc import Callable

    from service_clearinghouse.services.payment_service import PaymentGateway
    from service_clearinghouse.services.unit_of_work import UnitOfWork


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_uow_factory() -> Callable[[], UnitOfWork]:
    """Provide a factory of per-operation units of work."""
    return new_unit_of_work


def get_payment_gateway(
    settings: Settings = Depends(get_app_settings),
) -> PaymentGateway | None:
    """The configured payment gateway, or None for immediate funding."""
    return build_payment_gateway(settings)


def get_actor(
    x_subject_id: str | None = Header(default=None),
    x_subject_role: str | None = Header(default=None),
) -> Actor:
    """The caller as asserted by the identity gateway in front of this service."""
    subject_id = (x_subject_id or "").strip()
    if not subject_id or not x_subject_role:
        raise UnauthorizedError("Missing identity headers")
    try:
        role = Role(x_subject_role.strip().lower())
    except ValueError as exc:
        raise UnauthorizedError(f"Unknown role '{x_subject_role}'") from exc

    bind_actor(subject_id, role)
    return Actor(subject_id=subject_id, role=role)


def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Guard the scheduler endpoints with the shared cron secret."""
    if not settings.cron_secret:
        if settings.is_production:
            raise UnauthorizedError("Cron secret is not configured")
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
        raise UnauthorizedError("Invalid cron secret")
