"""Payment Service — the escrow engine's narrow view of the payment gateway.

Three capabilities are needed from a gateway:
    - create a hosted checkout session for an amount and return its reference
      and redirect URL;
    - confirm a session (poll its status);
    - verify the signature on a webhook it delivers.

``PayMongoGateway`` implements them over httpx. When no secret key is
configured ``build_payment_gateway`` returns None and the escrow engine funds
immediately (simulated funding for development and tests).

Every gateway call is bounded by ``payment_gateway_timeout_seconds``; a
timeout, transport error or 5xx answer raises a retryable PaymentGatewayError.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from service_clearinghouse.domain.exceptions import (
    ClearinghouseError,
    PaymentGatewayError,
    UnauthorizedError,
    ValidationError,
    WebhookProcessingError,
)
from service_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from service_clearinghouse.config import Settings
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

PAID_EVENT_TYPES = frozenset({"checkout_session.payment.paid", "payment_intent.succeeded"})

# Failures that leave the payment unconfirmed but may succeed on redelivery
TRANSIENT_ERROR_CODES = frozenset({"CONCURRENT_MODIFICATION"})


@dataclass(frozen=True)
class HostedSession:
    session_ref: str
    redirect_url: str | None
    status: str = "active"
    payment_ref: str | None = None
    payment_method: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


class PaymentGateway(Protocol):
    async def create_hosted_session(
        self,
        amount: Decimal,
        job_ref: str,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> HostedSession: ...

    async def confirm_session(self, session_ref: str) -> HostedSession: ...

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool: ...


def verify_paymongo_signature(
    payload: bytes,
    signature_header: str,
    secret: str,
    live: bool,
) -> bool:
    """Check a ``Paymongo-Signature`` header: ``t=<ts>,te=<test sig>,li=<live sig>``.

    The signature is HMAC-SHA256 over ``"<ts>.<raw body>"``; test-mode events
    carry it in ``te``, live events in ``li``.
    """
    if not secret or not signature_header:
        return False

    parts: dict[str, str] = {}
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value

    timestamp = parts.get("t")
    signature = parts.get("li" if live else "te")
    if not timestamp or not signature:
        return False

    expected = hmac.new(
        secret.encode(),
        timestamp.encode() + b"." + payload,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def _to_centavos(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class PayMongoGateway:
    """PayMongo checkout sessions over the REST API."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        base_url: str = "https://api.paymongo.com/v1",
        timeout_seconds: float = 10.0,
        live: bool = False,
        public_url: str = "http://localhost:3000",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._live = live
        self._public_url = public_url.rstrip("/")
        self._transport = transport

    async def create_hosted_session(
        self,
        amount: Decimal,
        job_ref: str,
        description: str,
        metadata: dict[str, str] | None = None,
    ) -> HostedSession:
        body = {
            "data": {
                "attributes": {
                    "billing": None,
                    "send_email_receipt": False,
                    "show_description": True,
                    "show_line_items": True,
                    "cancel_url": f"{self._public_url}/jobs/{job_ref}?payment=cancelled",
                    "success_url": f"{self._public_url}/jobs/{job_ref}?payment=success",
                    "description": description,
                    "payment_method_types": ["gcash", "paymaya", "card"],
                    "line_items": [
                        {
                            "currency": "PHP",
                            "amount": _to_centavos(amount),
                            "description": description,
                            "name": "Escrow deposit",
                            "quantity": 1,
                        }
                    ],
                    "metadata": {"job_id": job_ref, **(metadata or {})},
                }
            }
        }
        data = await self._request("POST", "/checkout_sessions", json=body)
        session = self._parse_session(data)
        logger.info("payment.session_created", session_ref=session.session_ref, job_id=job_ref)
        return session

    async def confirm_session(self, session_ref: str) -> HostedSession:
        data = await self._request("GET", f"/checkout_sessions/{session_ref}")
        return self._parse_session(data)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return verify_paymongo_signature(payload, signature, self._webhook_secret, self._live)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_session(data: dict[str, Any]) -> HostedSession:
        resource = data["data"]
        attributes = resource.get("attributes", {})
        paid = next(
            (
                p
                for p in attributes.get("payments") or []
                if p.get("attributes", {}).get("status") == "paid"
            ),
            None,
        )
        intent = attributes.get("payment_intent") or {}
        return HostedSession(
            session_ref=resource["id"],
            redirect_url=attributes.get("checkout_url"),
            status="paid" if paid else attributes.get("status", "active"),
            payment_ref=paid["id"] if paid else intent.get("id"),
            payment_method=(
                paid.get("attributes", {}).get("source", {}).get("type") if paid else None
            ),
        )

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            async with asyncio.timeout(self._timeout):
                async with httpx.AsyncClient(
                    base_url=self._base_url,
                    auth=(self._secret_key, ""),
                    timeout=httpx.Timeout(self._timeout),
                    headers={"Accept": "application/json"},
                    transport=self._transport,
                ) as client:
                    response = await client.request(method, path, json=json)
        except TimeoutError as exc:
            logger.warning("payment.gateway_timeout", path=path, timeout=self._timeout)
            raise PaymentGatewayError("Payment gateway timed out, please retry") from exc
        except httpx.HTTPError as exc:
            logger.warning("payment.gateway_unreachable", path=path, error=str(exc))
            raise PaymentGatewayError("Payment gateway is unreachable, please retry") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(
                "payment.gateway_error",
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise PaymentGatewayError(detail, retryable=response.status_code >= 500)
        return response.json()


def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        errors = []
    if errors and isinstance(errors[0], dict) and errors[0].get("detail"):
        return str(errors[0]["detail"])
    return f"Payment gateway error {response.status_code}"


def build_payment_gateway(settings: Settings) -> PaymentGateway | None:
    """The configured gateway, or None to fund escrow without one."""
    if not settings.payment_gateway_enabled:
        return None
    return PayMongoGateway(
        secret_key=settings.paymongo_secret_key,
        webhook_secret=settings.paymongo_webhook_secret,
        base_url=settings.paymongo_base_url,
        timeout_seconds=settings.payment_gateway_timeout_seconds,
        live=settings.is_production,
        public_url=settings.app_public_url,
    )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class GatewayEvent:
    event_type: str
    session_ref: str
    payment_ref: str | None
    payment_method: str | None


def parse_gateway_event(payload: bytes) -> GatewayEvent:
    """Extract what funding confirmation needs from a webhook body."""
    try:
        body = json.loads(payload)
        attributes = body["data"]["attributes"]
        event_type = attributes["type"]
        resource = attributes["data"]
        resource_attrs = resource.get("attributes") or {}
    except (ValueError, KeyError, TypeError) as exc:
        raise ValidationError("Invalid webhook payload") from exc

    if event_type == "payment_intent.succeeded":
        paid = next(
            (
                p
                for p in resource_attrs.get("payments") or []
                if p.get("attributes", {}).get("status") == "paid"
            ),
            None,
        )
        return GatewayEvent(
            event_type=event_type,
            session_ref=resource["id"],
            payment_ref=paid["id"] if paid else None,
            payment_method=(
                paid.get("attributes", {}).get("source", {}).get("type", "unknown")
                if paid
                else "unknown"
            ),
        )

    intent = resource_attrs.get("payment_intent") or {}
    return GatewayEvent(
        event_type=event_type,
        session_ref=resource.get("id", ""),
        payment_ref=intent.get("id"),
        payment_method="checkout",
    )


class PaymentWebhookHandler:
    """Verifies and applies gateway webhooks.

    Outcomes the gateway must see differently:
        - bad signature             -> UnauthorizedError (401), never retried;
        - unparseable body          -> ValidationError (400);
        - business-rule rejection   -> acknowledged (200) so it is not redelivered;
        - lost race or gateway blip -> WebhookProcessingError (500) so it is redelivered;
        - anything else failing     -> WebhookProcessingError (500) so it is redelivered.
    """

    def __init__(
        self,
        gateway: PaymentGateway | None,
        uow_factory: Callable[[], UnitOfWork],
        settings: Settings,
    ) -> None:
        self._gateway = gateway
        self._uow_factory = uow_factory
        self._settings = settings

    def _verify(self, payload: bytes, signature: str) -> None:
        if not self._settings.paymongo_webhook_secret:
            if self._settings.is_production:
                logger.error("webhook.secret_missing")
                raise WebhookProcessingError("Webhook not configured")
            logger.warning("webhook.unsigned_accepted", reason="no webhook secret configured")
            return

        if self._gateway is not None:
            valid = self._gateway.verify_webhook_signature(payload, signature)
        else:
            valid = verify_paymongo_signature(
                payload,
                signature,
                self._settings.paymongo_webhook_secret,
                self._settings.is_production,
            )
        if not valid:
            logger.warning("webhook.invalid_signature")
            raise UnauthorizedError("Invalid signature")

    async def handle(self, payload: bytes, signature: str) -> dict[str, Any]:
        from service_clearinghouse.services.escrow_service import EscrowService

        self._verify(payload, signature)
        event = parse_gateway_event(payload)

        if event.event_type not in PAID_EVENT_TYPES:
            logger.info("webhook.ignored", event_type=event.event_type)
            return {"received": True, "processed": False}

        try:
            async with self._uow_factory() as uow:
                escrow = EscrowService(uow, self._gateway, self._settings)
                funded = await escrow.confirm_escrow_funded(
                    event.session_ref,
                    payment_ref=event.payment_ref,
                    payment_method=event.payment_method,
                )
        except ClearinghouseError as exc:
            if is_transient(exc):
                logger.warning(
                    "webhook.retry_requested",
                    session_ref=event.session_ref,
                    code=exc.code,
                    error=exc.message,
                )
                raise WebhookProcessingError("Processing error, please retry") from exc
            logger.warning(
                "webhook.rejected",
                session_ref=event.session_ref,
                code=exc.code,
                error=exc.message,
            )
            return {"received": True, "processed": False, "detail": exc.message}
        except Exception as exc:
            logger.exception("webhook.processing_failed", session_ref=event.session_ref)
            raise WebhookProcessingError("Processing error") from exc

        logger.info("webhook.processed", session_ref=event.session_ref, funded=funded)
        return {"received": True, "processed": funded}


def is_transient(exc: ClearinghouseError) -> bool:
    """True when retrying the same request later may succeed."""
    if isinstance(exc, PaymentGatewayError):
        return exc.retryable
    return exc.code in TRANSIENT_ERROR_CODES
