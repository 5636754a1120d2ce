"""
Webhook Delivery Engine

Delivers one immutable payload to a receiver with bounded, backed-off
attempts and keeps a single audit row per delivery up to date. Each attempt
POSTs the JSON body; receivers that only accept GET answer with a recognisable
404, in which case the same attempt retries once as a GET carrying the payload
flattened into query parameters.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import sessionmaker

from sp_validator.core.redaction import redact_string
from sp_validator.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from sp_validator.services.backoff import backoff_delay
from sp_validator.services.probes.executor import PERMISSION_KEYS

logger = logging.getLogger(__name__)

DELIVERY_ID_HEADER = "X-Webhook-Delivery-ID"
VALIDATION_ID_HEADER = "X-Validation-ID"
USER_AGENT = "sp-validator-webhook/1.0"

WRONG_TRANSPORT_STATUS = 404
WRONG_TRANSPORT_MARKER = "not registered for POST requests"

SleepFunc = Callable[[float], Awaitable[None]]


class WebhookDeliveryError(Exception):
    """All delivery attempts for a webhook failed."""

    def __init__(self, message: str, *, delivery_id: str, attempts: int, response_status: Optional[int] = None):
        super().__init__(message)
        self.delivery_id = delivery_id
        self.attempts = attempts
        self.response_status = response_status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_webhook_payload(
    *,
    validation_id: str,
    status: str,
    credentials: Dict[str, Any],
    subscription_id: str,
    report: Dict[str, Any],
    test_config: Dict[str, Any],
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Snapshot sent to the receiver; includes the tested secret on purpose."""
    timestamp = timestamp or _utcnow()
    return {
        "validation_id": validation_id,
        "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
        "status": status,
        "credentials": {
            "tenant_id": credentials.get("tenant_id"),
            "client_id": credentials.get("client_id"),
            "client_secret": credentials.get("client_secret"),
            "display_name": credentials.get("display_name") or "",
            "subscription_id": subscription_id,
            "valid": bool(report.get("is_valid")),
        },
        "permissions": dict(report.get("permissions") or {}),
        "errors": list(report.get("errors") or []),
        "storage_account_created": report.get("storage_account_name"),
        "website_url": report.get("website_url"),
        "test_config": dict(test_config or {}),
    }


def _flag(value: Any) -> str:
    return "true" if value else "false"


def build_fallback_params(payload: Dict[str, Any]) -> Dict[str, str]:
    """Flatten a webhook payload into query parameters for the GET fallback."""
    credentials = payload.get("credentials") or {}
    permissions = payload.get("permissions") or {}
    test_config = payload.get("test_config") or {}
    test_files = test_config.get("test_files")
    errors = payload.get("errors")

    params: Dict[str, str] = {
        "validation_id": str(payload.get("validation_id") or ""),
        "timestamp": str(payload.get("timestamp") or ""),
        "status": str(payload.get("status") or ""),
        "tenant_id": credentials.get("tenant_id") or "",
        "client_id": credentials.get("client_id") or "",
        "client_secret": credentials.get("client_secret") or "",
        "display_name": credentials.get("display_name") or "",
        "subscription_id": credentials.get("subscription_id") or "",
        "credentials_valid": _flag(credentials.get("valid")),
    }
    for key in PERMISSION_KEYS:
        params[key] = _flag(permissions.get(key))
    params.update(
        {
            "storage_account_created": payload.get("storage_account_created") or "",
            "website_url": payload.get("website_url") or "",
            "resource_group": test_config.get("resource_group") or "",
            "location": test_config.get("location") or "",
            "test_files": json.dumps(test_files) if test_files else "",
            "errors": json.dumps(errors) if errors else "",
        }
    )
    return params


def is_wrong_transport(response: httpx.Response) -> bool:
    """True when the receiver rejected POST because it only accepts GET."""
    if response.status_code != WRONG_TRANSPORT_STATUS:
        return False
    try:
        body = response.json()
    except ValueError:
        return WRONG_TRANSPORT_MARKER in response.text
    message = body.get("message") if isinstance(body, dict) else None
    return isinstance(message, str) and WRONG_TRANSPORT_MARKER in message


def truncate_body(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


class DeliveryAuditStore:
    """Owns the webhook_deliveries rows; one short session per write."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def create(
        self,
        *,
        validation_id: str,
        webhook_url: str,
        payload: Dict[str, Any],
        max_attempts: int,
    ) -> WebhookDelivery:
        async with self._session_factory() as session:
            delivery = WebhookDelivery(
                validation_id=validation_id,
                webhook_url=webhook_url,
                payload=payload,
                status=DeliveryStatus.PENDING.value,
                attempts=0,
                max_attempts=max_attempts,
            )
            session.add(delivery)
            await session.commit()
            await session.refresh(delivery)
            session.expunge(delivery)
            return delivery

    async def record_attempt(
        self,
        delivery_id: str,
        *,
        attempt: int,
        status: DeliveryStatus,
        response_status: Optional[int],
        response_body: Optional[str],
    ) -> WebhookDelivery:
        now = _utcnow()
        async with self._session_factory() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise LookupError(f"Webhook delivery {delivery_id} not found")
            delivery.status = status.value
            delivery.attempts = attempt
            delivery.last_attempt_at = now
            delivery.response_status = response_status
            delivery.response_body = response_body
            delivery.updated_at = now
            await session.commit()
            await session.refresh(delivery)
            session.expunge(delivery)
            return delivery

    async def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        async with self._session_factory() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery:
                session.expunge(delivery)
            return delivery


class WebhookDeliveryEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        response_body_limit: int = 1000,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.audit = DeliveryAuditStore(session_factory)
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.response_body_limit = response_body_limit
        self._http_client = http_client
        self._sleep = sleep or asyncio.sleep

    async def deliver(self, *, validation_id: str, webhook_url: str, payload: Dict[str, Any]) -> WebhookDelivery:
        """
        Deliver ``payload`` to ``webhook_url``.

        Returns the delivered audit row, or raises WebhookDeliveryError once
        every attempt has failed so the job queue can decide on a rerun.
        """
        delivery = await self.audit.create(
            validation_id=validation_id,
            webhook_url=webhook_url,
            payload=payload,
            max_attempts=self.max_retries,
        )
        if self._http_client is not None:
            return await self._deliver_with(self._http_client, delivery, payload)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._deliver_with(client, delivery, payload)

    async def _deliver_with(
        self,
        client: httpx.AsyncClient,
        delivery: WebhookDelivery,
        payload: Dict[str, Any],
    ) -> WebhookDelivery:
        headers = {
            DELIVERY_ID_HEADER: delivery.id,
            VALIDATION_ID_HEADER: delivery.validation_id,
            "User-Agent": USER_AGENT,
        }
        last_error = "no attempts made"
        last_status: Optional[int] = None

        for attempt in range(1, self.max_retries + 1):
            logger.info(
                "Sending webhook %s attempt %d/%d to %s",
                delivery.id,
                attempt,
                self.max_retries,
                redact_string(delivery.webhook_url),
            )
            try:
                response = await self._send_once(client, delivery, payload, headers)
            except httpx.HTTPError as exc:
                last_error = redact_string(str(exc) or exc.__class__.__name__)
                last_status = None
                body = truncate_body(last_error, self.response_body_limit)
                logger.warning("Webhook %s attempt %d failed: %s", delivery.id, attempt, last_error)
            else:
                last_status = response.status_code
                body = truncate_body(response.text, self.response_body_limit)
                if response.is_success:
                    delivered = await self.audit.record_attempt(
                        delivery.id,
                        attempt=attempt,
                        status=DeliveryStatus.DELIVERED,
                        response_status=last_status,
                        response_body=body,
                    )
                    logger.info("Webhook %s delivered on attempt %d (status %s)", delivery.id, attempt, last_status)
                    return delivered
                last_error = f"Webhook returned status {last_status}"
                logger.warning("Webhook %s attempt %d returned non-success status %s", delivery.id, attempt, last_status)

            remaining = attempt < self.max_retries
            await self.audit.record_attempt(
                delivery.id,
                attempt=attempt,
                status=DeliveryStatus.RETRYING if remaining else DeliveryStatus.FAILED,
                response_status=last_status,
                response_body=body,
            )
            if remaining:
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logger.info("Waiting %.1fs before retrying webhook %s", delay, delivery.id)
                await self._sleep(delay)

        logger.error("Webhook %s failed after %d attempts: %s", delivery.id, self.max_retries, last_error)
        raise WebhookDeliveryError(
            f"Webhook delivery failed after {self.max_retries} attempts: {last_error}",
            delivery_id=delivery.id,
            attempts=self.max_retries,
            response_status=last_status,
        )

    async def _send_once(
        self,
        client: httpx.AsyncClient,
        delivery: WebhookDelivery,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> httpx.Response:
        """One delivery attempt: POST, then at most one GET fallback."""
        response = await client.post(
            delivery.webhook_url,
            json=payload,
            headers=headers,
            timeout=self.timeout_seconds,
        )
        if is_wrong_transport(response):
            logger.info("Receiver rejected POST for webhook %s; retrying attempt as GET", delivery.id)
            response = await client.get(
                delivery.webhook_url,
                params=build_fallback_params(payload),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        return response
