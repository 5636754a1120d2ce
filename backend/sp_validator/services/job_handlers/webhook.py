import logging
from typing import Any, Dict

from sp_validator.services.job_manager import BaseJobHandler, JobExecutionContext
from sp_validator.services.webhook_sender import WebhookDeliveryEngine

logger = logging.getLogger(__name__)

WEBHOOK_JOB_TYPE = "webhook.send"
WEBHOOK_QUEUE = "webhook"


class WebhookJobHandler(BaseJobHandler):
    """Job handler that hands a stored payload to the delivery engine."""

    job_type = WEBHOOK_JOB_TYPE
    queue = WEBHOOK_QUEUE
    display_name = "Webhook Delivery"
    description = "Notify a receiver that a validation reached a terminal state."

    def __init__(self, engine: WebhookDeliveryEngine):
        self.engine = engine

    async def validate_payload(self, payload: Dict[str, Any]) -> None:
        if not payload.get("validation_id"):
            raise ValueError("validation_id is required")
        if not payload.get("webhook_url"):
            raise ValueError("webhook_url is required")
        if not isinstance(payload.get("payload"), dict):
            raise ValueError("payload must be an object")

    async def execute(self, context: JobExecutionContext) -> Dict[str, Any]:
        payload = context.payload
        delivery = await self.engine.deliver(
            validation_id=payload["validation_id"],
            webhook_url=payload["webhook_url"],
            payload=payload["payload"],
        )
        return {
            "delivery_id": delivery.id,
            "status": delivery.status,
            "attempts": delivery.attempts,
            "response_status": delivery.response_status,
        }

    async def on_exhausted(self, context: JobExecutionContext, error_message: str) -> None:
        logger.error(
            "Giving up on webhook for validation %s: %s",
            context.payload.get("validation_id"),
            error_message,
        )
