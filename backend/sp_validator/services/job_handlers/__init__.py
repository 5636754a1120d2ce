from .validation import ValidationJobHandler
from .webhook import WebhookJobHandler

__all__ = ["ValidationJobHandler", "WebhookJobHandler"]
