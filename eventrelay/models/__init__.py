"""
Database models - import all models here so Alembic can discover them.
"""
from eventrelay.models.workspace_secret import WorkspaceSecret
from eventrelay.models.client_app import ClientApp
from eventrelay.models.raw_event import RawEvent
from eventrelay.models.webhook_endpoint import WebhookEndpoint
from eventrelay.models.webhook_delivery import WebhookDelivery, WebhookDeliveryAttempt

__all__ = [
    "WorkspaceSecret",
    "ClientApp",
    "RawEvent",
    "WebhookEndpoint",
    "WebhookDelivery",
    "WebhookDeliveryAttempt",
]
