"""Webhook module - delivery of finished transcripts."""

from secretary.services.webhook.client import WebhookClient

__all__ = ["WebhookClient"]
