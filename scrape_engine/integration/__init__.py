"""Outbound integrations."""

from scrape_engine.integration.webhook import WebhookNotifier

__all__ = ["WebhookNotifier"]
