"""Operator alert adapters."""

from .log_sink import LoggingAlertSink
from .webhook import WebhookAlertSink, WebhookConfig

__all__ = ["LoggingAlertSink", "WebhookAlertSink", "WebhookConfig"]
