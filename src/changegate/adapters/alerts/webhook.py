"""Alert sink that posts partial-rollback alerts to an operator webhook."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from changegate.core.exceptions import AlertDeliveryError

logger = structlog.get_logger()


@dataclass(frozen=True)
class WebhookConfig:
    """Operator webhook settings.

    Attributes:
        url: Endpoint receiving alerts.
        secret: Shared HMAC key. Alerts go unsigned when None.
        timeout_seconds: Limit for one delivery.
    """

    url: str
    secret: str | None = None
    timeout_seconds: float = 10.0


class WebhookAlertSink:
    """Posts each alert as one signed JSON document.

    The body is {"severity", "title", "raised_at", "detail"}. With a
    secret, X-ChangeGate-Signature carries the HMAC-SHA256 of
    "<raised_at>.<body>", and X-ChangeGate-Timestamp carries raised_at.
    """

    def __init__(self, config: WebhookConfig) -> None:
        self.config = config

    async def alert(self, title: str, detail: dict[str, Any]) -> None:
        """Deliver a critical alert.

        Raises:
            AlertDeliveryError: On a non-2xx answer, a timeout or a
                connection error.
        """
        raised_at = datetime.now(UTC).isoformat()
        body = json.dumps(
            {"severity": "critical", "title": title, "raised_at": raised_at, "detail": detail},
            default=str,
            sort_keys=True,
        )
        headers = {"Content-Type": "application/json", "User-Agent": "changegate-alerts/1.0"}
        if self.config.secret:
            digest = hmac.new(
                self.config.secret.encode(), f"{raised_at}.{body}".encode(), hashlib.sha256
            ).hexdigest()
            headers["X-ChangeGate-Signature"] = f"sha256={digest}"
            headers["X-ChangeGate-Timestamp"] = raised_at

        log = logger.bind(url=self.config.url, title=title)
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(self.config.url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            log.warning("alert_webhook_timeout")
            raise AlertDeliveryError(self.config.url, "timed out") from e
        except httpx.RequestError as e:
            log.error("alert_webhook_error", error=str(e))
            raise AlertDeliveryError(self.config.url, str(e)) from e

        if not response.is_success:
            log.error("alert_webhook_rejected", status_code=response.status_code)
            raise AlertDeliveryError(
                self.config.url,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        log.info("alert_webhook_sent", status_code=response.status_code)
