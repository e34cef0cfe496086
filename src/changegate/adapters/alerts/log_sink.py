"""Alert sink that only logs."""

from __future__ import annotations

from typing import Any

import structlog

logger = structlog.get_logger()


class LoggingAlertSink:
    """Writes alerts to the log at critical level.

    Keeps every alert in memory as well, which tests and the health
    endpoint use to see unresolved escalations.
    """

    def __init__(self) -> None:
        """Initialize with no alerts."""
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, title: str, detail: dict[str, Any]) -> None:
        """Log a critical alert."""
        self.alerts.append((title, detail))
        logger.critical("operator_alert", title=title, **detail)
