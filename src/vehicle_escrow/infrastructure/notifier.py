"""Status change notifier.

Notification delivery (email, push, dashboards) lives outside this service.
This notifier publishes the change as a structured log event, which the
delivery pipeline tails.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from vehicle_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

logger = get_logger(__name__)


class LogStatusNotifier:
    """Satisfies the StatusNotifier protocol."""

    async def notify_status_changed(self, purchase_request_id: uuid.UUID, new_status: str) -> None:
        logger.info(
            "notification.status_changed",
            purchase_request_id=str(purchase_request_id),
            new_status=new_status,
        )
