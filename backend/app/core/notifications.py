"""
Fire-and-forget booking notifications.

Dispatch is bounded by a timeout and never raises: a failed notification is logged
and the booking operation that triggered it stands.
"""

import asyncio
from typing import Any, Dict, Optional

import requests
import structlog
from fastapi.concurrency import run_in_threadpool

from app.core.settings import Settings
from app.db.models import Booking

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    async def booking_confirmed(self, booking: Booking) -> None:
        payload = {
            "event": "booking.confirmed",
            "booking_id": str(booking.id),
            "booking_reference": booking.booking_reference,
            "user_id": str(booking.user_id),
            "tour_id": str(booking.tour_id),
            "start_date": booking.start_date.isoformat(),
        }
        await self._send(payload)

    async def _send(self, payload: Dict[str, Any]) -> None:
        timeout = self.settings.NOTIFICATION_TIMEOUT_SECONDS
        try:
            await asyncio.wait_for(self._dispatch(payload), timeout=timeout)
        except Exception as e:
            logger.warning(
                "notification_failed",
                notification_event=payload.get("event"),
                booking_id=payload.get("booking_id"),
                error=str(e) or type(e).__name__,
                error_type=type(e).__name__,
            )

    async def _dispatch(self, payload: Dict[str, Any]) -> None:
        url = self.settings.NOTIFICATION_WEBHOOK_URL
        if not url:
            logger.info(
                "notification_logged",
                notification_event=payload["event"],
                booking_reference=payload["booking_reference"],
            )
            return

        response = await run_in_threadpool(
            requests.post,
            url,
            json=payload,
            timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        logger.info(
            "notification_sent",
            notification_event=payload["event"],
            booking_reference=payload["booking_reference"],
            status_code=response.status_code,
        )
