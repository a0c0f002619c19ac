"""
Delivery Report Handler

Applies provider delivery reports to outbound messages. Reports can
arrive late, twice, or out of order; the status only ever moves forward
and terminal statuses stick.
"""

import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from basecore.metrics import delivery_reports_total

from messaging_sms.persistence.repo import MessagingRepository
from messaging_sms.providers.base import DeliveryReport, SMSProvider

logger = logging.getLogger(__name__)


class DeliveryReportHandler:
    """Records and applies delivery reports."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = MessagingRepository(db)

    async def handle_delivery_report(
        self,
        provider: SMSProvider,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Handle one validated delivery report callback.

        The raw body is kept in the report log whether or not the message
        is known.
        """
        report = provider.parse_delivery_report(payload)
        if not report.message_id:
            logger.warning(
                "Delivery report without a message id",
                extra={"service": provider.service_type},
            )
            delivery_reports_total.labels(result="invalid").inc()
            return {"status": "skipped", "reason": "missing_message_id"}

        self.repo.log_delivery_report(
            message_sid=report.message_id,
            service_type=provider.service_type,
            body=json.dumps(payload, default=str).replace("\x00", ""),
        )
        return await self.process_delivery_report(provider.service_type, report)

    async def process_delivery_report(
        self,
        service: str,
        report: DeliveryReport,
    ) -> dict[str, Any]:
        """
        Apply a parsed report to the message with the same provider id.

        Unknown ids are logged and discarded.
        """
        matched = await self.repo.apply_delivery_report(
            service=service,
            service_id=report.message_id,
            status=report.status,
            error_codes=report.error_codes,
            num_segments=report.num_segments,
            num_media=report.num_media,
            received_at=report.received_at,
        )
        await self.db.commit()

        if matched == 0:
            logger.warning(
                "Delivery report for unknown message",
                extra={
                    "service": service,
                    "service_id": report.message_id,
                    "provider_status": report.provider_status,
                },
            )
            delivery_reports_total.labels(result="unknown").inc()
            return {"status": "skipped", "reason": "unknown_message", "service_id": report.message_id}

        delivery_reports_total.labels(result="applied").inc()
        logger.info(
            "Applied delivery report",
            extra={
                "service": service,
                "service_id": report.message_id,
                "send_status": report.status.value,
                "provider_status": report.provider_status,
            },
        )
        return {
            "status": "applied",
            "service_id": report.message_id,
            "send_status": report.status.value,
        }
