"""
SMS Webhook Service

FastAPI app that receives inbound message and delivery report callbacks
from SMS providers.

Responsibilities:
- Pick the provider from the URL (/webhooks/{service_type}/...)
- Resolve the messaging service the callback belongs to
- Validate the provider signature before touching anything
- Hand valid callbacks to the inbound or delivery report pipeline
- Return 200 once validated, even if the pipeline fails (providers retry otherwise)
"""

import logging
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from basecore.db import get_db
from basecore.logging import setup_logging
from basecore.metrics import get_metrics, get_metrics_content_type, webhook_requests_total
from basecore.redis import get_redis_client
from basecore.settings import Settings, get_settings

from messaging_sms.errors import ConfigurationError, NotFoundError
from messaging_sms.providers.base import SMSProvider, WebhookRequest
from messaging_sms.providers.registry import PROVIDER_TYPES, build_provider, build_unbound_provider
from messaging_sms.routing.cache import RedisServiceCache, ServiceCache
from messaging_sms.routing.service_registry import MessagingServiceRegistry
from messaging_sms.service.delivery_report_handler import DeliveryReportHandler
from messaging_sms.service.inbound_handler import IngestInbound, select_ingest
from messaging_sms.streams.groups import ensure_sms_streams
from messaging_sms.streams.producer import InboundPartProducer

setup_logging()
logger = logging.getLogger(__name__)

MESSAGE_WEBHOOK = "message"
REPORT_WEBHOOK = "report"

app = FastAPI(
    title="SMS Webhook",
    description="Receives SMS provider callbacks (inbound messages and delivery reports)",
    version="1.0.0",
)


class WebhookRejected(Exception):
    """A callback that fails boundary checks; nothing is written."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


# =============================================================================
# Dependencies
# =============================================================================


def get_service_cache(settings: Settings = Depends(get_settings)) -> ServiceCache | None:
    return RedisServiceCache(get_redis_client(), ttl_seconds=settings.SERVICE_CACHE_TTL_SECONDS)


def get_producer(settings: Settings = Depends(get_settings)) -> InboundPartProducer | None:
    if settings.JOBS_SAME_PROCESS:
        return None
    return InboundPartProducer(get_redis_client())


def get_ingest_class(settings: Settings = Depends(get_settings)) -> type[IngestInbound]:
    return select_ingest(settings)


@app.on_event("startup")
async def startup():
    """Ensure Redis streams exist when conversion is deferred to the worker."""
    settings = get_settings()
    if settings.JOBS_SAME_PROCESS:
        logger.info("SMS webhook service started (same-process ingest)")
        return
    try:
        await ensure_sms_streams(get_redis_client())
        logger.info("SMS webhook service started (deferred ingest)")
    except Exception as e:
        logger.error(f"Failed to initialize streams: {e}")
        raise


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "sms-webhook"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Boundary checks
# =============================================================================


def _public_url(request: Request, settings: Settings) -> str:
    """The URL the provider signed (the public one, not the one behind the proxy)."""
    url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def _resolve_provider(
    provider_cls: type[SMSProvider],
    payload: dict[str, Any],
    registry: MessagingServiceRegistry,
    settings: Settings,
) -> SMSProvider:
    rejection = WebhookRejected(403, f"{provider_cls.display_name} Request Validation Failed.")

    if not provider_cls.requires_signature():
        return build_unbound_provider(provider_cls.service_type, settings)

    messaging_service_sid = provider_cls.service_key(payload)
    if not messaging_service_sid:
        logger.warning(
            "Callback does not name a messaging service",
            extra={"service_type": provider_cls.service_type},
        )
        raise rejection

    try:
        service = await registry.get_messaging_service_by_id(messaging_service_sid)
    except NotFoundError:
        logger.warning(
            "Callback for unknown messaging service",
            extra={"service_type": provider_cls.service_type, "messaging_service_sid": messaging_service_sid},
        )
        raise rejection

    if service.service_type != provider_cls.service_type:
        logger.warning(
            "Callback provider does not match messaging service",
            extra={"service_type": provider_cls.service_type, "messaging_service_sid": messaging_service_sid},
        )
        raise rejection

    try:
        return build_provider(service, settings=settings)
    except ConfigurationError as e:
        logger.error(f"Cannot validate callback: {e}", extra={"messaging_service_sid": messaging_service_sid})
        raise rejection


async def _accept_callback(
    request: Request,
    service_type: str,
    kind: str,
    registry: MessagingServiceRegistry,
    settings: Settings,
) -> tuple[SMSProvider, dict[str, Any]]:
    """
    Run every boundary check for a callback.

    Returns:
        (provider bound to the callback's service, decoded payload)

    Raises:
        WebhookRejected: unknown provider (404), missing signature (400),
            unusable payload (400), unknown service or bad signature (403)
    """
    provider_cls = PROVIDER_TYPES.get(service_type)
    if provider_cls is None:
        raise WebhookRejected(404, f"Unknown messaging service type: {service_type}")

    body = await request.body()
    try:
        payload = provider_cls.decode_payload(body, request.headers.get("content-type"))
    except ValueError:
        logger.warning("Undecodable webhook payload", extra={"service_type": service_type, "kind": kind})
        raise WebhookRejected(400, "Invalid payload")

    headers = {key.lower(): value for key, value in request.headers.items()}
    signature = provider_cls.extract_signature(headers, payload)
    if provider_cls.requires_signature() and not signature:
        raise WebhookRejected(
            400,
            f"No signature header error - {provider_cls.signature_location()} does not exist, "
            f"maybe this request is not coming from {provider_cls.display_name}.",
        )

    provider = await _resolve_provider(provider_cls, payload, registry, settings)

    webhook_request = WebhookRequest(
        url=_public_url(request, settings),
        headers=headers,
        body=body,
        payload=payload,
        signature=signature,
    )
    if kind == MESSAGE_WEBHOOK:
        is_valid = provider.validate_inbound_webhook(webhook_request)
    else:
        is_valid = provider.validate_delivery_report_webhook(webhook_request)

    if not is_valid:
        await provider.close()
        raise WebhookRejected(403, f"{provider_cls.display_name} Request Validation Failed.")

    return provider, payload


async def _handle_webhook(
    request: Request,
    service_type: str,
    kind: str,
    db: AsyncSession,
    cache: ServiceCache | None,
    producer: InboundPartProducer | None,
    ingest_cls: type[IngestInbound],
    settings: Settings,
):
    registry = MessagingServiceRegistry(db, cache=cache)
    try:
        provider, payload = await _accept_callback(request, service_type, kind, registry, settings)
    except WebhookRejected as e:
        webhook_requests_total.labels(service_type=service_type, kind=kind, result="rejected").inc()
        logger.warning(
            f"Rejected {kind} webhook: {e.detail}",
            extra={"service_type": service_type, "status_code": e.status_code},
        )
        return PlainTextResponse(e.detail, status_code=e.status_code)

    try:
        if kind == MESSAGE_WEBHOOK:
            result = await ingest_cls(db, producer).handle_incoming_message(provider, payload)
        else:
            result = await DeliveryReportHandler(db).handle_delivery_report(provider, payload)
        webhook_requests_total.labels(service_type=service_type, kind=kind, result="accepted").inc()
        return result

    except Exception as e:
        logger.error(f"Error processing {kind} webhook: {e}", exc_info=True)
        await db.rollback()
        webhook_requests_total.labels(service_type=service_type, kind=kind, result="error").inc()
        # Still return 200 so the provider does not retry forever
        return {"status": "error", "message": str(e)}

    finally:
        await provider.close()


# =============================================================================
# Routes
# =============================================================================


@app.post("/webhooks/{service_type}/message")
async def receive_message(
    service_type: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: ServiceCache | None = Depends(get_service_cache),
    producer: InboundPartProducer | None = Depends(get_producer),
    ingest_cls: type[IngestInbound] = Depends(get_ingest_class),
    settings: Settings = Depends(get_settings),
):
    """
    Receive an inbound message callback.

    Flow:
    1. Validate provider, signature and messaging service
    2. Convert now (same-process) or store the part and publish it (deferred)
    3. Return 200
    """
    return await _handle_webhook(
        request, service_type, MESSAGE_WEBHOOK, db, cache, producer, ingest_cls, settings
    )


@app.post("/webhooks/{service_type}/report")
async def receive_delivery_report(
    service_type: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: ServiceCache | None = Depends(get_service_cache),
    settings: Settings = Depends(get_settings),
):
    """
    Receive a delivery report callback.

    Flow:
    1. Validate provider, signature and messaging service
    2. Log the raw report and apply it to the message
    3. Return 200
    """
    return await _handle_webhook(
        request, service_type, REPORT_WEBHOOK, db, cache, None, select_ingest(settings), settings
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8091)
