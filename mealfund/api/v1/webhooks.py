"""
Payment gateway callback endpoint.

The signature covers the raw body, so the body is read as bytes and
verified before it is parsed.
"""

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from mealfund.api import deps
from mealfund.config.settings import settings
from mealfund.schemas.webhook import WebhookAck
from mealfund.services.payment.webhook_handler import PaymentWebhookHandler

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/payment-gateway", response_model=WebhookAck)
async def payment_gateway_callback(
    request: Request,
    handler: PaymentWebhookHandler = Depends(deps.get_webhook_handler),
) -> WebhookAck:
    body = await request.body()
    signature = request.headers.get(settings.PAYMENT_WEBHOOK_SIGNATURE_HEADER)
    outcome = await run_in_threadpool(handler.handle, body, signature)
    return WebhookAck(received=True, event=outcome.event, applied=outcome.applied)
