"""Webhook Routes - Stripe subscription webhooks.

POST /api/webhooks/stripe - Main Stripe webhook endpoint
POST /api/webhook/stripe - Alias for Stripe webhook (for backward compatibility)

The raw body is passed through untouched: the signature is computed over the
exact bytes Stripe sent. The status code comes from the webhook service, so a
500 makes Stripe redeliver and a 4xx does not.
"""
from fastapi import APIRouter, Request, Header, Depends
from fastapi.responses import JSONResponse
from middleware import get_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str, service) -> JSONResponse:
    payload = await request.body()
    result = await service.process_webhook(payload=payload, signature=stripe_signature)
    if result.status_code >= 500:
        logger.error("Stripe webhook failed status=%s body=%s", result.status_code, result.body)
    return JSONResponse(status_code=result.status_code, content=result.body)


# Primary webhook endpoint
@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service=Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhooks/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature, service)


# Alias endpoint (Stripe may be configured with this URL)
@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service=Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhook/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature, service)
