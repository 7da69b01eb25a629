"""Payment gateway webhook endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..billing import WebhookReconciler
from ..schemas.billing import WebhookAck
from ..services.billing import get_connected_account_reconciler, get_webhook_reconciler

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _receive(request: Request, reconciler: WebhookReconciler) -> WebhookAck:
    # Signatures cover the exact bytes sent, so the body must not be parsed first.
    body = await request.body()
    receipt = await run_in_threadpool(reconciler.handle, body, request.headers.get(SIGNATURE_HEADER))
    logger.info(
        "Webhook %s processed: %s",
        receipt.event_type or "<malformed>",
        receipt.outcome.value,
        extra={"affected_ids": list(receipt.affected_ids)},
    )
    return WebhookAck()


@router.post("/stripe", response_model=WebhookAck)
async def receive_stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookAck:
    return await _receive(request, reconciler)


@router.post("/stripe/connected-accounts", response_model=WebhookAck)
async def receive_connected_account_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_connected_account_reconciler),
) -> WebhookAck:
    return await _receive(request, reconciler)
