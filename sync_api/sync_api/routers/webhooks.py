"""Control-plane endpoint receiving signed lifecycle webhooks from the data plane.

Authentication is the HMAC signature over the raw body, so this router
does not use the admin key.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Header, Request

from sync_api.dependencies import WebhookReceiverDep
from sync_core.signing import EVENT_HEADER, SIGNATURE_HEADER

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/tenant", summary="Receive a tenant lifecycle webhook")
async def receive_tenant_webhook(
    request: Request,
    receiver: WebhookReceiverDep,
    signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
    event: Annotated[str | None, Header(alias=EVENT_HEADER)] = None,
) -> dict[str, Any]:
    """Verify, parse and apply one webhook.

    Signature and envelope failures return 400/401 and the sender
    retries them.  Anything that verifies and parses gets a 200 ack:
    ``ignored`` for unknown event types, and ``rejected`` with the error
    kind for an unknown tenant or a transition its status forbids.
    """
    body = await request.body()
    ack = await receiver.handle(body, signature, event)
    return ack.to_dict()
