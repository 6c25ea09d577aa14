from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from ..deps import get_pipeline
from ..errors import SettlementError
from ..logs import json_log
from ..pipeline import Pipeline
from ..webhooks import WebhookRequest

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/upi")
async def verify_upi_webhook(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """
    PSP payment notification.

    The raw body is verified against `X-Signature` before it is parsed. On success the
    session's payment fields are updated; receipt generation follows asynchronously when
    the worker delivers the resulting session event.
    """
    body = await request.body()
    try:
        verifier = pipeline.webhook_verifier()
    except ValueError as ex:
        json_log("error", "webhook.not_configured", error=str(ex))
        raise HTTPException(status_code=503, detail="webhook verification not configured") from ex

    try:
        payment = await run_in_threadpool(
            verifier.verify,
            WebhookRequest(headers=dict(request.headers), body=body),
        )
    except SettlementError as ex:
        json_log(
            "warning",
            "webhook.rejected",
            request_id=getattr(request.state, "request_id", None),
            reason=ex.reason,
            status_code=ex.status_code,
        )
        raise

    return {
        "success": True,
        "session_id": payment.session_id,
        "transaction_id": payment.transaction_id,
        "status": payment.status,
    }
