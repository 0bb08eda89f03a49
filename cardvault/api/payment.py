"""Payment gateway notification endpoint.

Provides:
- GET /api/payment/notify - asynchronous payment notification (query parameters)
- POST /api/payment/notify - the same, with form fields

Authenticated by the notification's own signature, not by API key. The
body is always the plain-text token ``success`` or ``fail``.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from cardvault.api.dependencies import get_webhook_verifier
from cardvault.application.webhook_service import NotifyParams, WebhookVerifier

router = APIRouter(prefix="/api/payment", tags=["Payment"])

WebhookVerifierDep = Annotated[WebhookVerifier, Depends(get_webhook_verifier)]


async def _respond(
    request: Request, params: NotifyParams, verifier: WebhookVerifier
) -> PlainTextResponse:
    request_id = getattr(request.state, "request_id", None)
    result = await verifier.handle(params, correlation_id=request_id)
    return PlainTextResponse(result.body, status_code=result.status_code)


@router.get(
    "/notify",
    response_class=PlainTextResponse,
    summary="Payment notification",
)
async def notify(request: Request, verifier: WebhookVerifierDep) -> PlainTextResponse:
    params = NotifyParams.from_mapping(request.query_params)
    return await _respond(request, params, verifier)


@router.post(
    "/notify",
    response_class=PlainTextResponse,
    summary="Payment notification (form post)",
)
async def notify_form(request: Request, verifier: WebhookVerifierDep) -> PlainTextResponse:
    form = await request.form()
    params = NotifyParams.from_mapping({**request.query_params, **form})
    return await _respond(request, params, verifier)
