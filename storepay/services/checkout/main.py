"""HTTP surface for card checkout, 3DS callbacks, refunds and price quotes.

Background workers (outbox publisher, session sweeper) run with the app
lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from urllib.parse import quote
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from storepay.common.config import settings
from storepay.common.db import SessionLocal
from storepay.common.errors import PaymentError
from storepay.common.events import KafkaBus
from storepay.common.logging import configure_logging, logger, trace_id_ctx
from storepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from storepay.common.money import format_amount
from storepay.common.outbox import publish_outbox_forever
from storepay.common.startup import log_startup_config
from storepay.common.tracing import instrument_app, setup_tracing
from storepay.services.checkout.domain import ClientInfo
from storepay.services.checkout.gateway import HttpPaymentGateway
from storepay.services.checkout.models import OutboxEvent
from storepay.services.checkout.refunds import RefundOrchestrator
from storepay.services.checkout.schemas import (
    PaymentSubmitRequest,
    QuoteRequest,
    RefundRequest,
    ResponseEnvelope,
)
from storepay.services.checkout.service import PaymentOrchestrator
from storepay.services.checkout.sessions import SessionStore, sweep_forever

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings)

pending_store = SessionStore("pending_checkout", settings.pending_session_ttl_seconds)
refund_store = SessionStore("refund_context", settings.refund_context_ttl_seconds)
gateway = HttpPaymentGateway()
payment_orchestrator = PaymentOrchestrator(SessionLocal, gateway, pending_store, refund_store)
refund_orchestrator = RefundOrchestrator(SessionLocal, gateway, refund_store)
kafka = KafkaBus()

ERROR_STATUS_CODES = {
    "validation_error": 400,
    "reconciliation_error": 404,
    "gateway_error": 502,
}


def get_payment_orchestrator() -> PaymentOrchestrator:
    return payment_orchestrator


def get_refund_orchestrator() -> RefundOrchestrator:
    return refund_orchestrator


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and session sweeper with app lifecycle."""

    publisher_task = asyncio.create_task(
        publish_outbox_forever(SessionLocal, OutboxEvent, kafka, settings.service_name)
    )
    sweeper_task = asyncio.create_task(
        sweep_forever([pending_store, refund_store], settings.session_sweep_interval_seconds)
    )
    yield
    publisher_task.cancel()
    sweeper_task.cancel()
    await kafka.close()
    gateway.close()


app = FastAPI(title="StorePay Checkout", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _client_info(request: Request, ip_override: str | None = None) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = ip_override or (forwarded.split(",")[0].strip() if forwarded else None)
    if ip_address is None and request.client is not None:
        ip_address = request.client.host
    return ClientInfo(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


def _failure_response(error: PaymentError) -> JSONResponse:
    envelope = ResponseEnvelope(message=error.message, success=False, data=error.to_dict())
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(error.code, 400), content=envelope.model_dump(mode="json"))


@app.post("/api/payments/card", response_model=ResponseEnvelope)
def submit_card_payment(
    req: PaymentSubmitRequest,
    request: Request,
    x_trace_id: str | None = Header(default=None),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Validate the basket and start 3DS; `data` carries the challenge HTML."""

    trace_id_ctx.set(x_trace_id or str(uuid4()))
    try:
        result = orchestrator.initiate(req, _client_info(request))
    except Exception as exc:
        logger.exception("payment_initiate_error error=%s", exc)
        raise HTTPException(status_code=500, detail="payment could not be started") from exc
    if not result.ok:
        return _failure_response(result.error)
    return ResponseEnvelope(message="3DS verification started.", success=True, data=result.value.html_content)


@app.post("/api/payments/3ds-callback")
async def three_ds_callback(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Gateway callback; always answers with a redirect to the storefront."""

    form = await request.form()
    payment_id = form.get("paymentId") or request.query_params.get("paymentId")
    conversation_id = form.get("conversationId") or request.query_params.get("conversationId")
    trace_id_ctx.set(request.headers.get("x-trace-id") or conversation_id or str(uuid4()))

    try:
        result = await run_in_threadpool(orchestrator.complete, payment_id, conversation_id, _client_info(request))
    except Exception as exc:
        logger.exception("payment_complete_error error=%s", exc)
        reason = "The payment could not be completed. Please contact support."
        return RedirectResponse(f"{settings.frontend_url}/payment/failure?reason={quote(reason)}", status_code=303)

    if not result.ok:
        return RedirectResponse(
            f"{settings.frontend_url}/payment/failure?reason={quote(result.error.message)}", status_code=303
        )
    return RedirectResponse(
        f"{settings.frontend_url}/payment/success?order={quote(result.value.order_number)}", status_code=303
    )


@app.post("/api/payments/refund", response_model=ResponseEnvelope)
def refund_payment(
    req: RefundRequest,
    request: Request,
    x_trace_id: str | None = Header(default=None),
    orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    """Refund a completed payment by payment id, order number or transaction id."""

    trace_id_ctx.set(x_trace_id or str(uuid4()))
    try:
        result = orchestrator.refund(req.identifier, req.refund_amount, req.reason, _client_info(request))
    except Exception as exc:
        logger.exception("refund_error error=%s", exc)
        raise HTTPException(status_code=500, detail="refund could not be processed") from exc
    if not result.ok:
        return _failure_response(result.error)
    receipt = result.value
    return ResponseEnvelope(
        message=f"Refund of {format_amount(receipt.refund_amount)} completed for order {receipt.order_number}.",
        success=True,
        data={
            "order_number": receipt.order_number,
            "payment_id": receipt.payment_id,
            "refund_amount": format_amount(receipt.refund_amount),
            "refund_transaction_id": receipt.refund_transaction_id,
            "status": receipt.status,
        },
    )


@app.post("/api/payments/quote", response_model=ResponseEnvelope)
def quote_prices(
    req: QuoteRequest,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Server-side price breakdown for the storefront, no gateway call."""

    result = orchestrator.quote(req)
    if not result.ok:
        return _failure_response(result.error)
    plan = result.value
    return ResponseEnvelope(
        message="Prices calculated.",
        success=True,
        data={
            "subtotal": format_amount(plan.subtotal),
            "discount_amount": format_amount(plan.discount_amount),
            "total": format_amount(plan.charge_amount),
            "coupon_code": plan.coupon_code,
            "items": [
                {
                    "product_id": item.product_id,
                    "server_price": format_amount(item.server_price),
                    "charge": format_amount(item.charge),
                }
                for item in plan.items
            ],
        },
    )


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
