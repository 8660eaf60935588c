from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_db, get_principal, require_admin
from .config import Settings
from .errors import Forbidden, NotFound, install_error_handlers
from .gateway import (
    EVENT_ID_HEADER, SIGNATURE_HEADER, MockGateway, PaymentGateway,
    RazorpayGateway,
)
from .helpers import minor_to_major
from .infra import timings
from .infra.sql import make_async_engine
from .logs import setup_logging
from .model.accounts import Principal
from .model.db import Base
from .model.intents import PaymentIntentStore, intent_to_dict
from .model.ledger import IdentityLedger
from .model.registrations import RegistrationStore, registration_to_dict
from .orchestrator import RegistrationOrchestrator
from .pricing import FeePolicy
from .reconcile import handle_webhook, verify_client_payment
from .schemas import (
    CheckoutAck, EntryFeeOrder, MockEmit, PaymentVerify, RegistrationCreate,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def ok(status_code: int = 200, **payload) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code,
                          content={"success": True, **payload})


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def orchestrator(request: Request, db: AsyncSession) -> RegistrationOrchestrator:
    st = request.app.state
    return RegistrationOrchestrator(db, st.gated, st.gateway, st.fee_policy)


def build_gateway(settings: Settings,
                  http: httpx.AsyncClient) -> PaymentGateway:
    kw = dict(
        key_id=settings.gateway_key_id,
        key_secret=settings.gateway_key_secret,
        webhook_secret=settings.gateway_webhook_secret,
    )
    if settings.gateway == "razorpay":
        return RazorpayGateway(
            http=http,
            base_url=settings.gateway_base_url,
            timeout=settings.gateway_timeout,
            **kw,
        )
    return MockGateway(**kw)


# ----------------------------
# API: Registrations
# ----------------------------
@router.post("/api/v1/registrations")
async def create_registration(
    body: RegistrationCreate,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    team = body.team
    result = await orchestrator(request, db).create_registration(
        principal,
        event_ref=body.event_id,
        kind=body.type,
        team_members=team.members if team else (),
        team_name=team.name if team else None,
        notes=body.notes,
        event_name=body.event_name,
    )
    return ok(
        201 if result.created else 200,
        registration=registration_to_dict(result.registration),
        payment=result.payment.to_dict(),
    )


@router.get("/api/v1/registrations/my")
async def list_my_registrations(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    async with request.app.state.gated():
        async with db.begin():
            regs = await RegistrationStore(db).list_for_owner(
                principal.account_id
            )
    return ok(items=[registration_to_dict(r) for r in regs])


@router.get("/api/v1/registrations/{registration_id}")
async def get_registration(
    registration_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    store = RegistrationStore(db)
    async with request.app.state.gated():
        async with db.begin():
            reg = await store.get(registration_id)
            if reg is None:
                raise NotFound("Registration not found")
            if reg.owner_account_id != principal.account_id \
                    and not principal.is_admin:
                raise Forbidden("Forbidden")
            history = await store.history(reg.id)
    return ok(registration=registration_to_dict(reg, history))


# client-side checkout acknowledgement: audit only, never marks paid
@router.post("/api/v1/registrations/{registration_id}/checkout-ack")
async def checkout_ack(
    registration_id: str,
    body: CheckoutAck,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    store = RegistrationStore(db)
    async with request.app.state.gated():
        async with db.begin():
            reg = await store.get(registration_id)
            if reg is None:
                raise NotFound("Registration not found")
            if reg.owner_account_id != principal.account_id:
                raise Forbidden("Forbidden")
            store.append_history(reg.id, "checkout_ack", {
                "orderId": body.order_id,
                "paymentId": body.payment_id,
                "signature": body.signature,
                "notes": body.notes,
            })
        async with db.begin():
            history = await store.history(reg.id)
    return ok(registration=registration_to_dict(reg, history))


# ----------------------------
# Payments: webhook + client verification
# ----------------------------
@router.post("/api/v1/payments/webhook")
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    # signature covers the exact raw bytes
    payload = await request.body()
    headers = dict(request.headers)
    result = await handle_webhook(
        db, request.app.state.gated, gateway, payload, headers
    )
    return ok(**result)


@router.post("/api/v1/payments/verify")
async def payments_verify(
    body: PaymentVerify,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    outcome = await verify_client_payment(
        db, request.app.state.gated, gateway,
        gateway_order_id=body.gateway_order_id,
        gateway_payment_id=body.gateway_payment_id,
        signature=body.signature,
    )
    async with request.app.state.gated():
        async with db.begin():
            covered = await IdentityLedger(db).status(
                outcome.intent.covered_emails
            )
            reg = None
            if outcome.intent.registration_id:
                reg = await RegistrationStore(db).get(
                    outcome.intent.registration_id
                )
    payload = {
        "alreadyVerified": outcome.result == "already_paid",
        "payment": intent_to_dict(outcome.intent),
        "covered": covered,
    }
    if reg is not None:
        payload["registration"] = registration_to_dict(reg)
    return ok(**payload)


# ----------------------------
# Entry fee (pay ahead, no registration)
# ----------------------------
@router.get("/api/v1/entry-fee/status")
async def entry_fee_status(
    request: Request,
    emails: str = "",
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    extra = [e for e in (x.strip() for x in emails.split(",")) if e]
    async with request.app.state.gated():
        async with db.begin():
            entries = await IdentityLedger(db).status(
                [principal.email, *extra]
            )
    return ok(entries=entries)


@router.post("/api/v1/entry-fee/order")
async def entry_fee_order(
    body: EntryFeeOrder,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    requirement = await orchestrator(request, db).create_entry_fee_order(
        principal, body.emails
    )
    if not requirement.needs_payment:
        return ok(message="Everyone already paid",
                  payment=requirement.to_dict())
    return ok(201, payment=requirement.to_dict())


# ----------------------------
# Admin JSON feeds
# ----------------------------
@router.get("/api/admin/intents")
async def api_admin_intents(
    request: Request,
    limit: int = Query(default=200),
    _: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    async with request.app.state.gated():
        async with db.begin():
            items = await PaymentIntentStore(db).list_recent(limit)
    return ok(items=[intent_to_dict(p) for p in items],
              limit=max(1, min(limit, 500)))


@router.get("/api/admin/timings")
async def api_admin_timings(_: Principal = Depends(require_admin)):
    return ok(items=timings.aggregates())


# ----------------------------
# MockPay (dev gateway only)
# ----------------------------
def _mock_gateway(request: Request) -> MockGateway:
    gateway = request.app.state.gateway
    if not isinstance(gateway, MockGateway):
        raise NotFound("Not found")
    return gateway


@router.get("/mockpay/{order_id}")
async def mockpay_screen(
    order_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    _mock_gateway(request)
    async with request.app.state.gated():
        async with db.begin():
            intent = await PaymentIntentStore(db).find_by_gateway_order_id(
                order_id
            )
    if intent is None:
        raise NotFound("payment order not found")
    return ok(
        orderId=order_id,
        amount=minor_to_major(intent.amount),
        currency=intent.currency,
        status=intent.status,
        coveredEmails=list(intent.covered_emails or []),
        webhookUrl=request.app.state.settings.mock_webhook_url,
    )


@router.post("/mockpay/{order_id}/emit")
async def mockpay_emit(
    order_id: str,
    body: MockEmit,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    gateway = _mock_gateway(request)
    async with request.app.state.gated():
        async with db.begin():
            intent = await PaymentIntentStore(db).find_by_gateway_order_id(
                order_id
            )
    if intent is None:
        raise NotFound("payment order not found")

    payload, sig, payment_id = gateway.build_event(
        body.t, order_id, intent.amount, intent.currency
    )
    client_http: httpx.AsyncClient = request.app.state.http
    delivered = True
    try:
        r = await client_http.post(
            request.app.state.settings.mock_webhook_url,
            content=payload,
            headers={
                SIGNATURE_HEADER: sig,
                EVENT_ID_HEADER: f"evt_{payment_id}",
                "content-type": "application/json",
            },
        )
        r.raise_for_status()
    except httpx.HTTPError as e:
        # the client can emit again
        logger.error("mock webhook delivery failed: %s", e)
        delivered = False
    return ok(orderId=order_id, paymentId=payment_id, delivered=delivered)


# ----------------------------
# App factory
# ----------------------------
def create_app(settings: Optional[Settings] = None,
               gateway: Optional[PaymentGateway] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("symreg is starting up (gateway=%s, db=%s)",
                    settings.gateway, engine.url.get_backend_name())
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        app.state.http = httpx.AsyncClient(
            timeout=settings.gateway_timeout,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )
        if app.state.gateway is None:
            app.state.gateway = build_gateway(settings, app.state.http)
        try:
            yield
        finally:
            await app.state.http.aclose()
            app.state.http = None
            await engine.dispose()

    app = FastAPI(
        title="symreg",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.gateway = gateway
    app.state.fee_policy = FeePolicy.from_settings(settings)

    install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
