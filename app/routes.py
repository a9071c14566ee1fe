import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.audit import RequestContext
from app.auth import CurrentUser, require_permission, verify_token
from app.config import Settings, get_settings
from app.database import get_session, get_session_factory
from app.orders import OrderService
from app.paypal_client import PayPalClient
from app.reconciliation import ReconciliationService
from app.refunds import RefundService
from app.subscriptions import SubscriptionService
from app.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class CreateOrderRequest(BaseModel):
    amount: Any = None
    description: Optional[str] = None
    member_id: Optional[str] = None


class CaptureOrderRequest(BaseModel):
    order_id: Optional[str] = None


class CreateSubscriptionRequest(BaseModel):
    plan_id: Optional[str] = None
    member_id: Optional[str] = None


class SubscriptionIdRequest(BaseModel):
    subscription_id: Optional[str] = None
    reason: Optional[str] = None


class ProductRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class PlanRequest(BaseModel):
    product_id: Optional[str] = None
    amount: Any = None
    frequency: str = "monthly"
    name: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    amount: Any = None
    member_id: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Any = None
    reason: Optional[str] = None
    note: Optional[str] = None


def get_paypal_client(request: Request) -> PayPalClient:
    return request.app.state.paypal_client


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def request_context(request: Request, user: CurrentUser = Depends(verify_token)) -> RequestContext:
    return RequestContext(user_id=user.id, ip_address=client_ip(request),
                          user_agent=request.headers.get("user-agent"))


def order_service(
    session: AsyncSession = Depends(get_session),
    client: PayPalClient = Depends(get_paypal_client),
    settings: Settings = Depends(get_settings),
    context: RequestContext = Depends(request_context),
) -> OrderService:
    return OrderService(session, client, settings, context)


def subscription_service(
    session: AsyncSession = Depends(get_session),
    client: PayPalClient = Depends(get_paypal_client),
    settings: Settings = Depends(get_settings),
    context: RequestContext = Depends(request_context),
) -> SubscriptionService:
    return SubscriptionService(session, client, settings, context)


def refund_service(
    session: AsyncSession = Depends(get_session),
    client: PayPalClient = Depends(get_paypal_client),
    settings: Settings = Depends(get_settings),
    context: RequestContext = Depends(request_context),
) -> RefundService:
    return RefundService(session, client, settings, context)


def reconciliation_service(
    session: AsyncSession = Depends(get_session),
    client: PayPalClient = Depends(get_paypal_client),
    settings: Settings = Depends(get_settings),
) -> ReconciliationService:
    return ReconciliationService(session, client, settings)


def webhook_processor(
    factory: async_sessionmaker = Depends(get_session_factory),
    client: PayPalClient = Depends(get_paypal_client),
    settings: Settings = Depends(get_settings),
) -> WebhookProcessor:
    return WebhookProcessor(factory, client, settings)


# Payments and orders

@router.get("", dependencies=[Depends(require_permission("payments:read"))])
async def list_payments(
    status: Optional[str] = None,
    kind: Optional[str] = Query(None, alias="type"),
    member_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: OrderService = Depends(order_service),
):
    return await service.list_payments(status, kind, member_id, start_date, end_date, page, limit)


@router.post("/manual", status_code=201, dependencies=[Depends(require_permission("payments:write"))])
async def record_manual_payment(body: ManualPaymentRequest, service: OrderService = Depends(order_service)):
    return await service.record_manual_payment(body.amount, body.member_id, body.description, body.type)


@router.post("/create-order")
async def create_order(body: CreateOrderRequest, service: OrderService = Depends(order_service)):
    result = await service.create_order(body.amount, body.description, body.member_id)
    return asdict(result)


@router.post("/capture-order")
async def capture_order(body: CaptureOrderRequest, service: OrderService = Depends(order_service)):
    result = await service.capture_order(body.order_id)
    return asdict(result)


# Subscriptions

@router.post("/create-subscription")
async def create_subscription(body: CreateSubscriptionRequest,
                              service: SubscriptionService = Depends(subscription_service)):
    result = await service.create_subscription(body.plan_id, body.member_id)
    return asdict(result)


@router.post("/activate-subscription")
async def activate_subscription(body: SubscriptionIdRequest,
                                service: SubscriptionService = Depends(subscription_service)):
    result = await service.activate_subscription(body.subscription_id)
    return asdict(result)


@router.post("/cancel-subscription", dependencies=[Depends(require_permission("payments:write"))])
async def cancel_subscription(body: SubscriptionIdRequest,
                              service: SubscriptionService = Depends(subscription_service)):
    result = await service.cancel_subscription(body.subscription_id, body.reason)
    return asdict(result)


@router.get("/subscriptions")
async def list_subscriptions(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: SubscriptionService = Depends(subscription_service),
):
    return await service.list_subscriptions(status, page, limit)


@router.post("/products", dependencies=[Depends(require_permission("payments:write"))])
async def create_product(body: ProductRequest, service: SubscriptionService = Depends(subscription_service)):
    return await service.create_product(body.name, body.description)


@router.post("/plans", dependencies=[Depends(require_permission("payments:write"))])
async def create_plan(body: PlanRequest, service: SubscriptionService = Depends(subscription_service)):
    return await service.create_plan(body.product_id, body.amount, body.frequency, body.name)


@router.get("/plans")
async def list_plans(service: SubscriptionService = Depends(subscription_service)):
    return await service.list_plans()


# Refunds

@router.post("/refund/{capture_id}", dependencies=[Depends(require_permission("payments:refund"))])
async def refund_capture(capture_id: str, body: Optional[RefundRequest] = None,
                         service: RefundService = Depends(refund_service)):
    body = body or RefundRequest()
    result = await service.refund(capture_id, body.amount, body.reason, body.note)
    return asdict(result)


@router.post("/{payment_id}/refund", dependencies=[Depends(require_permission("payments:refund"))])
async def refund_payment(payment_id: str, body: Optional[RefundRequest] = None,
                         service: RefundService = Depends(refund_service)):
    result = await service.refund_payment(payment_id, (body or RefundRequest()).reason)
    return asdict(result)


# Reporting

@router.get("/history", dependencies=[Depends(require_permission("payments:read"))])
async def payment_history(
    days: int = Query(30, ge=1, le=365),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: ReconciliationService = Depends(reconciliation_service),
):
    return asdict(await service.history(days, page, limit))


@router.get("/stats", dependencies=[Depends(require_permission("payments:read"))])
@router.get("/transaction-stats", dependencies=[Depends(require_permission("payments:read"))])
async def transaction_stats(service: ReconciliationService = Depends(reconciliation_service)):
    return await service.transaction_stats()


# Webhooks

@router.post("/webhook")
@router.post("/ipn")
async def paypal_webhook(request: Request, background_tasks: BackgroundTasks,
                         processor: WebhookProcessor = Depends(webhook_processor)):
    # Always 200: any other status makes PayPal redeliver
    raw = await request.body()
    try:
        body = json.loads(raw or b"null")
    except ValueError:
        logger.error("[Webhook] Notification body is not JSON, dropping")
        return {"received": True}

    event = processor.acknowledge(body)
    if event is not None:
        background_tasks.add_task(processor.process, event, dict(request.headers), client_ip(request))
    return {"received": True}
