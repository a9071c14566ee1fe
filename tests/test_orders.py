import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from app.audit import RequestContext
from app.errors import PaymentNotFoundError, PaymentValidationError, ProviderUnavailableError
from app.models import (
    AuditLog,
    InvalidStatusTransition,
    LedgerImmutableError,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionKind,
)
from app.orders import OrderService, validate_amount
from tests.paypal_fakes import capture_payload, order_payload, rendezvous

pytestmark = pytest.mark.anyio


@pytest.fixture
def service(session, paypal_client, settings):
    return OrderService(session, paypal_client, settings, RequestContext(user_id="admin-1", ip_address="10.0.0.1"))


async def count(session, model, *conditions):
    return (await session.execute(select(func.count()).select_from(model).where(*conditions))).scalar_one()


@pytest.mark.parametrize("value", [0, "0.00", -5, "100000.00", "12.345", "abc", None, True])
def test_validate_amount_rejects(value):
    with pytest.raises(PaymentValidationError):
        validate_amount(value)


def test_validate_amount_normalizes():
    assert validate_amount("25") == Decimal("25.00")
    assert validate_amount(99999.99) == Decimal("99999.99")


async def test_donation_happy_path(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", httpx.Response(201, json=capture_payload()))

    created = await service.create_order("25.00", "Winter appeal")
    assert created.order_id == "ORDER-1"
    assert created.approve_url.endswith("token=ORDER-1")

    sent = paypal.calls_to("POST", "/v2/checkout/orders")[0]
    assert b'"value":"25.00"' in sent.content.replace(b" ", b"")
    assert b'"currency_code":"EUR"' in sent.content.replace(b" ", b"")

    captured = await service.capture_order("ORDER-1")
    assert captured.status == "completed"
    assert captured.capture_id == "CAP-1"
    assert captured.amount == "25.00"

    payment = await session.get(Payment, created.payment_id)
    await session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.payer_email == "donor@example.org"
    assert payment.payer_name == "Dana Donor"
    assert payment.meta["capture_id"] == "CAP-1"

    assert await count(session, Transaction, Transaction.kind == TransactionKind.ORDER) == 1
    assert await count(session, Transaction, Transaction.kind == TransactionKind.CAPTURE) == 1
    assert await count(session, AuditLog, AuditLog.action == "PAYPAL_CAPTURE_ORDER") == 1


async def test_invalid_amount_has_no_side_effects(service, paypal, session):
    with pytest.raises(PaymentValidationError):
        await service.create_order(0)

    assert paypal.calls == []
    assert await count(session, Payment) == 0
    assert await count(session, Transaction) == 0


async def test_provider_failure_leaves_failed_payment(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"}))

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await service.create_order("10.00")

    assert exc_info.value.to_dict() == {
        "error": "Network error. Please try again.",
        "payment_id": exc_info.value.payment_id,
    }
    payment = await session.get(Payment, exc_info.value.payment_id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.retry_count == 3
    assert payment.paypal_order_id is None


async def test_capture_is_idempotent(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", httpx.Response(201, json=capture_payload()))
    await service.create_order("25.00")

    first = await service.capture_order("ORDER-1")
    second = await service.capture_order("ORDER-1")

    assert first.status == "completed"
    assert second.status == "already_captured"
    assert second.capture_id == "CAP-1"
    assert len(paypal.calls_to("POST", "/v2/checkout/orders/ORDER-1/capture")) == 1
    assert await count(session, Transaction, Transaction.kind == TransactionKind.CAPTURE) == 1


async def test_already_captured_at_provider_is_reconciled(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", httpx.Response(
        422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]},
    ))
    paypal.on("GET", "/v2/checkout/orders/ORDER-1", httpx.Response(200, json=capture_payload()))
    created = await service.create_order("25.00")

    result = await service.capture_order("ORDER-1")

    assert result.status == "completed"
    assert result.capture_id == "CAP-1"
    payment = await session.get(Payment, created.payment_id)
    assert payment.status == PaymentStatus.COMPLETED


async def test_capture_unknown_order(service):
    with pytest.raises(PaymentNotFoundError):
        await service.capture_order("ORDER-404")


async def test_capture_failure_keeps_payment_pending(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", httpx.Response(502, json={"name": "BAD_GATEWAY"}))
    created = await service.create_order("25.00")

    with pytest.raises(ProviderUnavailableError):
        await service.capture_order("ORDER-1")

    payment = await session.get(Payment, created.payment_id)
    assert payment.status == PaymentStatus.PENDING
    assert payment.retry_count == 1
    assert "BAD_GATEWAY" in payment.last_error


async def test_currency_mismatch_is_logged(service, paypal, caplog):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture",
              httpx.Response(201, json=capture_payload(currency="USD")))
    await service.create_order("25.00")

    with caplog.at_level(logging.WARNING, logger="app.orders"):
        result = await service.capture_order("ORDER-1")

    assert result.status == "completed"
    assert "Currency mismatch on order ORDER-1" in caplog.text


async def test_completed_amount_is_immutable(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", httpx.Response(201, json=capture_payload()))
    created = await service.create_order("25.00")
    await service.capture_order("ORDER-1")

    payment = await session.get(Payment, created.payment_id)
    with pytest.raises(InvalidStatusTransition):
        payment.amount = Decimal("30.00")
    with pytest.raises(InvalidStatusTransition):
        payment.transition_to(PaymentStatus.PENDING)


async def test_concurrent_captures_record_one_capture(paypal, paypal_client, session, session_factory, settings):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", rendezvous(2, 201, capture_payload()))
    await OrderService(session, paypal_client, settings).create_order("25.00")

    async def capture():
        async with session_factory() as s:
            return await OrderService(s, paypal_client, settings).capture_order("ORDER-1")

    results = await asyncio.gather(capture(), capture())

    assert sorted(r.status for r in results) == ["already_captured", "completed"]
    assert {r.capture_id for r in results} == {"CAP-1"}
    calls = paypal.calls_to("POST", "/v2/checkout/orders/ORDER-1/capture")
    assert {c.headers["PayPal-Request-Id"] for c in calls} == {"test-capture-ORDER-1"}
    assert await count(session, Transaction, Transaction.kind == TransactionKind.CAPTURE) == 1


async def test_ledger_rows_cannot_be_updated(service, paypal, session):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    await service.create_order("25.00")

    entry = await service.ledger.find_by_external_id(TransactionKind.ORDER, "ORDER-1")
    entry.status = "APPROVED"
    with pytest.raises(LedgerImmutableError):
        await session.flush()
    await session.rollback()

    entry = await service.ledger.find_by_external_id(TransactionKind.ORDER, "ORDER-1")
    assert entry.status == "CREATED"


async def test_list_payments_filters(service, paypal):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    await service.create_order("25.00", member_id="member-7")
    await service.record_manual_payment("40.00", member_id="member-9", description="Cash at gala", kind="recurring")

    listed = await service.list_payments()
    assert listed["pagination"] == {"total": 2, "page": 1, "limit": 20, "pages": 1}

    completed = await service.list_payments(status="completed")
    assert [p["payer_name"] for p in completed["payments"]] == ["Manual Entry"]
    one_time = await service.list_payments(kind="one_time")
    assert [p["paypal_order_id"] for p in one_time["payments"]] == ["ORDER-1"]
    assert (await service.list_payments(member_id="member-9"))["payments"][0]["amount"] == "40.00"

    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    assert (await service.list_payments(start_date=tomorrow))["payments"] == []
    assert (await service.list_payments(end_date=tomorrow))["pagination"]["total"] == 2

    with pytest.raises(PaymentValidationError):
        await service.list_payments(status="lost")


async def test_manual_payment_is_completed_and_audited(service, paypal, session):
    result = await service.record_manual_payment("15.50", member_id="member-9", description="Bank transfer")

    assert result["status"] == "completed"
    assert result["amount"] == "15.50"
    assert result["kind"] == "one_time"
    assert result["payer_name"] == "Manual Entry"
    assert paypal.calls == []
    assert await count(session, Transaction) == 0

    audit = (await session.execute(select(AuditLog).where(AuditLog.action == "MANUAL_PAYMENT"))).scalars().one()
    assert audit.entity_id == result["id"]
    assert audit.user_id == "admin-1"
    assert audit.new_values == {"amount": "15.50", "member_id": "member-9"}


@pytest.mark.parametrize("amount, kind", [("0", None), ("10.00", "refund"), ("10.00", "barter")])
async def test_manual_payment_validation(service, session, amount, kind):
    with pytest.raises(PaymentValidationError):
        await service.record_manual_payment(amount, kind=kind)
    assert await count(session, Payment) == 0
