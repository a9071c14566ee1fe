import httpx
import pytest

from app.audit import RequestContext
from app.models import TransactionKind
from app.orders import OrderService
from app.reconciliation import SYNC_ERROR, ReconciliationService
from app.refunds import RefundService
from tests.paypal_fakes import capture_payload, order_payload

pytestmark = pytest.mark.anyio


@pytest.fixture
def service(session, paypal_client, settings):
    return ReconciliationService(session, paypal_client, settings)


def report(*details):
    return httpx.Response(200, json={"transaction_details": list(details)})


def detail(transaction_id, event_code="T0006", value="30.00"):
    return {
        "transaction_info": {
            "transaction_id": transaction_id,
            "transaction_event_code": event_code,
            "transaction_status": "S",
            "transaction_amount": {"currency_code": "EUR", "value": value},
            "transaction_subject": "Donation",
        },
        "payer_info": {"email_address": "donor@example.org", "payer_name": {"given_name": "Dana", "surname": "Donor"}},
    }


async def test_sync_appends_unknown_transactions(service, paypal, session):
    paypal.on("GET", "/v1/reporting/transactions", report(detail("TX-1"), detail("TX-2", "T1107", "-5.00")))

    result = await service.sync_history(days=7)

    assert (result.fetched, result.synced) == (2, 2)
    call = paypal.calls_to("GET", "/v1/reporting/transactions")[0]
    assert call.url.params["fields"] == "all"
    assert call.url.params["page_size"] == "100"

    capture = await service.ledger.find_by_external_id(TransactionKind.CAPTURE, "TX-1")
    assert capture.payer_name == "Dana Donor"
    order = await service.ledger.find_by_external_id(TransactionKind.ORDER, "TX-2")
    assert str(order.amount) == "5.00"


async def test_sync_skips_known_transactions(service, paypal):
    paypal.on("GET", "/v1/reporting/transactions", report(detail("TX-1")))

    await service.sync_history()
    again = await service.sync_history()

    assert (again.fetched, again.synced) == (1, 0)


async def test_history_falls_back_to_local_data(service, paypal, paypal_client, session, settings):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("GET", "/v1/reporting/transactions", httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"}))
    await OrderService(session, paypal_client, settings).create_order("12.00")

    page = await service.history()

    assert page.sync_error == SYNC_ERROR
    assert page.pagination["total"] == 1
    assert page.transactions[0]["kind"] == "order"
    assert page.transactions[0]["paypal_order_id"] == "ORDER-1"


async def test_transaction_stats(service, paypal, paypal_client, session, settings):
    context = RequestContext(user_id="admin-1")
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(201, json=order_payload("ORDER-1")))
    paypal.on("POST", "/v2/checkout/orders/ORDER-1/capture", httpx.Response(201, json=capture_payload(value="40.00")))
    paypal.on("POST", "/v2/payments/captures/CAP-1/refund", httpx.Response(201, json={
        "id": "REF-1", "status": "COMPLETED", "amount": {"currency_code": "EUR", "value": "15.00"},
    }))
    orders = OrderService(session, paypal_client, settings, context)
    await orders.create_order("40.00")
    await orders.capture_order("ORDER-1")
    await RefundService(session, paypal_client, settings, context).refund("CAP-1", amount="15.00")
    await orders.record_manual_payment("10.00", description="Cash donation")

    stats = await service.transaction_stats()

    assert stats["total_orders"] == 1
    assert stats["total_captures"] == 1
    assert stats["total_refunds"] == 1
    assert stats["total_errors"] == 0
    assert stats["captured_amount"] == "40.00"
    assert stats["refunded_amount"] == "15.00"
    assert stats["net_revenue"] == "25.00"
    assert stats["active_subscriptions"] == 0
    assert stats["total_payments"] == 2
    assert stats["payments_by_status"]["refunded"] == 1
    assert stats["payments_by_status"]["completed"] == 1
    assert stats["payments_by_status"]["pending"] == 0
    assert stats["payment_revenue"] == "10.00"
    assert stats["monthly_revenue"] == "10.00"
