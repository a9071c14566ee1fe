from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import select

from app.models import ERROR_STATUS, Transaction, TransactionKind
from app.paypal_client import PayPalAuthError, PayPalError, TokenCache, parse_retry_after

pytestmark = pytest.mark.anyio


async def error_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Transaction).where(Transaction.kind == TransactionKind.ERROR))
        return result.scalars().all()


def test_token_cache_expires_before_provider_lifetime():
    now = [1000.0]
    cache = TokenCache(clock=lambda: now[0], margin=60)
    cache.set("abc", expires_in=3600)

    now[0] += 3500
    assert cache.get() == "abc"
    now[0] += 60
    assert cache.get() is None


def test_parse_retry_after():
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None


def test_parse_retry_after_http_date():
    now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert parse_retry_after("Sun, 01 Mar 2026 12:00:30 GMT", now=now) == 30.0
    assert parse_retry_after("Sun, 01 Mar 2026 11:59:00 GMT", now=now) == 0.0


async def test_token_is_fetched_once_and_reused(paypal, paypal_client):
    paypal.on("GET", "/v1/billing/plans", httpx.Response(200, json={"plans": []}))

    await paypal_client.request("GET", "/v1/billing/plans")
    await paypal_client.request("GET", "/v1/billing/plans")

    assert paypal.token_calls == 1
    assert paypal.calls[0].headers["Authorization"] == "Bearer token-1"


async def test_rejected_token_is_refreshed_once(paypal, paypal_client, sleeps):
    paypal.on(
        "GET", "/v1/billing/plans",
        httpx.Response(401, json={"error": "invalid_token"}),
        httpx.Response(200, json={"plans": [{"id": "P-1"}]}),
    )

    data = await paypal_client.request("GET", "/v1/billing/plans")

    assert data == {"plans": [{"id": "P-1"}]}
    assert paypal.token_calls == 2
    assert paypal.calls[-1].headers["Authorization"] == "Bearer token-2"
    assert sleeps == []


async def test_server_errors_retry_with_backoff_then_fail(paypal, paypal_client, sleeps, session_factory):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"}))

    with pytest.raises(PayPalError) as exc_info:
        await paypal_client.request("POST", "/v2/checkout/orders", {"intent": "CAPTURE"}, context="create-order")

    assert len(paypal.calls_to("POST", "/v2/checkout/orders")) == 4
    assert sleeps == [2.0, 5.0, 10.0]
    assert exc_info.value.status_code == 503
    assert exc_info.value.attempts == 4

    rows = await error_rows(session_factory)
    assert len(rows) == 4
    assert all(row.status == ERROR_STATUS for row in rows)
    assert any(row.error_payload.get("final") for row in rows)


async def test_retry_after_header_overrides_delay(paypal, paypal_client, sleeps):
    paypal.on(
        "GET", "/v1/billing/plans",
        httpx.Response(429, headers={"Retry-After": "7"}, json={"name": "RATE_LIMIT_REACHED"}),
        httpx.Response(200, json={"plans": []}),
    )

    await paypal_client.request("GET", "/v1/billing/plans")

    assert sleeps == [7.0]


async def test_retry_after_date_in_the_past_retries_at_once(paypal, paypal_client, sleeps):
    paypal.on(
        "GET", "/v1/billing/plans",
        httpx.Response(503, headers={"Retry-After": "Thu, 01 Jan 2015 00:00:00 GMT"}, json={"name": "BUSY"}),
        httpx.Response(200, json={"plans": []}),
    )

    await paypal_client.request("GET", "/v1/billing/plans")

    assert sleeps == [0.0]


async def test_client_errors_are_not_retried(paypal, paypal_client, sleeps):
    paypal.on("POST", "/v2/checkout/orders", httpx.Response(
        422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INVALID_CURRENCY_CODE"}],
                   "debug_id": "dbg-1"},
    ))

    with pytest.raises(PayPalError) as exc_info:
        await paypal_client.request("POST", "/v2/checkout/orders", {})

    assert len(paypal.calls) == 1
    assert sleeps == []
    assert exc_info.value.issue == "INVALID_CURRENCY_CODE"
    assert exc_info.value.debug_id == "dbg-1"


async def test_transport_errors_are_retried(paypal, paypal_client, sleeps):
    paypal.on(
        "GET", "/v1/billing/plans",
        httpx.ConnectError("connection reset"),
        httpx.Response(200, json={"plans": []}),
    )

    assert await paypal_client.request("GET", "/v1/billing/plans") == {"plans": []}
    assert sleeps == [2.0]


async def test_request_id_is_stable_across_retries(paypal, paypal_client):
    paypal.on(
        "POST", "/v2/checkout/orders/ORDER-1/capture",
        httpx.Response(500, json={"name": "INTERNAL_SERVER_ERROR"}),
        httpx.Response(201, json={"id": "ORDER-1", "status": "COMPLETED"}),
    )

    await paypal_client.request("POST", "/v2/checkout/orders/ORDER-1/capture")

    ids = {call.headers["PayPal-Request-Id"] for call in paypal.calls}
    assert len(ids) == 1
    assert ids.pop().startswith("test-")


async def test_token_endpoint_rejection_is_not_retried(paypal, paypal_client, sleeps):
    paypal.on("POST", "/v1/oauth2/token", httpx.Response(401, json={"error": "invalid_client"}))

    with pytest.raises(PayPalAuthError):
        await paypal_client.request("GET", "/v1/billing/plans")

    assert sleeps == []


async def test_empty_body_decodes_to_empty_dict(paypal, paypal_client):
    paypal.on("POST", "/v1/billing/subscriptions/I-1/cancel", httpx.Response(204))

    assert await paypal_client.request("POST", "/v1/billing/subscriptions/I-1/cancel", {"reason": "x"}) == {}
