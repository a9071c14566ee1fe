"""
PayPal webhook / IPN ingestion.

``acknowledge`` runs inside the HTTP request and only checks the event shape.
``process`` runs after the response has been sent and walks the event through
dedup, signature verification, ledger persistence and dispatch. It never
raises: provider redelivery is the retry mechanism.
"""
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.ledger import TransactionLedger, error_entry
from app.models import Payment, PaymentStatus, SubscriptionStatus, TransactionKind, utcnow
from app.orders import payment_for_order
from app.payloads import WebhookEvent
from app.paypal_client import PayPalClient, PayPalError
from app.subscriptions import apply_subscriber_fields, find_subscription, shadow_payment

logger = logging.getLogger(__name__)

VERIFY_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

SUBSCRIPTION_STATE_EVENTS = {
    "BILLING.SUBSCRIPTION.CANCELLED": SubscriptionStatus.CANCELLED,
    "BILLING.SUBSCRIPTION.EXPIRED": SubscriptionStatus.EXPIRED,
    "BILLING.SUBSCRIPTION.SUSPENDED": SubscriptionStatus.SUSPENDED,
}


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"


class Verification(str, enum.Enum):
    SKIPPED = "skipped"
    VERIFIED = "verified"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


Handler = Callable[[AsyncSession, TransactionLedger, WebhookEvent], Awaitable[None]]


class WebhookProcessor:
    def __init__(self, session_factory: async_sessionmaker, client: PayPalClient, settings: Settings):
        self.session_factory = session_factory
        self.client = client
        self.settings = settings
        self.handlers: Dict[str, Handler] = {
            "PAYMENT.CAPTURE.COMPLETED": self._on_capture_completed,
            "PAYMENT.CAPTURE.REFUNDED": self._on_capture_refunded,
            "PAYMENT.CAPTURE.DENIED": self._on_capture_denied,
            "PAYMENT.CAPTURE.PENDING": self._on_capture_pending,
            "PAYMENT.SALE.COMPLETED": self._on_sale_completed,
            "BILLING.SUBSCRIPTION.ACTIVATED": self._on_subscription_activated,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self._on_subscription_payment_failed,
        }
        for event_type in SUBSCRIPTION_STATE_EVENTS:
            self.handlers[event_type] = self._on_subscription_state

    def acknowledge(self, body: Any) -> Optional[WebhookEvent]:
        event = WebhookEvent.parse(body)
        if event is None:
            logger.error("[Webhook] Missing event_type or id, dropping notification")
            return None
        logger.info(f"[Webhook] Event received: {event.event_type}, ID: {event.event_id}")
        return event

    async def process(
        self,
        event: WebhookEvent,
        headers: Optional[Mapping[str, str]] = None,
        ip_address: Optional[str] = None,
    ) -> WebhookOutcome:
        try:
            outcome = await self._process(event, headers or {}, ip_address)
        except Exception as exc:
            logger.exception(f"[Webhook] Processing error for {event.event_type} {event.event_id}")
            await self._record_error("webhook", exc, {"event_id": event.event_id, "event_type": event.event_type})
            return WebhookOutcome.FAILED
        logger.info(f"[Webhook] {event.event_type} {event.event_id}: {outcome.value}")
        return outcome

    async def _process(self, event: WebhookEvent, headers: Mapping[str, str],
                       ip_address: Optional[str]) -> WebhookOutcome:
        async with self.session_factory() as session:
            ledger = TransactionLedger(session)
            if await ledger.exists_by_webhook_event_id(event.event_id):
                logger.info(f"[Webhook] Duplicate event {event.event_id}, skipping")
                return WebhookOutcome.DUPLICATE

            verification = await self._verify(event, headers)
            if verification == Verification.FAILED:
                logger.error(f"[Webhook] Signature verification FAILED for event {event.event_id}")
                await ledger.append(**error_entry(
                    "webhook-signature", Exception("Signature verification failed"),
                    {"event_id": event.event_id, "event_type": event.event_type},
                ))
                await session.commit()
                return WebhookOutcome.REJECTED

            payment_id = await self._related_payment_id(session, event)
            description = f"Webhook: {event.event_type}"
            if verification == Verification.UNAVAILABLE:
                description += " (unverified)"
            stored = await ledger.append_webhook_event(
                event.event_id,
                webhook_event_type=event.event_type,
                status=event.event_type,
                payment_id=payment_id,
                paypal_order_id=event.related_order_id,
                amount=event.amount,
                currency=event.currency or self.settings.currency,
                raw_payload=event.raw,
                description=description,
                ip_address=ip_address,
            )
            if stored is None:
                return WebhookOutcome.DUPLICATE

            handler = self.handlers.get(event.event_type)
            if handler is None:
                logger.info(f"[Webhook] Unhandled event type: {event.event_type}")
                return WebhookOutcome.IGNORED

            try:
                await handler(session, ledger, event)
                await session.commit()
            except IntegrityError:
                # The capture was committed by a concurrent client capture
                await session.rollback()
                logger.info(f"[Webhook] {event.event_type} {event.event_id} already applied concurrently")
                return WebhookOutcome.DUPLICATE
            except Exception:
                await session.rollback()
                raise
            return WebhookOutcome.PROCESSED

    async def _verify(self, event: WebhookEvent, headers: Mapping[str, str]) -> Verification:
        webhook_id = self.settings.paypal_webhook_id
        if not webhook_id:
            return Verification.SKIPPED

        lowered = {str(k).lower(): v for k, v in headers.items()}
        body = {field: lowered.get(header) for field, header in VERIFY_HEADERS.items()}
        body["webhook_id"] = webhook_id
        body["webhook_event"] = event.raw
        try:
            result = await self.client.request("POST", "/v1/notifications/verify-webhook-signature", body,
                                               context="verify-webhook-signature")
        except PayPalError as exc:
            # Verification service outage: keep going, the event is flagged unverified
            logger.error(f"[Webhook] Signature verification error (non-fatal) for {event.event_id}: {exc}")
            return Verification.UNAVAILABLE

        if result.get("verification_status") != "SUCCESS":
            return Verification.FAILED
        logger.info(f"[Webhook] Signature verified for event {event.event_id}")
        return Verification.VERIFIED

    async def _related_payment_id(self, session: AsyncSession, event: WebhookEvent) -> Optional[str]:
        if event.related_order_id:
            payment = await payment_for_order(session, event.related_order_id)
            return payment.id if payment else None
        subscription_id = event.billing_agreement_id or (
            event.resource_id if event.event_type.startswith("BILLING.SUBSCRIPTION.") else None
        )
        if subscription_id:
            payment = await shadow_payment(session, subscription_id)
            return payment.id if payment else None
        return None

    async def _record_error(self, context: str, error: Exception, extra: Dict[str, Any]) -> None:
        try:
            async with self.session_factory() as session:
                await TransactionLedger(session).append(**error_entry(context, error, extra))
                await session.commit()
        except Exception:
            logger.exception(f"[Webhook] Failed to log {context} error to DB")

    # Handlers

    async def _on_capture_completed(self, session, ledger, event):
        order_id = event.related_order_id
        payment = await self._order_payment(session, event)
        if payment is None:
            return

        if payment.status != PaymentStatus.COMPLETED:
            if not payment.can_transition(PaymentStatus.COMPLETED):
                logger.warning(f"[Webhook] Payment {payment.id} is {payment.status.value}, capture not applied")
                return
            payment.transition_to(PaymentStatus.COMPLETED)
            payment.payer_email = event.payer_email or payment.payer_email
            payment.ipn_data = event.raw
            payment.merge_meta(webhook_confirmed=True, capture_id=event.resource_id)
            logger.info(f"[Webhook] Payment confirmed via webhook: {order_id}")

        if event.currency and event.currency != self.settings.currency:
            logger.warning(f"[Webhook] Currency mismatch on order {order_id}: "
                           f"expected {self.settings.currency}, got {event.currency}")

        if await ledger.find_completed_capture(order_id) is None:
            await ledger.append(
                paypal_order_id=order_id,
                paypal_capture_id=event.resource_id,
                payment_id=payment.id,
                member_id=payment.member_id,
                kind=TransactionKind.CAPTURE,
                status="COMPLETED",
                amount=event.amount,
                currency=event.currency or self.settings.currency,
                payer_email=event.payer_email,
                description=f"Captured order {order_id} (webhook {event.event_id})",
                raw_payload=event.resource,
            )

    async def _on_capture_refunded(self, session, ledger, event):
        payment = await self._order_payment(session, event)
        if payment is None or payment.status == PaymentStatus.REFUNDED:
            return
        if not payment.can_transition(PaymentStatus.REFUNDED):
            logger.warning(f"[Webhook] Payment {payment.id} is {payment.status.value}, refund not applied")
            return
        payment.transition_to(PaymentStatus.REFUNDED)
        payment.refunded_at = utcnow()
        payment.ipn_data = event.raw
        payment.merge_meta(refund_id=event.resource_id, refund_status=event.resource.get("status"))
        logger.info(f"[Webhook] Refund confirmed via webhook: {event.related_order_id}")

    async def _on_capture_denied(self, session, ledger, event):
        payment = await self._order_payment(session, event)
        if payment is None or payment.status == PaymentStatus.FAILED:
            return
        if not payment.can_transition(PaymentStatus.FAILED):
            logger.warning(f"[Webhook] Payment {payment.id} is {payment.status.value}, denial not applied")
            return
        payment.transition_to(PaymentStatus.FAILED)
        payment.ipn_data = event.raw
        payment.last_error = f"Capture {event.resource_id} denied"

    async def _on_capture_pending(self, session, ledger, event):
        payment = await self._order_payment(session, event)
        if payment is None:
            return
        if payment.status != PaymentStatus.PENDING:
            logger.warning(f"[Webhook] Payment {payment.id} is {payment.status.value}, pending capture ignored")
            return
        payment.ipn_data = event.raw
        payment.merge_meta(capture_id=event.resource_id, capture_status="PENDING")

    async def _on_sale_completed(self, session, ledger, event):
        subscription_id = event.billing_agreement_id
        if not subscription_id:
            logger.info(f"[Webhook] Sale {event.resource_id} is not tied to a subscription")
            return
        if await ledger.find_subscription_payment(event.resource_id) is not None:
            return
        subscription = await find_subscription(session, subscription_id)
        payment = await shadow_payment(session, subscription_id)
        await ledger.append(
            paypal_subscription_id=subscription_id,
            paypal_capture_id=event.resource_id,
            payment_id=payment.id if payment else None,
            member_id=subscription.member_id if subscription else None,
            kind=TransactionKind.SUBSCRIPTION_PAYMENT,
            status=str(event.resource.get("state") or "COMPLETED").upper(),
            amount=event.amount,
            currency=event.currency or self.settings.currency,
            description=f"Subscription payment for {subscription_id}",
            raw_payload=event.resource,
        )
        logger.info(f"[Webhook] Subscription payment recorded: {subscription_id} ({event.amount})")

    async def _on_subscription_activated(self, session, ledger, event):
        subscription = await find_subscription(session, event.resource_id)
        if subscription is None:
            logger.warning(f"[Webhook] Unknown subscription {event.resource_id}")
            return
        subscription.last_webhook_payload = event.raw
        if subscription.is_terminal:
            logger.warning(f"[Webhook] Subscription {event.resource_id} is {subscription.status.value}, "
                           f"activation ignored")
            return
        subscription.apply_status(SubscriptionStatus.ACTIVE)
        apply_subscriber_fields(subscription, event.subscription_view())

        payment = await shadow_payment(session, event.resource_id)
        if payment is not None and payment.can_transition(PaymentStatus.COMPLETED):
            payment.transition_to(PaymentStatus.COMPLETED)
        logger.info(f"[Webhook] Subscription activated: {event.resource_id}")

    async def _on_subscription_state(self, session, ledger, event):
        new_status = SUBSCRIPTION_STATE_EVENTS[event.event_type]
        subscription = await find_subscription(session, event.resource_id)
        if subscription is None:
            logger.warning(f"[Webhook] Unknown subscription {event.resource_id}")
            return
        subscription.last_webhook_payload = event.raw
        if not subscription.apply_status(new_status):
            return
        if new_status == SubscriptionStatus.CANCELLED and subscription.cancelled_at is None:
            subscription.cancelled_at = utcnow()

        if subscription.is_terminal:
            payment = await shadow_payment(session, event.resource_id)
            if payment is not None and payment.can_transition(PaymentStatus.CANCELLED):
                payment.transition_to(PaymentStatus.CANCELLED)
        logger.info(f"[Webhook] Subscription {new_status.value}: {event.resource_id}")

    async def _on_subscription_payment_failed(self, session, ledger, event):
        logger.error(f"[Webhook] Subscription payment failed: {event.resource_id}")

    async def _order_payment(self, session: AsyncSession, event: WebhookEvent) -> Optional[Payment]:
        if not event.related_order_id:
            logger.warning(f"[Webhook] {event.event_type} {event.event_id} carries no related order id")
            return None
        payment = await payment_for_order(session, event.related_order_id)
        if payment is None:
            logger.warning(f"[Webhook] No local payment for order {event.related_order_id}")
        return payment

