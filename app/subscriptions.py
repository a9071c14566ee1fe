import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import RequestContext, record_audit
from app.config import Settings
from app.errors import PaymentNotFoundError, PaymentValidationError, ProviderUnavailableError
from app.models import (
    BillingFrequency,
    Payment,
    PaymentKind,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from app.orders import format_amount, validate_amount
from app.payloads import PlanView, SubscriptionView
from app.paypal_client import PayPalClient, PayPalError

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by admin"

INTERVAL_UNITS = {
    BillingFrequency.MONTHLY: "MONTH",
    BillingFrequency.YEARLY: "YEAR",
}


def frequency_from_interval(interval_unit: Optional[str]) -> Optional[BillingFrequency]:
    for frequency, unit in INTERVAL_UNITS.items():
        if unit == (interval_unit or "").upper():
            return frequency
    return None


@dataclass
class SubscriptionResult:
    subscription_id: str
    status: str
    approval_url: Optional[str] = None
    payment_id: Optional[str] = None


async def shadow_payment(session: AsyncSession, paypal_subscription_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment).where(
            Payment.paypal_subscription_id == paypal_subscription_id,
            Payment.kind == PaymentKind.SUBSCRIPTION,
        ).limit(1)
    )
    return result.scalars().first()


async def find_subscription(session: AsyncSession, paypal_subscription_id: str) -> Optional[Subscription]:
    result = await session.execute(
        select(Subscription).where(Subscription.paypal_subscription_id == paypal_subscription_id).limit(1)
    )
    return result.scalars().first()


class SubscriptionService:
    def __init__(self, session: AsyncSession, client: PayPalClient, settings: Settings,
                 context: Optional[RequestContext] = None):
        self.session = session
        self.client = client
        self.settings = settings
        self.context = context or RequestContext()

    async def create_subscription(self, plan_id: str, member_id: Optional[str] = None) -> SubscriptionResult:
        if not plan_id:
            raise PaymentValidationError("Plan ID required")

        body = {
            "plan_id": plan_id,
            "application_context": {
                "brand_name": self.settings.brand_name,
                "locale": self.settings.locale,
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": f"{self.settings.frontend_url}/payments?subscription=success",
                "cancel_url": f"{self.settings.frontend_url}/payments?subscription=cancelled",
            },
        }
        try:
            view = SubscriptionView.from_payload(
                await self.client.request("POST", "/v1/billing/subscriptions", body, context="create-subscription")
            )
            if not view.subscription_id:
                raise PayPalError("create-subscription response carries no id", payload=view.raw)
        except PayPalError as exc:
            logger.error(f"[Subscriptions] create-subscription FAILED for plan {plan_id}: {exc.to_dict()}")
            raise ProviderUnavailableError() from exc

        plan = await self._plan_details(plan_id)
        subscription = Subscription(
            paypal_subscription_id=view.subscription_id,
            paypal_plan_id=plan_id,
            member_id=member_id,
            user_id=self.context.user_id,
            status=SubscriptionStatus.APPROVAL_PENDING,
            plan_name=plan.name if plan else None,
            amount=plan.amount if plan else None,
            currency=(plan.currency if plan and plan.currency else self.settings.currency),
            frequency=(frequency_from_interval(plan.interval_unit) if plan else None) or BillingFrequency.MONTHLY,
            approval_url=view.approval_url,
            raw_payload=view.raw,
        )
        self.session.add(subscription)

        payment = Payment(
            member_id=member_id,
            paypal_subscription_id=view.subscription_id,
            amount=0,
            currency=self.settings.currency,
            kind=PaymentKind.SUBSCRIPTION,
            status=PaymentStatus.PENDING,
            description=f"Subscription {view.subscription_id}",
            meta={"approval_url": view.approval_url, "plan_id": plan_id},
        )
        self.session.add(payment)
        await self.session.flush()

        await record_audit(self.session, self.context, "PAYPAL_CREATE_SUBSCRIPTION", "Subscription",
                           subscription.id, {"subscription_id": view.subscription_id, "plan_id": plan_id})
        await self.session.commit()

        logger.info(f"[Subscriptions] Subscription created: {view.subscription_id} (plan {plan_id})")
        return SubscriptionResult(
            subscription_id=view.subscription_id,
            status=subscription.status.value,
            approval_url=view.approval_url,
            payment_id=payment.id,
        )

    async def activate_subscription(self, subscription_id: str) -> SubscriptionResult:
        if not subscription_id:
            raise PaymentValidationError("Subscription ID required")
        subscription = await find_subscription(self.session, subscription_id)
        if subscription is None:
            raise PaymentNotFoundError("Subscription not found")

        try:
            view = SubscriptionView.from_payload(
                await self.client.request("GET", f"/v1/billing/subscriptions/{subscription_id}",
                                          context="get-subscription")
            )
        except PayPalError as exc:
            logger.error(f"[Subscriptions] activate-subscription FAILED for {subscription_id}: {exc.to_dict()}")
            raise ProviderUnavailableError() from exc

        provider_status = SubscriptionStatus.from_provider(view.status)
        if provider_status is None:
            logger.warning(f"[Subscriptions] Unknown provider status {view.status!r} for {subscription_id}")
        elif not subscription.apply_status(provider_status) and subscription.status != provider_status:
            logger.warning(
                f"[Subscriptions] {subscription_id} is {subscription.status.value}, "
                f"ignoring provider status {view.status}"
            )

        apply_subscriber_fields(subscription, view)
        if view.last_payment_amount is not None:
            subscription.amount = view.last_payment_amount
        subscription.last_webhook_payload = view.raw

        payment = await shadow_payment(self.session, subscription_id)
        if payment is not None:
            if provider_status == SubscriptionStatus.ACTIVE and payment.can_transition(PaymentStatus.COMPLETED):
                payment.transition_to(PaymentStatus.COMPLETED)
            payment.payer_email = view.subscriber_email or payment.payer_email
            payment.payer_name = view.subscriber_name or payment.payer_name

        await self.session.commit()
        logger.info(f"[Subscriptions] Subscription refreshed: {subscription_id} -> {view.status}")
        return SubscriptionResult(
            subscription_id=subscription_id,
            status=subscription.status.value,
            payment_id=payment.id if payment else None,
        )

    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> SubscriptionResult:
        if not subscription_id:
            raise PaymentValidationError("Subscription ID required")
        subscription = await find_subscription(self.session, subscription_id)
        if subscription is None:
            raise PaymentNotFoundError("Subscription not found")
        if subscription.is_terminal:
            return SubscriptionResult(subscription_id=subscription_id, status=subscription.status.value)

        reason = reason or DEFAULT_CANCEL_REASON
        try:
            await self.client.request("POST", f"/v1/billing/subscriptions/{subscription_id}/cancel",
                                      {"reason": reason[:128]}, context="cancel-subscription")
        except PayPalError as exc:
            # The admin's intent is recorded locally either way
            logger.error(
                f"[Subscriptions] Provider cancel FAILED for {subscription_id}, cancelling locally: {exc.to_dict()}"
            )

        subscription.apply_status(SubscriptionStatus.CANCELLED)
        subscription.cancelled_at = utcnow()
        subscription.cancel_reason = reason

        payment = await shadow_payment(self.session, subscription_id)
        if payment is not None and payment.can_transition(PaymentStatus.CANCELLED):
            payment.transition_to(PaymentStatus.CANCELLED)

        await record_audit(self.session, self.context, "PAYPAL_CANCEL_SUBSCRIPTION", "Subscription",
                           subscription.id, {"subscription_id": subscription_id, "reason": reason})
        await self.session.commit()

        logger.info(f"[Subscriptions] Subscription cancelled: {subscription_id}")
        return SubscriptionResult(subscription_id=subscription_id, status=subscription.status.value,
                                  payment_id=payment.id if payment else None)

    async def list_subscriptions(self, status: Optional[str] = None, page: int = 1,
                                 limit: int = 20) -> Dict[str, Any]:
        stmt = select(Subscription)
        count_stmt = select(func.count(Subscription.id))
        if status:
            try:
                wanted = SubscriptionStatus(status.lower())
            except ValueError:
                raise PaymentValidationError(f"Unknown subscription status {status!r}")
            stmt = stmt.where(Subscription.status == wanted)
            count_stmt = count_stmt.where(Subscription.status == wanted)

        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        total = (await self.session.execute(count_stmt)).scalar_one()
        rows = (await self.session.execute(
            stmt.order_by(Subscription.created_at.desc()).limit(limit).offset((page - 1) * limit)
        )).scalars().all()
        return {
            "subscriptions": [subscription_summary(s) for s in rows],
            "pagination": {"total": total, "page": page, "pages": -(-total // limit)},
        }

    async def create_product(self, name: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
        body = {
            "name": name or f"{self.settings.brand_name} Membership",
            "description": description or f"{self.settings.brand_name} membership",
            "type": "SERVICE",
            "category": "CHARITY",
        }
        try:
            product = await self.client.request("POST", "/v1/catalogs/products", body, context="create-product")
        except PayPalError as exc:
            logger.error(f"[Subscriptions] create-product FAILED: {exc.to_dict()}")
            raise ProviderUnavailableError() from exc
        logger.info(f"[Subscriptions] Product created: {product.get('id')}")
        return {"product_id": product.get("id"), "product": product}

    async def create_plan(self, product_id: str, amount: Any, frequency: str = "monthly",
                          name: Optional[str] = None) -> Dict[str, Any]:
        if not product_id:
            raise PaymentValidationError("productId and amount required")
        amount = validate_amount(amount, self.settings.currency)
        try:
            freq = BillingFrequency((frequency or "monthly").lower())
        except ValueError:
            raise PaymentValidationError("Frequency must be monthly or yearly")

        label = "Monthly" if freq == BillingFrequency.MONTHLY else "Yearly"
        body = {
            "product_id": product_id,
            "name": name or f"{self.settings.brand_name} {label} Membership",
            "description": f"{self.settings.brand_name} {label.lower()} membership",
            "billing_cycles": [{
                "frequency": {"interval_unit": INTERVAL_UNITS[freq], "interval_count": 1},
                "tenure_type": "REGULAR",
                "sequence": 1,
                "total_cycles": 0,
                "pricing_scheme": {
                    "fixed_price": {"value": format_amount(amount), "currency_code": self.settings.currency}
                },
            }],
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "setup_fee": {"value": "0", "currency_code": self.settings.currency},
                "setup_fee_failure_action": "CONTINUE",
                "payment_failure_threshold": 3,
            },
        }
        try:
            plan = await self.client.request("POST", "/v1/billing/plans", body, context="create-plan")
        except PayPalError as exc:
            logger.error(f"[Subscriptions] create-plan FAILED for product {product_id}: {exc.to_dict()}")
            raise ProviderUnavailableError() from exc
        logger.info(f"[Subscriptions] Plan created: {plan.get('id')} ({freq.value} {format_amount(amount)})")
        return {"plan_id": plan.get("id"), "plan": plan}

    async def list_plans(self) -> Dict[str, Any]:
        try:
            data = await self.client.request(
                "GET", "/v1/billing/plans",
                params={"page_size": 20, "page": 1, "total_required": "true"},
                context="list-plans",
            )
        except PayPalError as exc:
            logger.error(f"[Subscriptions] list-plans FAILED: {exc.to_dict()}")
            raise ProviderUnavailableError() from exc
        return {"plans": data.get("plans") or [], "total": data.get("total_items") or 0}

    async def _plan_details(self, plan_id: str) -> Optional[PlanView]:
        try:
            return PlanView.from_payload(
                await self.client.request("GET", f"/v1/billing/plans/{plan_id}", context="get-plan")
            )
        except PayPalError as exc:
            logger.warning(f"[Subscriptions] Could not load plan {plan_id}, continuing without details: {exc}")
            return None


def apply_subscriber_fields(subscription: Subscription, view: SubscriptionView) -> None:
    subscription.subscriber_email = view.subscriber_email or subscription.subscriber_email
    subscription.subscriber_name = view.subscriber_name or subscription.subscriber_name
    subscription.start_date = view.start_time or subscription.start_date
    subscription.next_billing_date = view.next_billing_time or subscription.next_billing_date


def subscription_summary(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "subscription_id": subscription.paypal_subscription_id,
        "plan_id": subscription.paypal_plan_id,
        "member_id": subscription.member_id,
        "status": subscription.status.value,
        "plan_name": subscription.plan_name,
        "amount": format_amount(subscription.amount),
        "currency": subscription.currency,
        "frequency": subscription.frequency.value if subscription.frequency else None,
        "subscriber_email": subscription.subscriber_email,
        "next_billing_date": subscription.next_billing_date.isoformat() if subscription.next_billing_date else None,
        "cancelled_at": subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
    }
