import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import RequestContext, record_audit
from app.config import Settings
from app.errors import PaymentConflictError, PaymentNotFoundError, PaymentValidationError, ProviderUnavailableError
from app.ledger import TransactionLedger
from app.models import Payment, PaymentKind, PaymentStatus, Transaction, TransactionKind
from app.payloads import CaptureView, OrderView
from app.paypal_client import PayPalClient, PayPalError

logger = logging.getLogger(__name__)

MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("99999.99")
CENTS = Decimal("0.01")
DEFAULT_DESCRIPTION = "Donation"
MANUAL_PAYER_NAME = "Manual Entry"


def validate_amount(value: Any, currency: str = "EUR") -> Decimal:
    """Parse ``value`` as a two-decimal amount within the accepted range."""
    if isinstance(value, bool) or value is None:
        raise PaymentValidationError(f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT} {currency}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise PaymentValidationError(f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT} {currency}")
    if not amount.is_finite() or amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        raise PaymentValidationError(f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT} {currency}")
    if amount != amount.quantize(CENTS, rounding=ROUND_HALF_UP):
        raise PaymentValidationError("Amount must have at most two decimal places")
    return amount.quantize(CENTS)


def format_amount(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(Decimal(value).quantize(CENTS))


async def payment_for_order(session: AsyncSession, order_id: str) -> Optional[Payment]:
    result = await session.execute(select(Payment).where(Payment.paypal_order_id == order_id).limit(1))
    return result.scalars().first()


@dataclass
class OrderResult:
    order_id: str
    payment_id: str
    status: Optional[str]
    approve_url: Optional[str] = None


@dataclass
class CaptureResult:
    status: str
    order_id: str
    payment_id: Optional[str]
    capture_id: Optional[str]
    amount: Optional[str]
    currency: Optional[str]
    capture_status: Optional[str] = None


class OrderService:
    def __init__(self, session: AsyncSession, client: PayPalClient, settings: Settings,
                 context: Optional[RequestContext] = None):
        self.session = session
        self.client = client
        self.settings = settings
        self.context = context or RequestContext()
        self.ledger = TransactionLedger(session)

    async def create_order(self, amount: Any, description: Optional[str] = None,
                           member_id: Optional[str] = None) -> OrderResult:
        amount = validate_amount(amount, self.settings.currency)
        description = description or DEFAULT_DESCRIPTION
        order_body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": self.settings.currency, "value": format_amount(amount)},
                "description": description[:127],
                "custom_id": f"{self.settings.paypal_request_prefix}_{self.context.user_id or 'anon'}_{uuid4().hex[:12]}",
            }],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "brand_name": self.settings.brand_name,
                        "locale": self.settings.locale,
                        "landing_page": "NO_PREFERENCE",
                        "user_action": "PAY_NOW",
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                    }
                }
            },
        }

        try:
            order = OrderView.from_payload(
                await self.client.request("POST", "/v2/checkout/orders", order_body, context="create-order")
            )
            if not order.order_id:
                raise PayPalError("create-order response carries no order id", payload=order.raw)
        except PayPalError as exc:
            logger.error(f"[Orders] create-order FAILED for {amount} {self.settings.currency}: {exc.to_dict()}")
            failed = Payment(
                member_id=member_id,
                amount=amount,
                currency=self.settings.currency,
                kind=PaymentKind.ONE_TIME,
                status=PaymentStatus.FAILED,
                description="Failed PayPal order creation",
                last_error=json.dumps(exc.payload if exc.payload is not None else exc.message, default=str),
                retry_count=max(exc.attempts - 1, 0),
            )
            self.session.add(failed)
            await self.session.commit()
            raise ProviderUnavailableError(payment_id=failed.id) from exc

        payment = Payment(
            member_id=member_id,
            paypal_order_id=order.order_id,
            amount=amount,
            currency=self.settings.currency,
            kind=PaymentKind.ONE_TIME,
            status=PaymentStatus.PENDING,
            description=description,
            meta={"paypal_order_status": order.status, "approve_url": order.approve_url},
        )
        self.session.add(payment)
        await self.session.flush()

        await self.ledger.append(
            paypal_order_id=order.order_id,
            payment_id=payment.id,
            member_id=member_id,
            user_id=self.context.user_id,
            kind=TransactionKind.ORDER,
            status=order.status or "CREATED",
            amount=amount,
            currency=self.settings.currency,
            description=description,
            raw_payload=order.raw,
            ip_address=self.context.ip_address,
        )
        await record_audit(self.session, self.context, "PAYPAL_CREATE_ORDER", "Payment", payment.id,
                           {"amount": format_amount(amount), "order_id": order.order_id,
                            "currency": self.settings.currency})
        await self.session.commit()

        logger.info(f"[Orders] Order created: {order.order_id} for {format_amount(amount)} {self.settings.currency}")
        return OrderResult(order_id=order.order_id, payment_id=payment.id, status=order.status,
                           approve_url=order.approve_url)

    async def capture_order(self, order_id: str) -> CaptureResult:
        if not order_id:
            raise PaymentValidationError("Order ID required")

        existing = await self.ledger.find_completed_capture(order_id)
        if existing is not None:
            logger.info(f"[Orders] Order {order_id} already captured as {existing.paypal_capture_id}")
            return self._already_captured(order_id, existing)

        payment = await payment_for_order(self.session, order_id)
        if payment is None:
            raise PaymentNotFoundError("Order not found in our records")
        if payment.status == PaymentStatus.COMPLETED:
            return CaptureResult(
                status="already_captured",
                order_id=order_id,
                payment_id=payment.id,
                capture_id=(payment.meta or {}).get("capture_id"),
                amount=format_amount(payment.amount),
                currency=payment.currency,
            )
        if payment.status != PaymentStatus.PENDING:
            raise PaymentConflictError(f"Payment is {payment.status.value} and cannot be captured")

        try:
            data = await self._capture_or_fetch(order_id)
        except PayPalError as exc:
            logger.error(f"[Orders] capture-order FAILED for {order_id} (payment {payment.id}): {exc.to_dict()}")
            payment.retry_count = (payment.retry_count or 0) + 1
            payment.last_error = json.dumps(exc.payload if exc.payload is not None else exc.message, default=str)
            await self.session.commit()
            raise ProviderUnavailableError(payment_id=payment.id) from exc

        # A webhook may have recorded the capture while the call was in flight
        await self.session.refresh(payment)
        existing = await self.ledger.find_completed_capture(order_id)
        if existing is not None:
            return self._already_captured(order_id, existing)

        capture = CaptureView.from_order_payload(data)
        self._check_capture(payment, capture)

        capture_status = (capture.capture_status or "COMPLETED").upper()
        if capture_status == "COMPLETED":
            self._move(payment, PaymentStatus.COMPLETED)
            payment.payer_email = capture.payer_email
            payment.payer_name = capture.payer_name
        elif capture_status in ("DECLINED", "FAILED"):
            self._move(payment, PaymentStatus.FAILED)
            payment.last_error = f"Capture {capture.capture_id} {capture_status}"
        payment.ipn_data = capture.raw
        payment.merge_meta(
            capture_id=capture.capture_id,
            capture_status=capture_status,
            captured_amount=format_amount(capture.amount),
            captured_currency=capture.currency,
            payer_country=capture.payer_country,
        )

        try:
            await self.ledger.append(
                paypal_order_id=order_id,
                paypal_capture_id=capture.capture_id,
                payment_id=payment.id,
                member_id=payment.member_id,
                user_id=self.context.user_id,
                kind=TransactionKind.CAPTURE,
                status=capture_status,
                amount=capture.amount,
                currency=capture.currency or self.settings.currency,
                payer_email=capture.payer_email,
                payer_name=capture.payer_name,
                description=f"Captured order {order_id}",
                raw_payload=capture.raw,
                ip_address=self.context.ip_address,
            )
        except IntegrityError:
            # A concurrent capture or webhook committed the completed capture first
            await self.session.rollback()
            existing = await self.ledger.find_completed_capture(order_id)
            if existing is None:
                raise
            logger.info(f"[Orders] Order {order_id} captured concurrently as {existing.paypal_capture_id}")
            return self._already_captured(order_id, existing)
        await record_audit(self.session, self.context, "PAYPAL_CAPTURE_ORDER", "Payment", payment.id,
                           {"order_id": order_id, "capture_id": capture.capture_id,
                            "amount": format_amount(capture.amount), "status": payment.status.value})
        await self.session.commit()

        logger.info(f"[Orders] Order captured: {order_id} -> capture {capture.capture_id} ({capture_status})")
        return CaptureResult(
            status=payment.status.value,
            order_id=order_id,
            payment_id=payment.id,
            capture_id=capture.capture_id,
            amount=format_amount(capture.amount),
            currency=capture.currency,
            capture_status=capture_status,
        )

    async def list_payments(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        member_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        conditions = []
        if status:
            conditions.append(Payment.status == _parse_choice(PaymentStatus, status, "payment status"))
        if kind:
            conditions.append(Payment.kind == _parse_choice(PaymentKind, kind, "payment type"))
        if member_id:
            conditions.append(Payment.member_id == member_id)
        if start_date is not None:
            conditions.append(Payment.created_at >= start_date)
        if end_date is not None:
            conditions.append(Payment.created_at <= end_date)

        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        total = (await self.session.execute(select(func.count(Payment.id)).where(*conditions))).scalar_one()
        rows = (await self.session.execute(
            select(Payment).where(*conditions)
            .order_by(Payment.created_at.desc())
            .limit(limit).offset((page - 1) * limit)
        )).scalars().all()
        return {
            "payments": [payment_summary(p) for p in rows],
            "pagination": {"total": total, "page": page, "limit": limit, "pages": -(-total // limit)},
        }

    async def record_manual_payment(self, amount: Any, member_id: Optional[str] = None,
                                    description: Optional[str] = None, kind: Optional[str] = None) -> Dict[str, Any]:
        """Book a payment received outside PayPal (cash, bank transfer) as completed."""
        amount = validate_amount(amount, self.settings.currency)
        kind = _parse_choice(PaymentKind, kind, "payment type") if kind else PaymentKind.ONE_TIME
        if kind == PaymentKind.REFUND:
            raise PaymentValidationError("Manual payments cannot be refunds")

        payment = Payment(
            member_id=member_id,
            amount=amount,
            currency=self.settings.currency,
            kind=kind,
            status=PaymentStatus.COMPLETED,
            description=description,
            payer_name=MANUAL_PAYER_NAME,
            meta={"manual": True},
        )
        self.session.add(payment)
        await self.session.flush()
        await record_audit(self.session, self.context, "MANUAL_PAYMENT", "Payment", payment.id,
                           {"amount": format_amount(amount), "member_id": member_id})
        await self.session.commit()

        logger.info(f"[Orders] Manual payment recorded: {payment.id} for {format_amount(amount)} "
                    f"{self.settings.currency}")
        return payment_summary(payment)

    async def _capture_or_fetch(self, order_id: str) -> Any:
        try:
            return await self.client.request("POST", f"/v2/checkout/orders/{order_id}/capture",
                                             context="capture-order",
                                             request_id=self.client.operation_request_id("capture", order_id))
        except PayPalError as exc:
            if exc.issue != "ORDER_ALREADY_CAPTURED":
                raise
            logger.warning(f"[Orders] PayPal reports {order_id} already captured, reconciling from order details")
            return await self.client.request("GET", f"/v2/checkout/orders/{order_id}", context="get-order")

    def _check_capture(self, payment: Payment, capture: CaptureView) -> None:
        # TODO: confirm with finance whether a foreign-currency capture should be refunded automatically
        if capture.currency and capture.currency != self.settings.currency:
            logger.warning(
                f"[Orders] Currency mismatch on order {payment.paypal_order_id}: "
                f"expected {self.settings.currency}, got {capture.currency}"
            )
        if capture.amount is not None and capture.amount != payment.amount:
            logger.warning(
                f"[Orders] Amount mismatch on order {payment.paypal_order_id}: "
                f"expected {format_amount(payment.amount)}, captured {format_amount(capture.amount)}"
            )

    @staticmethod
    def _move(payment: Payment, status: PaymentStatus) -> None:
        if payment.status == status:
            return
        if not payment.can_transition(status):
            logger.warning(f"[Orders] Payment {payment.id} is {payment.status.value}, not moving to {status.value}")
            return
        payment.transition_to(status)

    @staticmethod
    def _already_captured(order_id: str, capture: Transaction) -> CaptureResult:
        return CaptureResult(
            status="already_captured",
            order_id=order_id,
            payment_id=capture.payment_id,
            capture_id=capture.paypal_capture_id,
            amount=format_amount(capture.amount),
            currency=capture.currency,
            capture_status=capture.status,
        )


def _parse_choice(enum_cls, value: str, label: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise PaymentValidationError(f"Unknown {label} {value!r}")


def payment_summary(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "member_id": payment.member_id,
        "paypal_order_id": payment.paypal_order_id,
        "paypal_subscription_id": payment.paypal_subscription_id,
        "amount": format_amount(payment.amount),
        "currency": payment.currency,
        "kind": payment.kind.value,
        "status": payment.status.value,
        "description": payment.description,
        "payer_name": payment.payer_name,
        "payer_email": payment.payer_email,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }
