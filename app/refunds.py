import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.audit import RequestContext, record_audit
from app.config import Settings
from app.errors import (
    AlreadyRefundedError,
    PaymentConflictError,
    PaymentNotFoundError,
    PaymentValidationError,
    ProviderUnavailableError,
)
from app.ledger import TransactionLedger
from app.models import Payment, PaymentStatus, TransactionKind, utcnow
from app.orders import format_amount, validate_amount
from app.payloads import RefundView
from app.paypal_client import PayPalClient, PayPalError

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Admin initiated refund"


@dataclass
class RefundResult:
    refund_id: Optional[str]
    capture_id: str
    payment_id: Optional[str]
    status: Optional[str]
    amount: Optional[str]
    currency: Optional[str]


class RefundService:
    def __init__(self, session: AsyncSession, client: PayPalClient, settings: Settings,
                 context: Optional[RequestContext] = None):
        self.session = session
        self.client = client
        self.settings = settings
        self.context = context or RequestContext()
        self.ledger = TransactionLedger(session)

    async def refund(self, capture_id: str, amount: Any = None, reason: Optional[str] = None,
                     note: Optional[str] = None) -> RefundResult:
        capture_tx = await self.ledger.find_by_external_id(TransactionKind.CAPTURE, capture_id, status="COMPLETED")
        if capture_tx is None:
            raise PaymentNotFoundError("Capture transaction not found")

        existing = await self.ledger.find_refund_for_capture(capture_id)
        if existing is not None:
            raise AlreadyRefundedError(refund_id=existing.paypal_refund_id)

        payment = await self.session.get(Payment, capture_tx.payment_id) if capture_tx.payment_id else None
        if payment is not None and payment.status == PaymentStatus.REFUNDED:
            raise AlreadyRefundedError(refund_id=(payment.meta or {}).get("refund_id"))

        body = {}
        partial = None
        if amount is not None and amount != "":
            partial = validate_amount(amount, self.settings.currency)
            if capture_tx.amount is not None and partial > capture_tx.amount:
                raise PaymentValidationError(
                    f"Refund amount exceeds captured amount of {format_amount(capture_tx.amount)}"
                )
            body["amount"] = {"value": format_amount(partial), "currency_code": capture_tx.currency
                              or self.settings.currency}
        if note:
            body["note_to_payer"] = note[:255]

        try:
            refund = RefundView.from_payload(
                await self.client.request("POST", f"/v2/payments/captures/{capture_id}/refund", body,
                                          context="refund",
                                          request_id=self.client.operation_request_id("refund", capture_id))
            )
        except PayPalError as exc:
            logger.error(f"[Refunds] refund FAILED for capture {capture_id}: {exc.to_dict()}")
            raise ProviderUnavailableError(payment_id=capture_tx.payment_id) from exc

        reason = reason or DEFAULT_REFUND_REASON
        refunded_amount = refund.amount or partial or capture_tx.amount
        try:
            await self.ledger.append(
                paypal_order_id=capture_tx.paypal_order_id,
                paypal_capture_id=capture_id,
                paypal_refund_id=refund.refund_id,
                payment_id=capture_tx.payment_id,
                member_id=capture_tx.member_id,
                user_id=self.context.user_id,
                kind=TransactionKind.REFUND,
                status=refund.status or "COMPLETED",
                amount=refunded_amount,
                currency=refund.currency or capture_tx.currency or self.settings.currency,
                description=f"Refund: {reason}"[:255],
                raw_payload=refund.raw,
                ip_address=self.context.ip_address,
            )
        except IntegrityError:
            await self.session.rollback()
            existing = await self.ledger.find_refund_for_capture(capture_id)
            logger.warning(f"[Refunds] Capture {capture_id} was refunded concurrently, not recording twice")
            raise AlreadyRefundedError(refund_id=existing.paypal_refund_id if existing else refund.refund_id)

        if payment is not None:
            if payment.can_transition(PaymentStatus.REFUNDED):
                payment.transition_to(PaymentStatus.REFUNDED)
                payment.refund_reason = reason
                payment.refunded_at = utcnow()
            else:
                logger.warning(f"[Refunds] Payment {payment.id} is {payment.status.value}, status left unchanged")
            payment.merge_meta(refund_id=refund.refund_id, refund_status=refund.status)

        await record_audit(self.session, self.context, "PAYPAL_REFUND", "Payment", capture_tx.payment_id,
                           {"capture_id": capture_id, "refund_id": refund.refund_id,
                            "amount": format_amount(refunded_amount), "reason": reason})
        await self.session.commit()

        logger.info(f"[Refunds] Refund completed: {refund.refund_id} for capture {capture_id}")
        return RefundResult(
            refund_id=refund.refund_id,
            capture_id=capture_id,
            payment_id=capture_tx.payment_id,
            status=refund.status,
            amount=format_amount(refunded_amount),
            currency=refund.currency or capture_tx.currency,
        )

    async def refund_payment(self, payment_id: str, reason: Optional[str] = None) -> RefundResult:
        """Refund a completed payment in full, resolving its capture from the ledger."""
        payment = await self.session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFoundError()
        if payment.status == PaymentStatus.REFUNDED:
            raise AlreadyRefundedError(refund_id=(payment.meta or {}).get("refund_id"))
        if payment.status != PaymentStatus.COMPLETED:
            raise PaymentConflictError("Only completed payments can be refunded")

        capture_tx = await self.ledger.find_capture_for_payment(payment.id)
        if capture_tx is None or not capture_tx.paypal_capture_id:
            raise PaymentNotFoundError("No PayPal capture recorded for this payment")
        return await self.refund(capture_tx.paypal_capture_id, reason=reason)
