import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.ledger import TransactionLedger
from app.models import (
    ERROR_STATUS,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionKind,
    utcnow,
)
from app.orders import format_amount
from app.payloads import dig, full_name, parse_decimal
from app.paypal_client import PayPalClient, PayPalError

logger = logging.getLogger(__name__)

SYNC_ERROR = "Could not reach PayPal API"
HIDDEN_KINDS = (TransactionKind.WEBHOOK_EVENT, TransactionKind.ERROR)


@dataclass
class HistoryPage:
    transactions: List[Dict[str, Any]]
    pagination: Dict[str, int]
    synced_from_paypal: int = 0
    newly_synced: int = 0
    sync_error: Optional[str] = None


@dataclass
class SyncResult:
    fetched: int = 0
    synced: int = 0
    sync_error: Optional[str] = None
    transaction_ids: List[str] = field(default_factory=list)


def transaction_summary(tx: Transaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "kind": tx.kind.value,
        "status": tx.status,
        "paypal_order_id": tx.paypal_order_id,
        "paypal_capture_id": tx.paypal_capture_id,
        "paypal_refund_id": tx.paypal_refund_id,
        "paypal_subscription_id": tx.paypal_subscription_id,
        "payment_id": tx.payment_id,
        "amount": format_amount(tx.amount),
        "currency": tx.currency,
        "payer_email": tx.payer_email,
        "payer_name": tx.payer_name,
        "description": tx.description,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


class ReconciliationService:
    """Pulls the provider's transaction report into the ledger and summarizes it."""

    def __init__(self, session: AsyncSession, client: PayPalClient, settings: Settings):
        self.session = session
        self.client = client
        self.settings = settings
        self.ledger = TransactionLedger(session)

    async def sync_history(self, days: int = 30) -> SyncResult:
        end = utcnow()
        start = end - timedelta(days=max(days, 1))
        params = {
            "start_date": start.isoformat(timespec="seconds"),
            "end_date": end.isoformat(timespec="seconds"),
            "fields": "all",
            "page_size": 100,
            "page": 1,
        }
        try:
            data = await self.client.request("GET", "/v1/reporting/transactions", params=params,
                                             context="payment-history")
        except PayPalError as exc:
            logger.error(f"[Reconciliation] payment-history FAILED: {exc.to_dict()}")
            return SyncResult(sync_error=SYNC_ERROR)

        details = data.get("transaction_details") or []
        result = SyncResult(fetched=len(details))
        for detail in details:
            info = detail.get("transaction_info") or {}
            transaction_id = info.get("transaction_id")
            if not transaction_id or await self._known(transaction_id):
                continue

            is_capture = str(info.get("transaction_event_code") or "").startswith("T00")
            amount = parse_decimal(dig(info, "transaction_amount", "value"))
            await self.ledger.append(
                paypal_capture_id=transaction_id if is_capture else None,
                paypal_order_id=None if is_capture else transaction_id,
                kind=TransactionKind.CAPTURE if is_capture else TransactionKind.ORDER,
                status=info.get("transaction_status") or "UNKNOWN",
                amount=abs(amount) if amount is not None else None,
                currency=dig(info, "transaction_amount", "currency_code") or self.settings.currency,
                payer_email=dig(detail, "payer_info", "email_address"),
                payer_name=full_name(dig(detail, "payer_info", "payer_name")),
                description=f"Synced: {info.get('transaction_subject') or info.get('transaction_event_code')}"[:255],
                raw_payload=detail,
            )
            result.synced += 1
            result.transaction_ids.append(transaction_id)

        await self.session.commit()
        logger.info(f"[Reconciliation] History sync: {result.synced} new transactions from {result.fetched} total")
        return result

    async def history(self, days: int = 30, page: int = 1, limit: int = 20) -> HistoryPage:
        sync = await self.sync_history(days)

        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        visible = Transaction.kind.notin_(HIDDEN_KINDS)
        total = (await self.session.execute(select(func.count(Transaction.id)).where(visible))).scalar_one()
        rows = (await self.session.execute(
            select(Transaction).where(visible)
            .order_by(Transaction.created_at.desc())
            .limit(limit).offset((page - 1) * limit)
        )).scalars().all()
        return HistoryPage(
            transactions=[transaction_summary(tx) for tx in rows],
            pagination={"total": total, "page": page, "pages": -(-total // limit)},
            synced_from_paypal=sync.fetched,
            newly_synced=sync.synced,
            sync_error=sync.sync_error,
        )

    async def transaction_stats(self) -> Dict[str, Any]:
        counts = dict((await self.session.execute(
            select(Transaction.kind, func.count(Transaction.id)).group_by(Transaction.kind)
        )).all())
        errors = (await self.session.execute(
            select(func.count(Transaction.id)).where(Transaction.status == ERROR_STATUS)
        )).scalar_one()
        captured = await self._sum(Transaction.kind == TransactionKind.CAPTURE, Transaction.status == "COMPLETED")
        refunded = await self._sum(Transaction.kind == TransactionKind.REFUND, Transaction.status != ERROR_STATUS)
        active = (await self.session.execute(
            select(func.count(Subscription.id)).where(Subscription.status == SubscriptionStatus.ACTIVE)
        )).scalar_one()
        payment_counts = dict((await self.session.execute(
            select(Payment.status, func.count(Payment.id)).group_by(Payment.status)
        )).all())
        month_start = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        revenue = await self._payment_sum(Payment.status == PaymentStatus.COMPLETED)
        monthly = await self._payment_sum(Payment.status == PaymentStatus.COMPLETED, Payment.created_at >= month_start)

        return {
            "total_orders": counts.get(TransactionKind.ORDER, 0),
            "total_captures": counts.get(TransactionKind.CAPTURE, 0),
            "total_refunds": counts.get(TransactionKind.REFUND, 0),
            "total_subscription_payments": counts.get(TransactionKind.SUBSCRIPTION_PAYMENT, 0),
            "total_webhooks": counts.get(TransactionKind.WEBHOOK_EVENT, 0),
            "total_errors": errors,
            "captured_amount": format_amount(captured),
            "refunded_amount": format_amount(refunded),
            "net_revenue": format_amount(captured - refunded),
            "active_subscriptions": active,
            "total_payments": sum(payment_counts.values()),
            "payments_by_status": {s.value: payment_counts.get(s, 0) for s in PaymentStatus},
            "payment_revenue": format_amount(revenue),
            "monthly_revenue": format_amount(monthly),
            "currency": self.settings.currency,
        }

    async def _known(self, transaction_id: str) -> bool:
        result = await self.session.execute(
            select(Transaction.id).where(or_(
                Transaction.paypal_capture_id == transaction_id,
                Transaction.paypal_order_id == transaction_id,
            )).limit(1)
        )
        return result.first() is not None

    async def _sum(self, *conditions) -> Decimal:
        total = (await self.session.execute(select(func.sum(Transaction.amount)).where(*conditions))).scalar()
        return Decimal(total or 0)

    async def _payment_sum(self, *conditions) -> Decimal:
        total = (await self.session.execute(select(func.sum(Payment.amount)).where(*conditions))).scalar()
        return Decimal(total or 0)
