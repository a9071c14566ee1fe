import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import ERROR_STATUS, Transaction, TransactionKind
from app.paypal_client import ErrorRecorder, PayPalError

logger = logging.getLogger(__name__)

EXTERNAL_ID_COLUMNS = {
    TransactionKind.ORDER: Transaction.paypal_order_id,
    TransactionKind.CAPTURE: Transaction.paypal_capture_id,
    TransactionKind.REFUND: Transaction.paypal_refund_id,
    TransactionKind.SUBSCRIPTION_PAYMENT: Transaction.paypal_subscription_id,
    TransactionKind.WEBHOOK_EVENT: Transaction.webhook_event_id,
}


class TransactionLedger:
    """Append-only access to ``paypal_transactions``."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, **fields) -> Transaction:
        entry = Transaction(**fields)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def find_by_external_id(
        self, kind: TransactionKind, external_id: str, status: Optional[str] = None
    ) -> Optional[Transaction]:
        column = EXTERNAL_ID_COLUMNS[kind]
        stmt = select(Transaction).where(Transaction.kind == kind, column == external_id)
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        result = await self.session.execute(stmt.order_by(Transaction.created_at).limit(1))
        return result.scalars().first()

    async def exists_by_webhook_event_id(self, event_id: str) -> bool:
        result = await self.session.execute(
            select(Transaction.id).where(Transaction.webhook_event_id == event_id).limit(1)
        )
        return result.first() is not None

    async def find_completed_capture(self, order_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.kind == TransactionKind.CAPTURE,
                Transaction.paypal_order_id == order_id,
                Transaction.status == "COMPLETED",
            )
            .limit(1)
        )
        return result.scalars().first()

    async def find_capture_for_payment(self, payment_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.kind == TransactionKind.CAPTURE,
                Transaction.payment_id == payment_id,
                Transaction.status == "COMPLETED",
            )
            .limit(1)
        )
        return result.scalars().first()

    async def find_refund_for_capture(self, capture_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.kind == TransactionKind.REFUND,
                Transaction.paypal_capture_id == capture_id,
                Transaction.status != ERROR_STATUS,
            )
            .limit(1)
        )
        return result.scalars().first()

    async def find_subscription_payment(self, sale_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.kind == TransactionKind.SUBSCRIPTION_PAYMENT,
                Transaction.paypal_capture_id == sale_id,
            )
            .limit(1)
        )
        return result.scalars().first()

    async def append_webhook_event(self, event_id: str, **fields) -> Optional[Transaction]:
        """Store an inbound event and commit; None when another delivery stored it first.

        Must run with no other pending work in the session: a lost race rolls
        the whole session back.
        """
        entry = Transaction(kind=TransactionKind.WEBHOOK_EVENT, webhook_event_id=event_id, **fields)
        self.session.add(entry)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info(f"[Ledger] Webhook event {event_id} stored concurrently, skipping")
            return None
        return entry


def error_entry(context: str, error: Exception, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    extra = dict(extra or {})
    if isinstance(error, PayPalError):
        payload = {"context": context, **error.to_dict(), **extra}
    else:
        payload = {"context": context, "message": str(error), "type": type(error).__name__, **extra}
    return {
        "kind": TransactionKind.ERROR,
        "status": ERROR_STATUS,
        "description": f"Error in {context}: {error}"[:255],
        "error_payload": payload,
        "last_error": str(error),
        "retry_count": extra.get("attempt", 0) or 0,
    }


def make_error_recorder(session_factory: async_sessionmaker) -> ErrorRecorder:
    """Recorder that writes each PSP failure as an error row in its own session."""

    async def record(context: str, error: PayPalError, extra: Dict[str, Any]) -> None:
        async with session_factory() as session:
            await TransactionLedger(session).append(**error_entry(context, error, extra))
            await session.commit()

    return record
