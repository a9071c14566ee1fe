import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text, event, text
from sqlalchemy.orm import validates

from app.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(enum_cls, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        **kwargs
    )


class PaymentKind(str, enum.Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"
    SUBSCRIPTION = "subscription"
    REFUND = "refund"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TransactionKind(str, enum.Enum):
    ORDER = "order"
    CAPTURE = "capture"
    REFUND = "refund"
    SUBSCRIPTION_PAYMENT = "subscription_payment"
    WEBHOOK_EVENT = "webhook_event"
    ERROR = "error"


class SubscriptionStatus(str, enum.Enum):
    APPROVAL_PENDING = "approval_pending"
    APPROVED = "approved"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def from_provider(cls, value):
        """Map a provider status such as ``APPROVAL_PENDING`` to a member, or None."""
        if not value:
            return None
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class BillingFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
}

TERMINAL_SUBSCRIPTION_STATES = {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}

ERROR_STATUS = "ERROR"


class InvalidStatusTransition(ValueError):
    pass


class LedgerImmutableError(RuntimeError):
    pass


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    member_id = Column(String(36), nullable=True, index=True)
    paypal_order_id = Column(String, nullable=True, index=True)
    paypal_subscription_id = Column(String, nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    kind = _enum_column(PaymentKind, nullable=False, default=PaymentKind.ONE_TIME)
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING, index=True)
    description = Column(String, nullable=True)
    payer_email = Column(String, nullable=True)
    payer_name = Column(String, nullable=True)
    ipn_data = Column(JSON, nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @validates("amount")
    def _validate_amount(self, key, value):
        value = Decimal(str(value)) if value is not None else None
        if (
            self.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
            and self.amount is not None
            and value != Decimal(str(self.amount))
        ):
            raise InvalidStatusTransition(f"Amount of {self.status.value} payment {self.id} is immutable")
        return value

    def can_transition(self, new_status: PaymentStatus) -> bool:
        return new_status in PAYMENT_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: PaymentStatus) -> bool:
        """Move to ``new_status``; returns False when already there."""
        if self.status == new_status:
            return False
        if not self.can_transition(new_status):
            raise InvalidStatusTransition(
                f"Payment {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status
        return True

    def merge_meta(self, **values) -> None:
        self.meta = {**(self.meta or {}), **values}


class Subscription(Base):
    __tablename__ = "paypal_subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    paypal_subscription_id = Column(String, nullable=False, unique=True, index=True)
    paypal_plan_id = Column(String, nullable=False, index=True)
    member_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)
    status = _enum_column(SubscriptionStatus, nullable=False, default=SubscriptionStatus.APPROVAL_PENDING, index=True)
    plan_name = Column(String, nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="EUR")
    frequency = _enum_column(BillingFrequency, nullable=False, default=BillingFrequency.MONTHLY)
    subscriber_email = Column(String, nullable=True)
    subscriber_name = Column(String, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    approval_url = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    last_webhook_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBSCRIPTION_STATES

    def apply_status(self, new_status: SubscriptionStatus) -> bool:
        """Set ``new_status`` unless the subscription already ended. Returns True on change."""
        if new_status is None or self.status == new_status:
            return False
        if self.is_terminal:
            return False
        self.status = new_status
        return True


class Transaction(Base):
    __tablename__ = "paypal_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    paypal_order_id = Column(String, nullable=True, index=True)
    paypal_capture_id = Column(String, nullable=True, index=True)
    paypal_refund_id = Column(String, nullable=True)
    paypal_subscription_id = Column(String, nullable=True, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True, index=True)
    member_id = Column(String(36), nullable=True)
    user_id = Column(String(36), nullable=True)
    kind = _enum_column(TransactionKind, nullable=False, default=TransactionKind.ORDER, index=True)
    status = Column(String, nullable=False, default="CREATED", index=True)
    amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    payer_email = Column(String, nullable=True)
    payer_name = Column(String, nullable=True)
    description = Column(String, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    error_payload = Column(JSON, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    webhook_event_id = Column(String, nullable=True, unique=True)
    webhook_event_type = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    # At most one completed capture per order and one live refund per capture
    __table_args__ = (
        Index(
            "uq_completed_capture_per_order",
            "paypal_order_id",
            unique=True,
            sqlite_where=text("kind = 'capture' AND status = 'COMPLETED'"),
            postgresql_where=text("kind = 'capture' AND status = 'COMPLETED'"),
        ),
        Index(
            "uq_refund_per_capture",
            "paypal_capture_id",
            unique=True,
            sqlite_where=text("kind = 'refund' AND status != 'ERROR'"),
            postgresql_where=text("kind = 'refund' AND status != 'ERROR'"),
        ),
    )


@event.listens_for(Transaction, "before_update")
def _refuse_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Transaction {target.id} is append-only")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=True)
    action = Column(String, nullable=False)
    entity = Column(String, nullable=False)
    entity_id = Column(String(36), nullable=True)
    new_values = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
