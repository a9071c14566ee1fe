"""
Typed views over PayPal JSON payloads.

Only the fields this service reads are lifted out. Parsing is tolerant:
absent or malformed fields become ``None`` instead of raising, and every view
keeps the untouched payload in ``raw`` for the ledger.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def dig(data: Any, *path, default=None):
    """Walk nested dicts/lists; ints index lists, strings index dicts."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return default
        elif not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return default if current is None else current


def parse_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def parse_datetime(value) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def full_name(name: Any) -> Optional[str]:
    joined = f"{dig(name, 'given_name', default='')} {dig(name, 'surname', default='')}".strip()
    return joined or None


def find_link(links: Any, *rels: str) -> Optional[str]:
    for link in links if isinstance(links, list) else []:
        if isinstance(link, dict) and link.get("rel") in rels:
            return link.get("href")
    return None


@dataclass
class OrderView:
    order_id: Optional[str]
    status: Optional[str]
    approve_url: Optional[str]
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> "OrderView":
        return cls(
            order_id=dig(data, "id"),
            status=dig(data, "status"),
            approve_url=find_link(dig(data, "links"), "approve", "payer-action"),
            raw=data if isinstance(data, dict) else {},
        )


@dataclass
class CaptureView:
    order_id: Optional[str]
    capture_id: Optional[str]
    capture_status: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    payer_email: Optional[str]
    payer_name: Optional[str]
    payer_country: Optional[str]
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def from_order_payload(cls, data: Any) -> "CaptureView":
        """Read the first capture out of a captured (or fetched) order."""
        capture = dig(data, "purchase_units", 0, "payments", "captures", 0, default={})
        return cls(
            order_id=dig(data, "id"),
            capture_id=dig(capture, "id"),
            capture_status=dig(capture, "status"),
            amount=parse_decimal(dig(capture, "amount", "value")),
            currency=dig(capture, "amount", "currency_code"),
            payer_email=dig(data, "payer", "email_address"),
            payer_name=full_name(dig(data, "payer", "name")),
            payer_country=dig(data, "payer", "address", "country_code"),
            raw=data if isinstance(data, dict) else {},
        )


@dataclass
class RefundView:
    refund_id: Optional[str]
    status: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> "RefundView":
        return cls(
            refund_id=dig(data, "id"),
            status=dig(data, "status"),
            amount=parse_decimal(dig(data, "amount", "value")),
            currency=dig(data, "amount", "currency_code"),
            raw=data if isinstance(data, dict) else {},
        )


@dataclass
class PlanView:
    plan_id: Optional[str]
    name: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    interval_unit: Optional[str]
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> "PlanView":
        cycles = dig(data, "billing_cycles", default=[])
        regular = next(
            (c for c in cycles if isinstance(c, dict) and c.get("tenure_type") == "REGULAR"),
            dig(cycles, 0, default={}),
        )
        return cls(
            plan_id=dig(data, "id"),
            name=dig(data, "name"),
            amount=parse_decimal(dig(regular, "pricing_scheme", "fixed_price", "value")),
            currency=dig(regular, "pricing_scheme", "fixed_price", "currency_code"),
            interval_unit=dig(regular, "frequency", "interval_unit"),
            raw=data if isinstance(data, dict) else {},
        )


@dataclass
class SubscriptionView:
    subscription_id: Optional[str]
    status: Optional[str]
    plan_id: Optional[str]
    approval_url: Optional[str]
    subscriber_email: Optional[str]
    subscriber_name: Optional[str]
    start_time: Optional[datetime]
    next_billing_time: Optional[datetime]
    last_payment_amount: Optional[Decimal]
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> "SubscriptionView":
        return cls(
            subscription_id=dig(data, "id"),
            status=dig(data, "status"),
            plan_id=dig(data, "plan_id"),
            approval_url=find_link(dig(data, "links"), "approve"),
            subscriber_email=dig(data, "subscriber", "email_address"),
            subscriber_name=full_name(dig(data, "subscriber", "name")),
            start_time=parse_datetime(dig(data, "start_time")),
            next_billing_time=parse_datetime(dig(data, "billing_info", "next_billing_time")),
            last_payment_amount=parse_decimal(dig(data, "billing_info", "last_payment", "amount", "value")),
            raw=data if isinstance(data, dict) else {},
        )


# Capture and refund resources, then v1 sales, then subscription resources
AMOUNT_PATHS = (
    ("amount", "value"),
    ("amount", "total"),
    ("billing_info", "last_payment", "amount", "value"),
)


@dataclass
class WebhookEvent:
    event_id: str
    event_type: str
    resource: dict
    raw: dict = field(repr=False, default_factory=dict)

    @classmethod
    def parse(cls, body: Any) -> Optional["WebhookEvent"]:
        """Return an event when ``body`` carries an id and an event type, else None."""
        event_id = dig(body, "id")
        event_type = dig(body, "event_type")
        if not isinstance(event_id, str) or not isinstance(event_type, str) or not event_id or not event_type:
            return None
        resource = dig(body, "resource", default={})
        return cls(
            event_id=event_id,
            event_type=event_type,
            resource=resource if isinstance(resource, dict) else {},
            raw=body,
        )

    @property
    def resource_id(self) -> Optional[str]:
        return dig(self.resource, "id")

    @property
    def related_order_id(self) -> Optional[str]:
        return dig(self.resource, "supplementary_data", "related_ids", "order_id")

    @property
    def billing_agreement_id(self) -> Optional[str]:
        return dig(self.resource, "billing_agreement_id")

    @property
    def amount(self) -> Optional[Decimal]:
        for path in AMOUNT_PATHS:
            amount = parse_decimal(dig(self.resource, *path))
            if amount is not None:
                return amount
        return None

    @property
    def currency(self) -> Optional[str]:
        return (
            dig(self.resource, "amount", "currency_code")
            or dig(self.resource, "amount", "currency")
            or dig(self.resource, "billing_info", "last_payment", "amount", "currency_code")
        )

    @property
    def payer_email(self) -> Optional[str]:
        return dig(self.resource, "payer", "email_address") or dig(self.resource, "subscriber", "email_address")

    def subscription_view(self) -> SubscriptionView:
        return SubscriptionView.from_payload(self.resource)
