"""Decode verified Stripe webhook payloads into typed settlement events.

Stripe payloads are loosely typed JSON; everything the settlement engine
needs is pulled out and validated here, so a malformed event never reaches
the database layer.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Union

from pdf2md.catalog import TierId
from pdf2md.exceptions import InvalidAmount, MissingMetadata
from pdf2md.models import SubscriptionStatus

CENTS = Decimal("0.01")

# Stripe subscription status -> local status; unmapped values leave the record alone
STATUS_MAP = {
    'active': SubscriptionStatus.ACTIVE,
    'trialing': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'canceled': SubscriptionStatus.CANCELED,
    'incomplete_expired': SubscriptionStatus.CANCELED,
    'unpaid': SubscriptionStatus.UNPAID,
}


@dataclass(frozen=True)
class CreditsPurchased:
    event_id: str
    user_id: str
    credits: int
    transaction_id: str
    amount: Decimal
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionPurchased:
    event_id: str
    user_id: str
    tier_id: TierId
    transaction_id: str
    amount: Decimal
    pages_per_month: Optional[int] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    subscription_id: str
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    tier_id: Optional[TierId] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription_id: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    user_id: str
    transaction_id: str
    amount: Decimal


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    transaction_id: str
    amount: Decimal
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[
    CreditsPurchased,
    SubscriptionPurchased,
    SubscriptionUpdated,
    SubscriptionDeleted,
    PaymentFailed,
    InvoicePaymentFailed,
    IgnoredEvent,
]

TierLookup = Callable[[str], Optional[TierId]]


def metadata_user_id(metadata: Mapping[str, Any]) -> Optional[str]:
    """userId, or the firebaseUID key used by older checkout sessions"""
    value = metadata.get('userId') or metadata.get('firebaseUID')
    if not value:
        return None
    return str(value).strip() or None


def to_amount(minor_units: Any) -> Decimal:
    """Stripe amounts are integer cents"""
    if minor_units is None:
        return Decimal("0.00")
    if isinstance(minor_units, bool):
        raise InvalidAmount(f"Invalid amount {minor_units!r}")
    try:
        cents = Decimal(str(minor_units))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid amount {minor_units!r}")
    if cents < 0 or cents != cents.to_integral_value():
        raise InvalidAmount(f"Invalid amount {minor_units!r}")
    return (cents / 100).quantize(CENTS)


def parse_credits(value: Any, field: str = 'credits') -> int:
    if value is None or str(value).strip() == '':
        raise MissingMetadata(f"Missing {field} in metadata")
    try:
        credits = int(str(value).strip())
    except ValueError:
        raise InvalidAmount(f"Non-numeric {field} {value!r}")
    if credits <= 0:
        raise InvalidAmount(f"{field} must be positive, got {credits}")
    return credits


def parse_tier(value: Any) -> TierId:
    try:
        return TierId(str(value).strip().lower())
    except ValueError:
        raise MissingMetadata(f"Unknown tierId {value!r}")


def to_datetime(timestamp: Any) -> Optional[datetime]:
    if timestamp in (None, ''):
        return None
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        raise MissingMetadata(f"Invalid timestamp {timestamp!r}")


def _first_item(subscription: Mapping[str, Any]) -> Dict[str, Any]:
    items = (subscription.get('items') or {}).get('data') or []
    return items[0] if items else {}


def decode_checkout_completed(event_id: str, session: Mapping[str, Any], tier_lookup: TierLookup) -> WebhookEvent:
    metadata = session.get('metadata') or {}
    user_id = metadata_user_id(metadata)
    if not user_id:
        raise MissingMetadata("Missing userId in checkout session metadata")

    purchase_type = (metadata.get('type') or '').strip().lower()
    if not purchase_type:
        # Sessions created before the type discriminator existed
        purchase_type = 'subscription' if metadata.get('tierId') else 'credits'

    transaction_id = session.get('id') or event_id
    amount = to_amount(session.get('amount_total'))

    if purchase_type == 'credits':
        return CreditsPurchased(
            event_id=event_id,
            user_id=user_id,
            credits=parse_credits(metadata.get('credits')),
            transaction_id=transaction_id,
            amount=amount,
            customer_id=session.get('customer'),
        )

    if purchase_type == 'subscription':
        pages_per_month = None
        if metadata.get('tierId'):
            tier_id = parse_tier(metadata['tierId'])
            if tier_id == TierId.CUSTOM:
                pages_per_month = parse_credits(metadata.get('credits'), 'pagesPerMonth')
        elif metadata.get('credits'):
            tier_id = TierId.CUSTOM
            pages_per_month = parse_credits(metadata['credits'], 'pagesPerMonth')
        else:
            raise MissingMetadata("Missing tierId in checkout session metadata")
        return SubscriptionPurchased(
            event_id=event_id,
            user_id=user_id,
            tier_id=tier_id,
            transaction_id=transaction_id,
            amount=amount,
            pages_per_month=pages_per_month,
            customer_id=session.get('customer'),
            subscription_id=session.get('subscription'),
        )

    raise MissingMetadata(f"Unrecognised purchase type {purchase_type!r}")


def decode_subscription_updated(event_id: str, subscription: Mapping[str, Any], tier_lookup: TierLookup) -> WebhookEvent:
    metadata = subscription.get('metadata') or {}
    item = _first_item(subscription)

    # Checkout metadata survives plan changes; the current price wins
    price_id = (item.get('price') or {}).get('id')
    tier_id = tier_lookup(price_id) if price_id else None
    if tier_id is None and metadata.get('tierId'):
        tier_id = parse_tier(metadata['tierId'])

    # Newer API versions report the period on the subscription item
    period_start = subscription.get('current_period_start') or item.get('current_period_start')
    period_end = subscription.get('current_period_end') or item.get('current_period_end')

    return SubscriptionUpdated(
        event_id=event_id,
        subscription_id=subscription.get('id') or '',
        user_id=metadata_user_id(metadata),
        customer_id=subscription.get('customer'),
        status=STATUS_MAP.get(subscription.get('status') or ''),
        tier_id=tier_id,
        current_period_start=to_datetime(period_start),
        current_period_end=to_datetime(period_end),
    )


def decode_subscription_deleted(event_id: str, subscription: Mapping[str, Any], tier_lookup: TierLookup) -> WebhookEvent:
    return SubscriptionDeleted(
        event_id=event_id,
        subscription_id=subscription.get('id') or '',
        user_id=metadata_user_id(subscription.get('metadata') or {}),
    )


def decode_payment_failed(event_id: str, intent: Mapping[str, Any], tier_lookup: TierLookup) -> WebhookEvent:
    user_id = metadata_user_id(intent.get('metadata') or {})
    if not user_id:
        raise MissingMetadata("Missing userId in payment intent metadata")
    return PaymentFailed(
        event_id=event_id,
        user_id=user_id,
        transaction_id=intent.get('id') or event_id,
        amount=to_amount(intent.get('amount')),
    )


def decode_invoice_payment_failed(event_id: str, invoice: Mapping[str, Any], tier_lookup: TierLookup) -> WebhookEvent:
    details = invoice.get('subscription_details') or {}
    parent_details = (invoice.get('parent') or {}).get('subscription_details') or {}
    subscription_id = invoice.get('subscription') or details.get('subscription') or parent_details.get('subscription')
    user_id = (
        metadata_user_id(details.get('metadata') or {})
        or metadata_user_id(parent_details.get('metadata') or {})
        or metadata_user_id(invoice.get('metadata') or {})
    )
    return InvoicePaymentFailed(
        event_id=event_id,
        transaction_id=invoice.get('id') or event_id,
        amount=to_amount(invoice.get('amount_due')),
        subscription_id=subscription_id,
        user_id=user_id,
    )


DECODERS = {
    'checkout.session.completed': decode_checkout_completed,
    'customer.subscription.updated': decode_subscription_updated,
    'customer.subscription.deleted': decode_subscription_deleted,
    'payment_intent.payment_failed': decode_payment_failed,
    'invoice.payment_failed': decode_invoice_payment_failed,
}


def decode_event(event: Mapping[str, Any], tier_lookup: TierLookup = None) -> WebhookEvent:
    """
    Turn a verified Stripe event into one of the typed settlement events.

    Unknown event types decode to IgnoredEvent. Recognised events with
    missing or malformed metadata raise MissingMetadata / InvalidAmount.
    """
    event_id = event.get('id') or ''
    event_type = event.get('type') or ''
    decoder = DECODERS.get(event_type)
    if decoder is None:
        return IgnoredEvent(event_id=event_id, event_type=event_type)
    if not event_id:
        raise MissingMetadata("Event id missing")

    obj = (event.get('data') or {}).get('object') or {}
    return decoder(event_id, obj, tier_lookup or (lambda price_id: None))
