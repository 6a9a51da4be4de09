"""
Database Models

Key Models:
- CreditBalance: one-time purchased pages, one row per user
- Subscription: monthly tier allotment and usage, one row per user
- PaymentHistory: append-only record of every terminal payment outcome
- ProcessedWebhookEvent: Stripe event ids already settled (exactly-once)
- PageUsage: pages consumed by conversions

Users are owned by Firebase Auth and referenced by uid only.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import enum

from sqlalchemy import event
from pdf2md import db
from pdf2md.catalog import TierId, find_tier

BILLING_PERIOD = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


class SubscriptionStatus(enum.Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"


class PaymentStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CreditBalance(db.Model):
    __tablename__ = 'credit_balances'
    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_credit_balances_non_negative'),
    )

    user_id = db.Column(db.String(128), primary_key=True)
    balance = db.Column(db.Integer, nullable=False, default=0)
    last_updated = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'balance': max(0, self.balance or 0),
            'lastUpdated': isoformat(self.last_updated),
        }


class Subscription(db.Model):
    __tablename__ = 'subscriptions'
    __table_args__ = (
        db.CheckConstraint('pages_used_this_month >= 0', name='ck_subscriptions_usage_non_negative'),
    )

    user_id = db.Column(db.String(128), primary_key=True)
    tier_id = db.Column(db.Enum(TierId), nullable=False, default=TierId.FREE)
    status = db.Column(db.Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    pages_per_month = db.Column(db.Integer)  # only for the custom tier
    current_period_start = db.Column(db.DateTime(timezone=True))
    current_period_end = db.Column(db.DateTime(timezone=True))
    pages_used_this_month = db.Column(db.Integer, nullable=False, default=0)
    stripe_customer_id = db.Column(db.String(255), index=True)
    stripe_subscription_id = db.Column(db.String(255), index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @classmethod
    def free_default(cls, user_id, now=None):
        subscription = cls(
            user_id=user_id,
            tier_id=TierId.FREE,
            status=SubscriptionStatus.ACTIVE,
        )
        subscription.start_period(now)
        return subscription

    @property
    def is_active(self):
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def allotment(self):
        """Pages granted per billing period"""
        if self.tier_id == TierId.CUSTOM:
            return self.pages_per_month or 0
        tier = find_tier(self.tier_id)
        return tier.pages_per_month if tier else 0

    @property
    def pages_remaining(self):
        return max(0, self.allotment - (self.pages_used_this_month or 0))

    def start_period(self, now=None):
        """Open a fresh 30-day window with nothing used"""
        now = now or utcnow()
        self.current_period_start = now
        self.current_period_end = now + BILLING_PERIOD
        self.pages_used_this_month = 0

    def period_expired(self, now=None):
        end = ensure_utc(self.current_period_end)
        return end is None or (now or utcnow()) >= end

    def to_dict(self):
        return {
            'tierId': self.tier_id.value,
            'status': self.status.value,
            'pagesPerMonth': self.allotment,
            'pagesUsedThisMonth': self.pages_used_this_month or 0,
            'pagesRemaining': self.pages_remaining,
            'currentPeriodStart': isoformat(self.current_period_start),
            'currentPeriodEnd': isoformat(self.current_period_end),
            'stripeCustomerId': self.stripe_customer_id,
            'stripeSubscriptionId': self.stripe_subscription_id,
        }


class PaymentHistory(db.Model):
    """
    Append-only payment ledger.

    One row per terminal payment outcome; rows are never updated or deleted.
    """
    __tablename__ = 'payment_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    transaction_id = db.Column(db.String(255), nullable=False, index=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    credits = db.Column(db.Integer)
    tier_id = db.Column(db.String(50))
    status = db.Column(db.Enum(PaymentStatus), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        result = {
            'id': self.id,
            'transactionId': self.transaction_id,
            'amount': float(self.amount or 0),
            'status': self.status.value,
            'createdAt': isoformat(self.created_at),
        }
        if self.credits is not None:
            result['credits'] = self.credits
        if self.tier_id:
            result['tierId'] = self.tier_id
        return result


@event.listens_for(PaymentHistory, 'before_update')
def _payment_history_is_append_only(mapper, connection, target):
    raise ValueError(f"PaymentHistory {target.id} is write-once")


@event.listens_for(PaymentHistory, 'before_delete')
def _payment_history_is_never_deleted(mapper, connection, target):
    raise ValueError(f"PaymentHistory {target.id} is write-once")


class ProcessedWebhookEvent(db.Model):
    __tablename__ = 'processed_webhook_events'

    event_id = db.Column(db.String(255), primary_key=True)
    event_type = db.Column(db.String(100), nullable=False)
    user_id = db.Column(db.String(128), index=True)
    processed_at = db.Column(db.DateTime(timezone=True), default=utcnow)


class PageUsage(db.Model):
    __tablename__ = 'page_usage'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    page_count = db.Column(db.Integer, nullable=False)
    source = db.Column(db.String(20), nullable=False)  # subscription or credits
    tier_id = db.Column(db.String(50))
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
