"""Settlement engine: apply one verified payment event to a user's ledger.

Each event is applied in a single database transaction: the balance or
subscription mutation, the payment-history row and the processed-event
marker commit together or not at all.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from pdf2md.catalog import TierId
from pdf2md.exceptions import MissingMetadata, TransactionConflict
from pdf2md.models import (
    CreditBalance,
    PaymentHistory,
    PaymentStatus,
    ProcessedWebhookEvent,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from pdf2md.services.events import (
    CreditsPurchased,
    IgnoredEvent,
    InvoicePaymentFailed,
    PaymentFailed,
    SubscriptionDeleted,
    SubscriptionPurchased,
    SubscriptionUpdated,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    event_id: str
    action: str
    user_id: Optional[str] = None
    duplicate: bool = False


class SettlementEngine:
    """
    Applies exactly one financial state transition per event.

    With `deduplicate` on (the default) the Stripe event id is recorded
    alongside the mutation, so a redelivered event is reported as a
    duplicate instead of being applied twice. Two concurrent deliveries of
    the same event collide on the marker's primary key; the loser rolls
    back with TransactionConflict and Stripe redelivers it later.
    """

    def __init__(self, session, deduplicate: bool = True, clock: Callable = utcnow):
        self.session = session
        self.deduplicate = deduplicate
        self.clock = clock
        self._handlers = {
            CreditsPurchased: self._credit_balance,
            SubscriptionPurchased: self._activate_subscription,
            SubscriptionUpdated: self._update_subscription,
            SubscriptionDeleted: self._cancel_subscription,
            PaymentFailed: self._record_failed_payment,
            InvoicePaymentFailed: self._record_failed_invoice,
        }

    def settle(self, event: WebhookEvent) -> SettlementResult:
        if isinstance(event, IgnoredEvent):
            logger.info("Ignoring Stripe event %s of type %s", event.event_id, event.event_type)
            return SettlementResult(event.event_id, 'ignored')

        handler = self._handlers[type(event)]
        try:
            if self.deduplicate:
                if self.session.get(ProcessedWebhookEvent, event.event_id) is not None:
                    logger.warning("Duplicate delivery of Stripe event %s ignored", event.event_id)
                    return SettlementResult(event.event_id, 'duplicate', getattr(event, 'user_id', None), True)
                marker = ProcessedWebhookEvent(event_id=event.event_id, event_type=type(event).__name__)
                self.session.add(marker)
                self.session.flush()

            result = handler(event)

            if self.deduplicate:
                marker.user_id = result.user_id
            self.session.commit()
        except (IntegrityError, OperationalError) as e:
            self.session.rollback()
            logger.warning("Transaction conflict settling Stripe event %s: %s", event.event_id, e)
            raise TransactionConflict(f"Conflict settling event {event.event_id}") from e
        except Exception:
            self.session.rollback()
            raise

        logger.info("Settled Stripe event %s (%s) for user %s", event.event_id, result.action, result.user_id)
        return result

    # -- locking reads -------------------------------------------------

    def _locked_balance(self, user_id: str) -> Optional[CreditBalance]:
        return (
            self.session.query(CreditBalance)
            .filter(CreditBalance.user_id == user_id)
            .with_for_update()
            .one_or_none()
        )

    def _locked_subscription(self, user_id: Optional[str], subscription_id: Optional[str] = None) -> Optional[Subscription]:
        query = self.session.query(Subscription).with_for_update()
        if user_id:
            return query.filter(Subscription.user_id == user_id).one_or_none()
        if subscription_id:
            return query.filter(Subscription.stripe_subscription_id == subscription_id).first()
        return None

    def _subscription_for(self, user_id: Optional[str], subscription_id: Optional[str]) -> Subscription:
        """Find the user's subscription, creating a free one when the user is known"""
        subscription = self._locked_subscription(user_id, subscription_id)
        if subscription is None:
            if not user_id:
                raise MissingMetadata(f"No user found for subscription {subscription_id!r}")
            subscription = Subscription.free_default(user_id, self.clock())
            self.session.add(subscription)
        return subscription

    # -- handlers ------------------------------------------------------

    def _credit_balance(self, event: CreditsPurchased) -> SettlementResult:
        balance = self._locked_balance(event.user_id)
        if balance is None:
            balance = CreditBalance(user_id=event.user_id, balance=event.credits)
            self.session.add(balance)
        else:
            # Evaluated by the database, so the increment never reads a stale value
            balance.balance = CreditBalance.balance + event.credits
        self.session.flush()

        self.session.add(PaymentHistory(
            user_id=event.user_id,
            transaction_id=event.transaction_id,
            amount=event.amount,
            credits=event.credits,
            status=PaymentStatus.SUCCEEDED,
        ))
        return SettlementResult(event.event_id, 'credited', event.user_id)

    def _activate_subscription(self, event: SubscriptionPurchased) -> SettlementResult:
        subscription = self._locked_subscription(event.user_id)
        if subscription is None:
            subscription = Subscription(user_id=event.user_id)
            self.session.add(subscription)

        subscription.tier_id = event.tier_id
        subscription.pages_per_month = event.pages_per_month if event.tier_id == TierId.CUSTOM else None
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.start_period(self.clock())
        if event.customer_id:
            subscription.stripe_customer_id = event.customer_id
        if event.subscription_id:
            subscription.stripe_subscription_id = event.subscription_id

        self.session.add(PaymentHistory(
            user_id=event.user_id,
            transaction_id=event.transaction_id,
            amount=event.amount,
            credits=event.pages_per_month,
            tier_id=event.tier_id.value,
            status=PaymentStatus.SUCCEEDED,
        ))
        return SettlementResult(event.event_id, 'subscribed', event.user_id)

    def _update_subscription(self, event: SubscriptionUpdated) -> SettlementResult:
        subscription = self._subscription_for(event.user_id, event.subscription_id)

        if event.status is not None:
            subscription.status = event.status
        if event.tier_id is not None and event.tier_id != subscription.tier_id:
            subscription.tier_id = event.tier_id
            if event.tier_id != TierId.CUSTOM:
                subscription.pages_per_month = None
            subscription.start_period(self.clock())
        if event.current_period_start is not None:
            subscription.current_period_start = event.current_period_start
        if event.current_period_end is not None:
            subscription.current_period_end = event.current_period_end
        if event.customer_id:
            subscription.stripe_customer_id = event.customer_id
        if event.subscription_id:
            subscription.stripe_subscription_id = event.subscription_id
        return SettlementResult(event.event_id, 'updated', subscription.user_id)

    def _cancel_subscription(self, event: SubscriptionDeleted) -> SettlementResult:
        subscription = self._subscription_for(event.user_id, event.subscription_id)
        subscription.status = SubscriptionStatus.CANCELED
        subscription.tier_id = TierId.FREE
        subscription.pages_per_month = None
        return SettlementResult(event.event_id, 'canceled', subscription.user_id)

    def _record_failed_payment(self, event: PaymentFailed) -> SettlementResult:
        self.session.add(PaymentHistory(
            user_id=event.user_id,
            transaction_id=event.transaction_id,
            amount=event.amount,
            status=PaymentStatus.FAILED,
        ))
        return SettlementResult(event.event_id, 'payment_failed', event.user_id)

    def _record_failed_invoice(self, event: InvoicePaymentFailed) -> SettlementResult:
        subscription = self._locked_subscription(event.user_id, event.subscription_id)
        if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE:
            subscription.status = SubscriptionStatus.PAST_DUE

        user_id = event.user_id or (subscription.user_id if subscription is not None else None)
        if not user_id:
            raise MissingMetadata(f"No user found for invoice {event.transaction_id!r}")
        self.session.add(PaymentHistory(
            user_id=user_id,
            transaction_id=event.transaction_id,
            amount=event.amount,
            status=PaymentStatus.FAILED,
        ))
        return SettlementResult(event.event_id, 'payment_failed', user_id)
