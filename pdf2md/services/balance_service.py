"""Balance queries and page consumption.

Pages come from two sources: the monthly allotment of an active subscription
(free tier included) and one-time purchased credits. A user can spend both;
conversions draw on the allotment first and on credits for the rest.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from pdf2md import db
from pdf2md.exceptions import InsufficientPages, InvalidRequest, TransactionConflict
from pdf2md.models import CreditBalance, PageUsage, Subscription, utcnow

logger = logging.getLogger(__name__)

SOURCE_SUBSCRIPTION = 'subscription'
SOURCE_CREDITS = 'credits'


def get_subscription(user_id: str, now=None) -> Subscription:
    """
    Return the user's subscription, materialising a free one if absent.

    An active subscription whose period has ended starts a new window.
    """
    now = now or utcnow()
    subscription = db.session.get(Subscription, user_id)
    if subscription is None:
        subscription = Subscription.free_default(user_id, now)
        db.session.add(subscription)
        try:
            db.session.commit()
        except IntegrityError:
            # Another request created it first
            db.session.rollback()
            subscription = db.session.get(Subscription, user_id)
        else:
            logger.info("Created free subscription for user %s", user_id)
    elif subscription.is_active and subscription.period_expired(now):
        subscription.start_period(now)
        db.session.commit()
        logger.info("Rolled billing period for user %s", user_id)
    return subscription


def get_credit_balance(user_id: str) -> Optional[CreditBalance]:
    return db.session.get(CreditBalance, user_id)


def available_pages(subscription: Subscription, balance: Optional[CreditBalance]) -> Dict[str, int]:
    """Pages each source can still cover"""
    return {
        SOURCE_SUBSCRIPTION: subscription.pages_remaining if subscription.is_active else 0,
        SOURCE_CREDITS: max(0, balance.balance) if balance is not None else 0,
    }


def split_charge(page_count: int, available: Dict[str, int]) -> Dict[str, int]:
    """Allotment first, credits for whatever is left"""
    from_subscription = min(page_count, available[SOURCE_SUBSCRIPTION])
    return {
        SOURCE_SUBSCRIPTION: from_subscription,
        SOURCE_CREDITS: page_count - from_subscription,
    }


def get_pages_remaining(user_id: str, now=None) -> int:
    """Pages the user can still convert; never negative"""
    subscription = get_subscription(user_id, now)
    return sum(available_pages(subscription, get_credit_balance(user_id)).values())


def record_page_usage(user_id: str, page_count: int, now=None) -> Tuple[Dict[str, int], int]:
    """
    Consume pages for a conversion.

    Each decrement is a conditional UPDATE, so two concurrent conversions can
    never push usage past the allotment or a balance below zero. Both sources
    are charged in one transaction.
    Returns (pages charged per source, pages remaining).
    """
    if page_count <= 0:
        raise InvalidRequest("Page count must be positive")

    subscription = get_subscription(user_id, now)
    balance = get_credit_balance(user_id)
    available = available_pages(subscription, balance)
    total = sum(available.values())
    if page_count > total:
        raise InsufficientPages(required=page_count, available=total)

    charges = split_charge(page_count, available)
    try:
        updated = True
        if charges[SOURCE_SUBSCRIPTION]:
            allotment = subscription.allotment
            updated = bool(
                Subscription.query
                .filter(
                    Subscription.user_id == user_id,
                    Subscription.pages_used_this_month + charges[SOURCE_SUBSCRIPTION] <= allotment,
                )
                .update(
                    {Subscription.pages_used_this_month: Subscription.pages_used_this_month + charges[SOURCE_SUBSCRIPTION]},
                    synchronize_session=False,
                )
            )
        if updated and charges[SOURCE_CREDITS]:
            updated = bool(
                CreditBalance.query
                .filter(CreditBalance.user_id == user_id, CreditBalance.balance >= charges[SOURCE_CREDITS])
                .update(
                    {
                        CreditBalance.balance: CreditBalance.balance - charges[SOURCE_CREDITS],
                        CreditBalance.last_updated: utcnow(),
                    },
                    synchronize_session=False,
                )
            )

        if not updated:
            # A concurrent conversion spent the pages after they were read
            db.session.rollback()
            raise InsufficientPages(required=page_count, available=get_pages_remaining(user_id, now))

        for source, pages in charges.items():
            if pages:
                db.session.add(PageUsage(
                    user_id=user_id,
                    page_count=pages,
                    source=source,
                    tier_id=subscription.tier_id.value,
                ))
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise TransactionConflict("Concurrent page usage, please retry") from e

    db.session.expire_all()
    logger.info("User %s used %d pages (%s)", user_id, page_count, charges)
    return {source: pages for source, pages in charges.items() if pages}, get_pages_remaining(user_id, now)
