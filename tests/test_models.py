"""
Database Model Tests
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from pdf2md import db
from pdf2md.catalog import TierId
from pdf2md.models import (
    BILLING_PERIOD,
    CreditBalance,
    PaymentHistory,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestSubscription:
    """Test Subscription model"""

    def test_free_default(self):
        subscription = Subscription.free_default('user_1', NOW)
        assert subscription.tier_id == TierId.FREE
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.pages_used_this_month == 0
        assert subscription.current_period_end - subscription.current_period_start == BILLING_PERIOD
        assert subscription.allotment == 10

    def test_custom_allotment(self):
        subscription = Subscription(user_id='user_1', tier_id=TierId.CUSTOM, pages_per_month=750)
        assert subscription.allotment == 750

    def test_pages_remaining_never_negative(self):
        subscription = Subscription.free_default('user_1', NOW)
        subscription.pages_used_this_month = 25
        assert subscription.pages_remaining == 0

    def test_period_expired(self):
        subscription = Subscription.free_default('user_1', NOW)
        assert not subscription.period_expired(NOW + timedelta(days=29))
        assert subscription.period_expired(NOW + timedelta(days=30))

    def test_to_dict(self, app):
        subscription = Subscription.free_default('user_1', NOW)
        db.session.add(subscription)
        db.session.commit()

        data = subscription.to_dict()
        assert data['tierId'] == 'free'
        assert data['status'] == 'active'
        assert data['pagesPerMonth'] == 10
        assert data['pagesRemaining'] == 10
        assert data['currentPeriodStart'].startswith('2026-03-01T12:00:00')

    def test_usage_cannot_go_negative(self, app):
        subscription = Subscription.free_default('user_1', NOW)
        subscription.pages_used_this_month = -1
        db.session.add(subscription)
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


class TestCreditBalance:

    def test_balance_cannot_go_negative(self, app):
        db.session.add(CreditBalance(user_id='user_1', balance=-5))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_to_dict(self, app):
        balance = CreditBalance(user_id='user_1', balance=40)
        db.session.add(balance)
        db.session.commit()
        data = balance.to_dict()
        assert data['balance'] == 40
        assert data['lastUpdated'] is not None


class TestPaymentHistory:

    def _record(self):
        record = PaymentHistory(
            user_id='user_1',
            transaction_id='cs_test_1',
            amount=Decimal('5.00'),
            credits=100,
            status=PaymentStatus.SUCCEEDED,
        )
        db.session.add(record)
        db.session.commit()
        return record

    def test_to_dict(self, app):
        data = self._record().to_dict()
        assert data['transactionId'] == 'cs_test_1'
        assert data['amount'] == 5.0
        assert data['credits'] == 100
        assert data['status'] == 'succeeded'
        assert 'tierId' not in data

    def test_rows_are_write_once(self, app):
        record = self._record()
        record.amount = Decimal('50.00')
        with pytest.raises(ValueError):
            db.session.commit()
        db.session.rollback()

    def test_rows_are_never_deleted(self, app):
        record = self._record()
        db.session.delete(record)
        with pytest.raises(ValueError):
            db.session.commit()
        db.session.rollback()


def test_ensure_utc_marks_naive_values():
    assert ensure_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc
    assert ensure_utc(None) is None
