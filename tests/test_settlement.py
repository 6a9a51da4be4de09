"""
Settlement Engine Tests
"""
import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import permutations

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config as config_module
from config import TestingConfig
from pdf2md import create_app, db
from pdf2md.catalog import TierId
from pdf2md.exceptions import MissingMetadata, TransactionConflict
from pdf2md.models import (
    CreditBalance,
    PaymentHistory,
    PaymentStatus,
    ProcessedWebhookEvent,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)
from pdf2md.services.events import CreditsPurchased, decode_event
from pdf2md.services.settlement import SettlementEngine
from webhook_helpers import (
    TEST_USER_ID,
    credits_checkout,
    invoice_failed,
    payment_intent_failed,
    subscription_checkout,
    subscription_deleted,
    subscription_updated,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def engine(deduplicate=True, now=NOW):
    return SettlementEngine(db.session, deduplicate=deduplicate, clock=lambda: now)


def settle(raw, **kwargs):
    return engine(**kwargs).settle(decode_event(raw))


def history(user_id=TEST_USER_ID):
    return PaymentHistory.query.filter_by(user_id=user_id).order_by(PaymentHistory.id).all()


class TestCreditPurchases:

    def test_first_purchase_creates_balance(self, app):
        result = settle(credits_checkout(credits=100, amount_total=500))

        assert result.action == 'credited'
        assert db.session.get(CreditBalance, TEST_USER_ID).balance == 100
        records = history()
        assert len(records) == 1
        assert records[0].status == PaymentStatus.SUCCEEDED
        assert records[0].amount == Decimal('5.00')
        assert records[0].credits == 100

    def test_second_purchase_adds_to_balance(self, app):
        db.session.add(CreditBalance(user_id=TEST_USER_ID, balance=50))
        db.session.commit()

        settle(credits_checkout(credits=25, amount_total=125))

        assert db.session.get(CreditBalance, TEST_USER_ID).balance == 75

    def test_order_of_purchases_does_not_matter(self, app):
        packs = [100, 500, 2000]
        finals = []
        for order in permutations(packs):
            user_id = 'user_' + '_'.join(str(n) for n in order)
            for credits in order:
                settle(credits_checkout(user_id=user_id, credits=credits))
            finals.append(db.session.get(CreditBalance, user_id).balance)
        assert set(finals) == {sum(packs)}

    def test_marker_records_user(self, app):
        settle(credits_checkout(event_id='evt_marker'))
        marker = db.session.get(ProcessedWebhookEvent, 'evt_marker')
        assert marker.user_id == TEST_USER_ID
        assert marker.event_type == 'CreditsPurchased'


class TestExactlyOnce:

    def test_redelivery_is_flagged_not_applied(self, app):
        raw = credits_checkout(credits=100, event_id='evt_dup')
        first = settle(raw)
        second = settle(raw)

        assert not first.duplicate
        assert second.duplicate
        assert second.action == 'duplicate'
        assert db.session.get(CreditBalance, TEST_USER_ID).balance == 100
        assert len(history()) == 1

    def test_without_deduplication_redelivery_double_credits(self, app):
        raw = credits_checkout(credits=100, event_id='evt_dup')
        settle(raw, deduplicate=False)
        settle(raw, deduplicate=False)

        assert db.session.get(CreditBalance, TEST_USER_ID).balance == 200
        assert len(history()) == 2
        assert ProcessedWebhookEvent.query.count() == 0

    def test_conflict_rolls_back_everything(self, app):
        settlement = engine()

        def collide(event):
            raise IntegrityError('INSERT', {}, Exception('duplicate key'))

        settlement._handlers[CreditsPurchased] = collide
        with pytest.raises(TransactionConflict):
            settlement.settle(decode_event(credits_checkout(event_id='evt_conflict')))

        assert db.session.get(ProcessedWebhookEvent, 'evt_conflict') is None
        assert CreditBalance.query.count() == 0

    def test_failed_settlement_can_be_retried(self, app):
        raw = subscription_updated(subscription_id='sub_unknown', user_id=None, event_id='evt_retry')
        with pytest.raises(MissingMetadata):
            settle(raw)
        assert db.session.get(ProcessedWebhookEvent, 'evt_retry') is None


@pytest.fixture
def file_engine(tmp_path, monkeypatch):
    """Engine on a file-backed SQLite database shared across threads"""
    database_uri = f"sqlite:///{tmp_path}/ledger.db"

    class FileDatabaseConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = database_uri

    monkeypatch.setitem(config_module.config, 'file_db', FileDatabaseConfig)
    file_app = create_app('file_db')
    with file_app.app_context():
        db.create_all()
        yield db.engine
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def settle_with_retries(bind, raw, attempts=30):
    """Settle from a fresh session, retrying conflicts the way Stripe redelivers"""
    for _ in range(attempts):
        session = Session(bind=bind)
        try:
            return SettlementEngine(session, clock=lambda: NOW).settle(decode_event(raw))
        except TransactionConflict:
            time.sleep(0.01)
        finally:
            session.close()
    raise AssertionError(f"event {raw['id']} never settled")


class TestConcurrentSettlement:

    def test_concurrent_purchases_sum_to_total(self, file_engine):
        packs = [100, 500, 2000, 100, 500, 2000]
        events = [
            credits_checkout(credits=credits, event_id=f'evt_thread_{i}', session_id=f'cs_thread_{i}')
            for i, credits in enumerate(packs)
        ]
        # One event also arrives twice at the same time
        deliveries = events + [events[0]]
        barrier = threading.Barrier(len(deliveries))
        results, errors = [], []

        def deliver(raw):
            barrier.wait()
            try:
                results.append(settle_with_retries(file_engine, raw))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver, args=(raw,)) for raw in deliveries]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sum(1 for result in results if result.duplicate) == 1

        session = Session(bind=file_engine)
        try:
            assert session.get(CreditBalance, TEST_USER_ID).balance == sum(packs)
            assert session.query(PaymentHistory).count() == len(packs)
            assert session.query(ProcessedWebhookEvent).count() == len(packs)
        finally:
            session.close()


class TestSubscriptions:

    def test_purchase_activates_tier(self, app):
        result = settle(subscription_checkout(tier_id='standard', amount_total=999))

        assert result.action == 'subscribed'
        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert subscription.tier_id == TierId.STANDARD
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.pages_used_this_month == 0
        assert subscription.stripe_subscription_id == 'sub_test_1'
        assert ensure_utc(subscription.current_period_end) == NOW + timedelta(days=30)

        records = history()
        assert records[0].tier_id == 'standard'
        assert records[0].amount == Decimal('9.99')

    def test_purchase_resets_usage(self, app):
        subscription = Subscription.free_default(TEST_USER_ID, NOW)
        subscription.pages_used_this_month = 8
        db.session.add(subscription)
        db.session.commit()

        settle(subscription_checkout(tier_id='premium'))

        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert subscription.tier_id == TierId.PREMIUM
        assert subscription.pages_used_this_month == 0

    def test_update_by_subscription_id(self, app):
        settle(subscription_checkout(tier_id='standard'))
        settle(subscription_updated(user_id=None, tier_id='premium', status='active'))

        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert subscription.tier_id == TierId.PREMIUM

    def test_update_status_only_keeps_usage(self, app):
        settle(subscription_checkout(tier_id='standard'))
        subscription = db.session.get(Subscription, TEST_USER_ID)
        subscription.pages_used_this_month = 40
        db.session.commit()

        settle(subscription_updated(status='past_due'))

        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.pages_used_this_month == 40

    def test_update_applies_stripe_period(self, app):
        start = int(datetime(2026, 4, 1, tzinfo=timezone.utc).timestamp())
        end = int(datetime(2026, 5, 1, tzinfo=timezone.utc).timestamp())
        settle(subscription_updated(period_start=start, period_end=end))

        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert ensure_utc(subscription.current_period_end) == datetime(2026, 5, 1, tzinfo=timezone.utc)

    def test_cancellation_resets_to_free(self, app):
        settle(subscription_checkout(tier_id='enterprise'))
        result = settle(subscription_deleted(user_id=None))

        assert result.action == 'canceled'
        assert result.user_id == TEST_USER_ID
        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.tier_id == TierId.FREE


class TestFailedPayments:

    def test_failed_payment_recorded_balance_untouched(self, app):
        settle(payment_intent_failed(amount=500))

        records = history()
        assert len(records) == 1
        assert records[0].status == PaymentStatus.FAILED
        assert records[0].amount == Decimal('5.00')
        assert db.session.get(CreditBalance, TEST_USER_ID) is None

    def test_failed_invoice_marks_past_due(self, app):
        settle(subscription_checkout(tier_id='standard'))
        settle(invoice_failed(subscription_id='sub_test_1'))

        subscription = db.session.get(Subscription, TEST_USER_ID)
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert [r.status for r in history()] == [PaymentStatus.SUCCEEDED, PaymentStatus.FAILED]

    def test_failed_invoice_for_unknown_user(self, app):
        with pytest.raises(MissingMetadata):
            settle(invoice_failed(subscription_id='sub_nobody'))
        assert PaymentHistory.query.count() == 0
