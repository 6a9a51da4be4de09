"""
Stripe webhook handler
"""
import json

import stripe
from flask import Blueprint, current_app, jsonify, request

from pdf2md import db
from pdf2md.catalog import find_tier_by_price
from pdf2md.exceptions import BillingError, InvalidSignature
from pdf2md.services.events import decode_event
from pdf2md.services.settlement import SettlementEngine

webhook_bp = Blueprint('webhook', __name__)


def tier_for_price(price_id):
    tier = find_tier_by_price(price_id, current_app.config)
    return tier.id if tier else None


@webhook_bp.route('/webhook', methods=['POST'])
def stripe_webhook():
    """Handle Stripe webhook events"""
    # Signature is computed over the exact bytes, so never let Flask parse them
    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature', '')
    webhook_secret = current_app.config['STRIPE_WEBHOOK_SECRET']

    try:
        stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError as e:
        current_app.logger.warning('Rejected webhook with invalid payload: %s', e)
        raise InvalidSignature('Invalid payload') from e
    except stripe.SignatureVerificationError as e:
        current_app.logger.warning('Rejected webhook with invalid signature')
        raise InvalidSignature('Invalid signature') from e

    raw_event = json.loads(payload)
    current_app.logger.info('Received Stripe event %s (%s)', raw_event.get('id'), raw_event.get('type'))

    try:
        event = decode_event(raw_event, tier_lookup=tier_for_price)
        engine = SettlementEngine(db.session, deduplicate=current_app.config.get('WEBHOOK_DEDUPLICATION', True))
        result = engine.settle(event)
    except BillingError as e:
        # Non-2xx makes Stripe redeliver later
        current_app.logger.warning('Stripe event %s not settled: %s', raw_event.get('id'), e.message)
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Webhook error for Stripe event %s', raw_event.get('id'))
        return jsonify({'error': 'Webhook handler failed'}), 500

    body = {'received': True}
    if result.duplicate:
        body['duplicate'] = True
    return jsonify(body), 200
