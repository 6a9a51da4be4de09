"""
Billing routes: checkout, subscription state, balances and payment history
"""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from pdf2md.exceptions import InvalidRequest
from pdf2md.models import PaymentHistory
from pdf2md.services.balance_service import get_credit_balance, get_pages_remaining, get_subscription
from pdf2md.services.stripe_service import (
    create_checkout_session,
    create_portal_session,
    verify_checkout_session,
)

billing_bp = Blueprint('billing', __name__)

HISTORY_LIMIT = 50


@billing_bp.route('/checkout', methods=['POST'])
@login_required
def checkout():
    """Create Stripe checkout session for a credit package or tier"""
    payload = request.get_json(silent=True) or {}
    identifier = str(payload.get('priceId') or payload.get('tierId') or '').strip()
    if not identifier:
        raise InvalidRequest('Missing priceId or tierId')

    session = create_checkout_session(
        current_user.id,
        identifier,
        current_app.config,
        email=current_user.email,
    )
    return jsonify({'sessionId': session.id, 'url': session.url}), 200


@billing_bp.route('/checkout/verify', methods=['GET'])
@login_required
def verify_checkout():
    session_id = (request.args.get('session_id') or '').strip()
    verify_checkout_session(current_user.id, session_id)
    subscription = get_subscription(current_user.id)
    return jsonify({'success': True, 'subscription': subscription.to_dict()}), 200


@billing_bp.route('/portal', methods=['POST'])
@login_required
def portal():
    payload = request.get_json(silent=True) or {}
    base_url = current_app.config['PUBLIC_BASE_URL'].rstrip('/')
    return_url = (payload.get('returnUrl') or '').strip() or f"{base_url}/dashboard"
    url = create_portal_session(current_user.id, return_url)
    return jsonify({'url': url}), 200


@billing_bp.route('/subscription', methods=['GET'])
@login_required
def subscription_details():
    subscription = get_subscription(current_user.id)
    return jsonify(subscription.to_dict()), 200


@billing_bp.route('/subscription/pages-remaining', methods=['GET'])
@login_required
def pages_remaining():
    return jsonify({'pagesRemaining': get_pages_remaining(current_user.id)}), 200


@billing_bp.route('/credits/balance', methods=['GET'])
@login_required
def credit_balance():
    balance = get_credit_balance(current_user.id)
    if balance is None:
        return jsonify({'balance': 0, 'lastUpdated': None}), 200
    return jsonify(balance.to_dict()), 200


@billing_bp.route('/payments/history', methods=['GET'])
@login_required
def payment_history():
    records = (
        PaymentHistory.query
        .filter_by(user_id=current_user.id)
        .order_by(PaymentHistory.created_at.desc(), PaymentHistory.id.desc())
        .limit(HISTORY_LIMIT)
        .all()
    )
    return jsonify({'payments': [record.to_dict() for record in records]}), 200
