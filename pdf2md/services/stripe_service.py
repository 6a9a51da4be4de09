"""Stripe helper functions.

Checkout, session verification and the billing portal. Settlement never
happens here: it arrives later through the webhook in pdf2md/stripe_webhook.py.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import stripe

from pdf2md import db
from pdf2md.catalog import CreditPackage, Tier, resolve_price
from pdf2md.exceptions import CheckoutFailed, Forbidden, InvalidRequest, NotFound
from pdf2md.models import Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]


def checkout_params(user_id: str, identifier: str, settings: Mapping, email: Optional[str] = None) -> Dict[str, Any]:
    """Build Stripe checkout parameters; raises InvalidRequest for anything not in the catalog"""
    entry = resolve_price(identifier, settings)
    if entry is None:
        raise InvalidRequest("Invalid price ID")

    price_id = entry.price_id(settings)
    if not price_id or (isinstance(entry, Tier) and not entry.purchasable):
        raise InvalidRequest(f"{entry.name} cannot be purchased")

    base_url = (settings.get('PUBLIC_BASE_URL') or '').rstrip('/')
    params = {
        'line_items': [{'price': price_id, 'quantity': 1}],
        'success_url': f"{base_url}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        'cancel_url': f"{base_url}/dashboard?canceled=true",
        'client_reference_id': user_id,
    }
    if email:
        params['customer_email'] = email

    if isinstance(entry, CreditPackage):
        metadata = {'userId': user_id, 'credits': str(entry.credits), 'type': 'credits'}
        params['mode'] = 'payment'
        # Failed payment intents report back with the same user
        params['payment_intent_data'] = {'metadata': metadata}
    else:
        metadata = {'userId': user_id, 'tierId': entry.id.value, 'type': 'subscription'}
        params['mode'] = 'subscription'
        # Later subscription events carry the user through their own metadata
        params['subscription_data'] = {'metadata': metadata}

    params['metadata'] = metadata
    return params


def create_checkout_session(user_id: str, identifier: str, settings: Mapping, email: Optional[str] = None) -> CheckoutSession:
    """Create a hosted checkout session; no local state is touched"""
    params = checkout_params(user_id, identifier, settings, email)
    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.error("Stripe checkout creation failed for user %s: %s", user_id, e)
        raise CheckoutFailed() from e

    logger.info("Created %s checkout session %s for user %s", params['mode'], session.id, user_id)
    return CheckoutSession(id=session.id, url=getattr(session, 'url', None))


def verify_checkout_session(user_id: str, session_id: str):
    """Confirm a completed checkout belongs to the caller"""
    if not session_id:
        raise InvalidRequest("Missing session ID")
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.InvalidRequestError as e:
        raise NotFound("Checkout session not found") from e
    except stripe.StripeError as e:
        logger.error("Stripe session lookup failed for %s: %s", session_id, e)
        raise CheckoutFailed("Failed to verify checkout session") from e

    if getattr(session, 'status', None) != 'complete':
        raise InvalidRequest("Payment not completed")

    metadata = getattr(session, 'metadata', None) or {}
    owner = metadata.get('userId') or metadata.get('firebaseUID')
    if owner != user_id:
        raise Forbidden("Session does not belong to the current user")
    return session


def create_portal_session(user_id: str, return_url: str) -> str:
    """Open the Stripe billing portal for a user with a Stripe customer"""
    subscription = db.session.get(Subscription, user_id)
    if subscription is None or not subscription.stripe_customer_id:
        raise NotFound("No billing account for this user")
    try:
        portal = stripe.billing_portal.Session.create(
            customer=subscription.stripe_customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error("Stripe portal creation failed for user %s: %s", user_id, e)
        raise CheckoutFailed("Failed to open billing portal") from e
    return portal.url
