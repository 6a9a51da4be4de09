"""
Create Stripe products and prices for the credit packages and subscription tiers.

Prints the environment variables to set with the resulting price ids.

    STRIPE_SECRET_KEY=sk_test_... python scripts/setup_stripe_products.py
"""
import os
import sys

import stripe

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pdf2md.catalog import CREDIT_PACKAGES, SUBSCRIPTION_TIERS


def to_cents(price):
    return int(price * 100)


def create_credit_packages():
    settings = {}
    for package in CREDIT_PACKAGES:
        product = stripe.Product.create(
            name=package.name,
            description=f"{package.credits} PDF conversion credits",
            metadata={'credits': str(package.credits), 'type': 'credits'},
        )
        price = stripe.Price.create(
            product=product.id,
            unit_amount=to_cents(package.price),
            currency='usd',
        )
        print(f"Created {package.name}: ${package.price}  price {price.id}")
        settings[package.price_setting] = price.id
    return settings


def create_subscription_tiers():
    settings = {}
    for tier in SUBSCRIPTION_TIERS:
        if not tier.purchasable:
            continue
        product = stripe.Product.create(
            name=f"{tier.name} Plan",
            description=tier.description,
            metadata={'tierId': tier.id.value, 'pagesPerMonth': str(tier.pages_per_month), 'type': 'subscription'},
        )
        price = stripe.Price.create(
            product=product.id,
            unit_amount=to_cents(tier.price),
            currency='usd',
            recurring={'interval': 'month'},
            metadata={'tierId': tier.id.value},
        )
        print(f"Created {tier.name} plan: ${tier.price}/month  price {price.id}")
        settings[tier.price_setting] = price.id
    return settings


def main() -> None:
    stripe.api_key = os.getenv('STRIPE_SECRET_KEY', '')
    if not stripe.api_key:
        print("STRIPE_SECRET_KEY is not set")
        sys.exit(1)

    try:
        settings = create_credit_packages()
        settings.update(create_subscription_tiers())
    except stripe.StripeError as e:
        print(f"Failed to set up Stripe products: {e}")
        sys.exit(1)

    print("\nAdd to your environment:")
    for name, value in settings.items():
        print(f"{name}={value}")


if __name__ == "__main__":
    main()
