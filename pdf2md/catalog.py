"""
Product catalog: one-time credit packages and monthly subscription tiers.

Prices are in dollars. Stripe price ids live in configuration so each
deployment can point at its own Stripe products.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Mapping, Optional, Union


class TierId(enum.Enum):
    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Tier:
    id: TierId
    name: str
    description: str
    price: Decimal
    pages_per_month: int
    price_setting: Optional[str] = None
    features: List[str] = field(default_factory=list)

    @property
    def purchasable(self) -> bool:
        return self.price_setting is not None

    def price_id(self, settings: Mapping) -> Optional[str]:
        if not self.price_setting:
            return None
        return settings.get(self.price_setting) or None


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: Decimal
    price_setting: str

    def price_id(self, settings: Mapping) -> Optional[str]:
        return settings.get(self.price_setting) or None


CatalogEntry = Union[Tier, CreditPackage]


SUBSCRIPTION_TIERS = [
    Tier(
        id=TierId.FREE,
        name="Free",
        description="Basic PDF to Markdown conversion",
        price=Decimal("0"),
        pages_per_month=10,
        features=["Convert up to 10 pages per month", "Basic markdown formatting", "Image extraction"],
    ),
    Tier(
        id=TierId.STANDARD,
        name="Standard",
        description="Enhanced conversion for regular users",
        price=Decimal("9.99"),
        pages_per_month=100,
        price_setting="STRIPE_PRICE_STANDARD",
        features=["Convert up to 100 pages per month", "Advanced formatting", "Priority processing"],
    ),
    Tier(
        id=TierId.PREMIUM,
        name="Premium",
        description="Professional conversion for power users",
        price=Decimal("19.99"),
        pages_per_month=500,
        price_setting="STRIPE_PRICE_PREMIUM",
        features=["Convert up to 500 pages per month", "Batch processing", "API access"],
    ),
    Tier(
        id=TierId.ENTERPRISE,
        name="Enterprise",
        description="Maximum conversion power for large organizations",
        price=Decimal("49.99"),
        pages_per_month=2000,
        price_setting="STRIPE_PRICE_ENTERPRISE",
        features=["Convert up to 2000 pages per month", "Batch processing", "API access"],
    ),
    # Allotment is carried on the subscription record itself
    Tier(
        id=TierId.CUSTOM,
        name="Custom",
        description="Negotiated monthly allotment",
        price=Decimal("0"),
        pages_per_month=0,
    ),
]

CREDIT_PACKAGES = [
    CreditPackage(id="basic", name="Basic", credits=100, price=Decimal("5.00"),
                  price_setting="STRIPE_PRICE_CREDITS_BASIC"),
    CreditPackage(id="pro", name="Professional", credits=500, price=Decimal("20.00"),
                  price_setting="STRIPE_PRICE_CREDITS_PRO"),
    CreditPackage(id="enterprise", name="Enterprise", credits=2000, price=Decimal("50.00"),
                  price_setting="STRIPE_PRICE_CREDITS_ENTERPRISE"),
]


def find_tier(tier_id) -> Optional[Tier]:
    """Look up a tier by TierId or its string value"""
    if isinstance(tier_id, str):
        try:
            tier_id = TierId(tier_id.strip().lower())
        except ValueError:
            return None
    for tier in SUBSCRIPTION_TIERS:
        if tier.id == tier_id:
            return tier
    return None


def find_tier_by_price(price_id: str, settings: Mapping) -> Optional[Tier]:
    if not price_id:
        return None
    for tier in SUBSCRIPTION_TIERS:
        if tier.price_id(settings) == price_id:
            return tier
    return None


def find_credit_package_by_price(price_id: str, settings: Mapping) -> Optional[CreditPackage]:
    if not price_id:
        return None
    for package in CREDIT_PACKAGES:
        if package.price_id(settings) == price_id:
            return package
    return None


def resolve_price(identifier: str, settings: Mapping) -> Optional[CatalogEntry]:
    """
    Resolve a checkout identifier to a catalog entry.

    Accepts a Stripe price id (credit package or tier) or a tier id.
    Package ids are not accepted on their own because "enterprise" names
    both a package and a tier.
    """
    identifier = (identifier or "").strip()
    if not identifier:
        return None
    return (
        find_credit_package_by_price(identifier, settings)
        or find_tier_by_price(identifier, settings)
        or find_tier(identifier)
    )
