"""
Per-client price resolution.

Every client carries a price tier 1..5 ("lista"). Two catalog layouts are in
use:

* tier columns: the product row has ``precio1`` .. ``precio5`` and the tier
  picks the column (tier 1 when the tier is missing or out of range);
* multiplier: the product row has a single base ``precio`` and the tier
  scales it by ``TIER_MULTIPLIERS``, rounded half-up to whole pesos.

Both expose ``price_for(product, client) -> int``.
"""

from decimal import Decimal, ROUND_HALF_UP

from .models import Client, Product

TIERS = (1, 2, 3, 4, 5)

TIER_MULTIPLIERS = {
    1: Decimal("1.0"),
    2: Decimal("1.1"),
    3: Decimal("1.2"),
    4: Decimal("1.3"),
    5: Decimal("1.4"),
}

TIER_NAMES = {
    1: "Mayorista A",
    2: "Mayorista B",
    3: "Minorista A",
    4: "Minorista B",
    5: "Público General",
}


def normalize_tier(raw) -> int:
    try:
        tier = int(str(raw).strip())
    except (TypeError, ValueError):
        return 1
    return tier if tier in TIERS else 1


def tier_name(tier) -> str:
    return TIER_NAMES.get(tier, "Sin categoría")


def client_tier(client: Client | None) -> int:
    return normalize_tier(client.price_tier) if client else 1


class TierPricing:
    name = "tiers"

    def price_for(self, product: Product, client: Client | None) -> int:
        tier = client_tier(client)
        price = product.tier_prices.get(tier)
        if price is None:
            price = product.tier_prices.get(1, product.base_price)
        return int(price or 0)


class MultiplierPricing:
    name = "multiplier"

    def price_for(self, product: Product, client: Client | None) -> int:
        # an unknown tier on the record itself falls back to 1.0
        tier = client.price_tier if client else 1
        multiplier = TIER_MULTIPLIERS.get(tier, Decimal("1.0"))
        base = product.base_price or product.tier_prices.get(1, 0)
        amount = Decimal(str(base)) * multiplier
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def make_pricing(mode: str):
    if mode == "multiplier":
        return MultiplierPricing()
    return TierPricing()
