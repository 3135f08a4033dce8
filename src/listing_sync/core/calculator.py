"""
Derived listing values: business status, health score and price/promotion math.

Pure functions over provider payloads; no I/O.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional, Tuple

from listing_sync.core.models import PriceResolution


# Promotions smaller than this fraction of the original are rounding noise
PROMOTION_MIN_FRACTION = 0.01

QUALITY_GRADE_SCORES = {
    "good": 90,
    "excellent": 90,
    "regular": 70,
    "average": 70,
    "bad": 40,
    "poor": 40,
}
DEFAULT_QUALITY_SCORE = 50

LISTING_STATUS_MAP = {
    "active": "active",
    "paused": "paused",
}


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a cash register (0.5 goes up), not banker's rounding."""
    exponent = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP))


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _positive(value: Any) -> Optional[float]:
    number = _number(value)
    return number if number is not None and number > 0 else None


def map_listing_status(provider_status: Optional[str]) -> str:
    """active -> active, paused -> paused, anything else (closed, under_review...) -> deleted."""
    return LISTING_STATUS_MAP.get((provider_status or "").lower(), "deleted")


def calculate_health_score(item: Dict[str, Any]) -> float:
    """
    Score an item 0-100.

    Prefers the provider's own ``health`` (0..1), then its ``quality_grade``,
    then a points heuristic over listing completeness.
    """
    health = _number(item.get("health"))
    if health is not None:
        return round(max(0.0, min(health, 1.0)) * 100, 2)

    grade = item.get("quality_grade")
    if isinstance(grade, str) and grade:
        return float(QUALITY_GRADE_SCORES.get(grade.lower(), DEFAULT_QUALITY_SCORE))

    score = 0
    title = item.get("title") or ""
    if len(title) > 10:
        score += 15
    if len(title) > 40:
        score += 10
    if _positive(item.get("price")):
        score += 15
    if (_number(item.get("available_quantity")) or 0) > 0:
        score += 15
    if item.get("category_id"):
        score += 10
    if item.get("thumbnail"):
        score += 10
    if len(item.get("pictures") or []) > 1:
        score += 10
    if (item.get("shipping") or {}).get("free_shipping"):
        score += 5
    if item.get("status") == "active":
        score += 10

    return float(min(score, 100))


def is_effective_promotion(original: Optional[float], current: Optional[float]) -> bool:
    """True when ``original`` exceeds ``current`` by more than the noise threshold."""
    if original is None or current is None or original <= 0:
        return False
    return (original - current) > original * PROMOTION_MIN_FRACTION


def discount_percent(original: float, current: float) -> int:
    """Whole-number discount, ``round(100 * (original - current) / original)``."""
    return int(round_half_up(100 * (original - current) / original))


def _amounts(entries: Iterable[Any]) -> Iterable[float]:
    for entry in entries:
        amount = _positive(entry.get("amount")) if isinstance(entry, dict) else _positive(entry)
        if amount is not None:
            yield amount


def _price_list(item: Dict[str, Any]) -> list:
    prices = item.get("prices")
    if isinstance(prices, dict):
        prices = prices.get("prices")
    return prices if isinstance(prices, list) else []


def _current_price_candidates(item: Dict[str, Any]) -> Iterable[Optional[float]]:
    sale_price = item.get("sale_price")
    if isinstance(sale_price, dict):
        yield _positive(sale_price.get("amount"))
    else:
        yield _positive(sale_price)

    yield min(_amounts(_price_list(item)), default=None)
    yield _positive(item.get("price"))


def _original_price_candidates(item: Dict[str, Any], current: float) -> Iterable[Optional[float]]:
    yield _positive(item.get("original_price"))

    sale_price = item.get("sale_price")
    if isinstance(sale_price, dict):
        yield _positive(sale_price.get("regular_amount"))

    reference_prices = item.get("reference_prices")
    yield max(_amounts(reference_prices if isinstance(reference_prices, list) else []), default=None)

    yield _positive(item.get("base_price"))

    business_price = _positive(item.get("price"))
    if business_price is not None and business_price > current:
        yield business_price


def _first(candidates: Iterable[Optional[float]]) -> Optional[float]:
    return next((c for c in candidates if c is not None), None)


def resolve_item_prices(item: Dict[str, Any]) -> PriceResolution:
    """
    Resolve buyer price and promotion from an item payload alone.

    Current price: explicit sale price > cheapest of the price list > list price.
    Original price: explicit original > highest reference price > base price >
    business price when strictly above current.
    """
    current = _first(_current_price_candidates(item))
    if current is None:
        return PriceResolution()

    original = _first(_original_price_candidates(item, current))
    if not is_effective_promotion(original, current):
        return PriceResolution(price_final=current)

    explicit_discount = _number(item.get("discount_percent"))
    discount = int(round_half_up(explicit_discount)) if explicit_discount else discount_percent(original, current)

    return PriceResolution(
        price_final=current,
        original_price=original,
        discount_percent=discount,
        has_promotion=True,
    )


def extract_buyer_prices(payload: Any) -> Dict[str, Any]:
    """
    Read the authoritative ``/items/{id}/prices`` payload.

    Regular price is the promotion entry's ``regular_amount``, else the
    ``standard`` amount. A promotion is effective only when its amount is
    positive and below the regular price.
    """
    result = {
        "original_price": None,
        "promotional_price": None,
        "discount_percent": None,
        "has_promotion_effective": False,
    }

    prices = payload.get("prices") if isinstance(payload, dict) else None
    if not isinstance(prices, list):
        return result

    standard = next((p for p in prices if isinstance(p, dict) and p.get("type") == "standard"), {})
    promotion = next((p for p in prices if isinstance(p, dict) and p.get("type") == "promotion"), {})

    regular = _number(promotion.get("regular_amount"))
    if regular is None:
        regular = _number(standard.get("amount"))
    if regular is None or regular <= 0:
        return result

    result["original_price"] = regular
    promo = _positive(promotion.get("amount"))

    if promo is None:
        result["promotional_price"] = regular
        return result

    result["promotional_price"] = promo
    if promo < regular:
        result["has_promotion_effective"] = True
        result["discount_percent"] = discount_percent(regular, promo)

    return result


def apply_buyer_prices_override(current: PriceResolution, payload: Any) -> Tuple[bool, PriceResolution]:
    """
    Let an effective promotion from the pricing endpoint override ``current``.

    Returns:
        (applied, resolution). ``checked`` is set on the returned value either
        way because the authoritative check ran.
    """
    buyer = extract_buyer_prices(payload)

    if not buyer["has_promotion_effective"]:
        return False, PriceResolution(
            price_final=current.price_final,
            original_price=current.original_price,
            discount_percent=current.discount_percent,
            has_promotion=current.has_promotion,
            source=current.source,
            checked=True,
        )

    return True, PriceResolution(
        price_final=buyer["promotional_price"],
        original_price=buyer["original_price"],
        discount_percent=buyer["discount_percent"],
        has_promotion=True,
        source="ml_prices",
        checked=True,
    )
