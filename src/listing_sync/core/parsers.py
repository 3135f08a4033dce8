"""
Response-shape normalization.

The same concept reaches us under different shapes depending on endpoint and
API revision. Each concept has an ordered list of matchers; the first one that
recognizes a payload produces the normalized value. New shapes are handled by
appending a matcher, never by touching call sites.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from listing_sync.core.calculator import calculate_health_score, map_listing_status
from listing_sync.core.models import ListingSnapshot, OrderLineSnapshot, OrderSnapshot, VisitPoint
from listing_sync.utils.dates import to_naive_utc, to_utc_date_key


@dataclass(frozen=True)
class ShapeMatcher:
    """Recognizes one payload shape and extracts its normalized content."""

    name: str
    matches: Callable[[Any], bool]
    extract: Callable[[Any], Any]


def match_shape(payload: Any, matchers: Sequence[ShapeMatcher]) -> Optional[Tuple[str, Any]]:
    """Return ``(shape_name, extracted)`` for the first matcher that applies."""
    for matcher in matchers:
        if matcher.matches(payload):
            return matcher.name, matcher.extract(payload)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# --- traffic (visits time window) -------------------------------------------

VISITS_PAYLOAD_SHAPES: List[ShapeMatcher] = [
    ShapeMatcher(
        "visits",
        lambda p: isinstance(p, dict) and isinstance(p.get("visits"), list),
        lambda p: p["visits"],
    ),
    ShapeMatcher(
        "results",
        lambda p: isinstance(p, dict) and isinstance(p.get("results"), list),
        lambda p: p["results"],
    ),
    ShapeMatcher(
        "array",
        lambda p: isinstance(p, list),
        lambda p: p,
    ),
]


def _count_from_visits(entry: Dict[str, Any]) -> Optional[int]:
    value = entry.get("visits")
    return int(value) if _is_number(value) else None


def _count_from_total(entry: Dict[str, Any]) -> Optional[int]:
    value = entry.get("total")
    return int(value) if _is_number(value) else None


def _count_from_detail(entry: Dict[str, Any]) -> Optional[int]:
    detail = entry.get("visits_detail")
    if not isinstance(detail, list) or not detail:
        return None
    quantities = [d.get("quantity") for d in detail if isinstance(d, dict) and _is_number(d.get("quantity"))]
    if not quantities:
        return None
    return int(sum(quantities))


VISIT_COUNT_EXTRACTORS: List[Callable[[Dict[str, Any]], Optional[int]]] = [
    _count_from_visits,
    _count_from_total,
    _count_from_detail,
]


def parse_visits_payload(payload: Any) -> Tuple[Optional[str], List[VisitPoint]]:
    """
    Normalize a visits time-window payload into daily points.

    Entries without a date or without any recognizable count are skipped;
    a skipped day is "unknown", not zero.

    Returns:
        (raw_shape, points); raw_shape is None when no matcher applied
    """
    matched = match_shape(payload, VISITS_PAYLOAD_SHAPES)
    if matched is None:
        return None, []

    raw_shape, entries = matched
    points: Dict[str, int] = {}

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        day = to_utc_date_key(entry.get("date") or entry.get("day"))
        if day is None:
            continue

        count = None
        for extractor in VISIT_COUNT_EXTRACTORS:
            count = extractor(entry)
            if count is not None:
                break
        if count is None:
            continue

        points[day] = points.get(day, 0) + count

    return raw_shape, [VisitPoint(date=day, visits=visits) for day, visits in sorted(points.items())]


# --- bulk item detail -------------------------------------------------------

ITEM_ENTRY_SHAPES: List[ShapeMatcher] = [
    ShapeMatcher(
        "multiget",
        lambda e: isinstance(e, dict) and "code" in e and "body" in e,
        lambda e: (int(e["code"]), e["body"]),
    ),
    ShapeMatcher(
        "plain",
        lambda e: isinstance(e, dict) and "id" in e,
        lambda e: (200, e),
    ),
]


def unwrap_item_entry(entry: Any) -> Tuple[Optional[int], Any]:
    """Return ``(status, body)`` for one element of a bulk detail response."""
    matched = match_shape(entry, ITEM_ENTRY_SHAPES)
    if matched is None:
        return None, entry
    return matched[1]


# --- media (video / clips) --------------------------------------------------

def _video_id_signal(item: Dict[str, Any], status: Optional[int]) -> Optional[bool]:
    if "video_id" not in item:
        return None
    video_id = item["video_id"]
    if isinstance(video_id, str) and video_id.strip():
        return True
    if video_id is None and status == 200:
        return False
    return None


def _videos_signal(item: Dict[str, Any], status: Optional[int]) -> Optional[bool]:
    if "videos" not in item:
        return None
    videos = item["videos"]
    if isinstance(videos, list) and videos:
        return True
    if (videos is None or videos == []) and status == 200:
        return False
    return None


def _video_keys_signal(item: Dict[str, Any], status: Optional[int]) -> Optional[bool]:
    for key, value in item.items():
        if "video" not in key.lower() and "clip" not in key.lower():
            continue
        if isinstance(value, bool):
            if value:
                return True
        elif isinstance(value, str):
            if value.strip():
                return True
        elif isinstance(value, (list, dict)):
            if value:
                return True
    return None


def _video_attributes_signal(item: Dict[str, Any], status: Optional[int]) -> Optional[bool]:
    attributes = item.get("attributes")
    if not isinstance(attributes, list):
        return None
    for attr in attributes:
        if not isinstance(attr, dict):
            continue
        label = f"{attr.get('id') or ''} {attr.get('name') or ''}".upper()
        if "VIDEO" in label or "MEDIA" in label or "CLIP" in label:
            return True
    return None


def _video_tags_signal(item: Dict[str, Any], status: Optional[int]) -> Optional[bool]:
    tags = item.get("tags")
    if not isinstance(tags, list):
        return None
    if any(isinstance(tag, str) and ("video" in tag.lower() or "clip" in tag.lower()) for tag in tags):
        return True
    return None


MEDIA_SIGNALS: List[Callable[[Dict[str, Any], Optional[int]], Optional[bool]]] = [
    _video_id_signal,
    _videos_signal,
    _video_keys_signal,
    _video_attributes_signal,
    _video_tags_signal,
]


def extract_media_verdict(item: Any, status: Optional[int] = 200) -> Optional[bool]:
    """
    Tri-state media detection for an item payload.

    Returns:
        True when any signal positively finds a video/clip, False when a
        signal positively confirms absence (and nothing finds one), None when
        the payload cannot tell.
    """
    if not isinstance(item, dict) or not item or "html" in item:
        return None

    verdict: Optional[bool] = None
    for signal in MEDIA_SIGNALS:
        result = signal(item, status)
        if result is True:
            return True
        if result is False:
            verdict = False
    return verdict


# --- item snapshot ----------------------------------------------------------

def _description_text(item: Dict[str, Any]) -> Optional[str]:
    description = item.get("description")
    if isinstance(description, dict):
        description = description.get("plain_text") or description.get("text")
    return description if isinstance(description, str) else None


def _picture_urls(item: Dict[str, Any]) -> Optional[List[str]]:
    pictures = item.get("pictures")
    if not isinstance(pictures, list):
        return None
    urls = []
    for picture in pictures:
        if isinstance(picture, dict):
            url = picture.get("secure_url") or picture.get("url")
            if url:
                urls.append(url)
    return urls


def parse_item_snapshot(item: Dict[str, Any], status: Optional[int] = 200) -> ListingSnapshot:
    """Normalize one item detail payload into a ``ListingSnapshot``."""
    pictures = _picture_urls(item)
    variations = item.get("variations")
    media = extract_media_verdict(item, status)

    price = item.get("price")
    stock = item.get("available_quantity")

    return ListingSnapshot(
        external_id=str(item["id"]),
        title=item.get("title") or "",
        price=float(price) if _is_number(price) else 0.0,
        stock=int(stock) if _is_number(stock) else 0,
        status=map_listing_status(item.get("status")),
        health_score=calculate_health_score(item),
        category_id=item.get("category_id"),
        permalink=item.get("permalink"),
        description=_description_text(item),
        thumbnail=item.get("secure_thumbnail") or item.get("thumbnail"),
        pictures=pictures,
        pictures_count=len(pictures) if pictures is not None else None,
        variations_count=len(variations) if isinstance(variations, list) else None,
        has_video=media,
        has_clips=media,
        raw=item,
    )


# --- orders -----------------------------------------------------------------

ORDER_STATUS_MAP = {
    "confirmed": "pending",
    "payment_required": "pending",
    "paid": "paid",
    "partially_paid": "paid",
    "shipped": "shipped",
    "ready_to_ship": "shipped",
    "delivered": "delivered",
    "cancelled": "cancelled",
}


def map_order_status(provider_status: Optional[str]) -> str:
    return ORDER_STATUS_MAP.get((provider_status or "").lower(), "pending")


def _first_approved_payment_date(order: Dict[str, Any]):
    for payment in order.get("payments") or []:
        if isinstance(payment, dict) and payment.get("status") == "approved" and payment.get("date_approved"):
            return to_naive_utc(payment["date_approved"])
    return None


def parse_order_snapshot(order: Dict[str, Any]) -> OrderSnapshot:
    """Normalize an order payload from ``/orders/search`` or ``/orders/{id}``."""
    buyer = order.get("buyer") or {}
    lines = []
    for entry in order.get("order_items") or []:
        item = entry.get("item") or {}
        if not item.get("id"):
            continue
        quantity = entry.get("quantity")
        unit_price = entry.get("unit_price")
        lines.append(OrderLineSnapshot(
            listing_external_id=str(item["id"]),
            title=item.get("title"),
            quantity=int(quantity) if _is_number(quantity) else 1,
            unit_price=float(unit_price) if _is_number(unit_price) else 0.0,
        ))

    total_amount = order.get("total_amount")
    if not _is_number(total_amount):
        total_amount = sum(line.total_price for line in lines)

    order_date = to_naive_utc(order.get("date_created"))
    if order_date is None:
        raise ValueError(f"Order {order.get('id')} has no valid date_created")

    return OrderSnapshot(
        external_order_id=str(order["id"]),
        status=map_order_status(order.get("status")),
        total_amount=float(total_amount),
        currency_id=order.get("currency_id"),
        buyer_id=str(buyer["id"]) if buyer.get("id") is not None else None,
        buyer_nickname=buyer.get("nickname"),
        order_date=order_date,
        paid_date=_first_approved_payment_date(order),
        lines=lines,
    )
