"""
Normalized data structures passed between the fetch client and services.

Provider payloads are turned into these types once, at the edge; services
never read raw provider JSON except through them.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from listing_sync.utils.exceptions import ErrorType, ListingSyncError


@dataclass
class FetchResult:
    """
    Tagged outcome of a single fetch.

    ``ok=True`` carries ``value``; ``ok=False`` carries the classified error so
    bulk operations can record it and move on.
    """

    ok: bool
    value: Any = None
    status: Optional[int] = None
    error_type: Optional[ErrorType] = None
    error_code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, value: Any, status: int = 200) -> "FetchResult":
        return cls(ok=True, value=value, status=status)

    @classmethod
    def failure(cls, error_type: ErrorType, message: str,
                status: Optional[int] = None, error_code: Optional[str] = None) -> "FetchResult":
        return cls(ok=False, status=status, error_type=error_type,
                   error_code=error_code, message=message)

    @classmethod
    def from_exception(cls, error: ListingSyncError) -> "FetchResult":
        return cls.failure(
            error_type=error.error_type,
            message=error.message,
            status=getattr(error, "status_code", None),
            error_code=getattr(error, "error_code", None),
        )

    def to_error(self, external_id: Optional[str] = None) -> Dict[str, Any]:
        """Shape used in the ``errors`` list of sync results."""
        return {
            "external_id": external_id,
            "error_type": self.error_type.value if self.error_type else None,
            "status": self.status,
            "code": self.error_code,
            "message": self.message,
        }


@dataclass
class ListingSnapshot:
    """
    A listing as reported by one successful detail fetch.

    Optional fields left as ``None`` were absent from the payload; the merge
    policy decides what absence means per field.
    """

    external_id: str
    title: str
    price: float
    stock: int
    status: str
    health_score: Optional[float] = None
    category_id: Optional[str] = None
    permalink: Optional[str] = None

    description: Optional[str] = None
    thumbnail: Optional[str] = None
    pictures: Optional[List[str]] = None
    pictures_count: Optional[int] = None
    variations_count: Optional[int] = None
    visits_last_7d: Optional[int] = None
    sales_last_7d: Optional[int] = None

    has_video: Optional[bool] = None
    has_clips: Optional[bool] = None

    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class PriceResolution:
    """Buyer-facing price and promotion for one listing."""

    price_final: Optional[float] = None
    original_price: Optional[float] = None
    discount_percent: Optional[int] = None
    has_promotion: bool = False
    source: str = "item"
    # True only when the authoritative pricing endpoint was actually called
    checked: bool = False


@dataclass
class VisitPoint:
    date: str
    visits: int


@dataclass
class VisitsResult:
    """Outcome of one traffic time-window fetch."""

    ok: bool
    status: Optional[int] = None
    visits: List[VisitPoint] = field(default_factory=list)
    raw_shape: Optional[str] = None
    error_type: Optional[ErrorType] = None
    message: Optional[str] = None

    def by_date(self) -> Dict[str, int]:
        return {point.date: point.visits for point in self.visits}


@dataclass
class OrderLineSnapshot:
    listing_external_id: str
    title: Optional[str]
    quantity: int
    unit_price: float

    @property
    def total_price(self) -> float:
        return round(self.quantity * self.unit_price, 2)


@dataclass
class OrderSnapshot:
    external_order_id: str
    status: str
    total_amount: float
    currency_id: Optional[str]
    buyer_id: Optional[str]
    buyer_nickname: Optional[str]
    order_date: datetime
    paid_date: Optional[datetime]
    lines: List[OrderLineSnapshot] = field(default_factory=list)


@dataclass
class SyncResult:
    """Base for per-operation results; partial success is the normal case."""

    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, error: Any, external_id: Optional[str] = None) -> None:
        if isinstance(error, FetchResult):
            self.errors.append(error.to_error(external_id))
        elif isinstance(error, ListingSyncError):
            self.errors.append({
                "external_id": external_id,
                "error_type": error.error_type.value,
                "status": getattr(error, "status_code", None),
                "code": getattr(error, "error_code", None),
                "message": error.message,
            })
        else:
            self.errors.append({
                "external_id": external_id,
                "error_type": None,
                "status": None,
                "code": None,
                "message": str(error),
            })

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CatalogSyncResult(SyncResult):
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    source: str = "discovery"
    discovery_blocked: bool = False
    orders_processed: int = 0
    unique_item_ids: int = 0


@dataclass
class OrderSyncResult(SyncResult):
    processed: int = 0
    created: int = 0
    updated: int = 0
    total_gmv: float = 0.0


@dataclass
class MetricsSyncResult(SyncResult):
    listings_processed: int = 0
    rows_upserted: int = 0
    min_date: Optional[str] = None
    max_date: Optional[str] = None


@dataclass
class ReconcileResult(SyncResult):
    checked: int = 0
    updated: int = 0
    blocked_by_policy: int = 0
    unauthorized: int = 0

